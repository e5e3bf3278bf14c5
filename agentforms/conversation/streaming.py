"""
Cancellable streaming of the agent's reply for one session.

The controller consumes cumulative StreamChunks from an upstream async
iterator. Each chunk replaces ``current_content``. On the terminal chunk
an immutable agent Message is built and handed to ``on_message`` (the
transcript append). ``stop()`` aborts the upstream read and discards the
partial reply. At most one stream runs at a time.

Usage:
    controller = StreamingResponseController(session_id, on_message=append)
    message = await controller.run(responder.stream_reply(agent, history, fields))
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from agentforms.exceptions import StreamAbort, StreamingInProgress
from agentforms.schemas.session_schema import Message, MessageRole, StreamChunk

logger = logging.getLogger(__name__)


class StreamingResponseController:
    def __init__(self, session_id: str, on_message: Callable[[Message], Any]) -> None:
        self.session_id = session_id
        self._on_message = on_message
        self._streaming = False
        self._content = ""
        self._stop_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def current_content(self) -> str:
        return self._content

    async def run(self, chunks: AsyncIterator[StreamChunk]) -> Optional[Message]:
        """Drive one stream to completion.

        Returns the appended Message, or None if the stream was stopped or
        ended without a terminal chunk.

        Raises:
            StreamingInProgress: If a stream is already running.
        """
        if self._streaming:
            await _close_upstream(chunks)
            raise StreamingInProgress(f"Session {self.session_id} is already streaming")

        self._streaming = True
        self._content = ""
        self._stop_requested = asyncio.Event()
        self._task = asyncio.current_task()
        try:
            async for chunk in chunks:
                if self._stop_requested.is_set():
                    raise StreamAbort(f"Stream for {self.session_id} stopped between chunks")
                self._content = chunk.content
                if chunk.done:
                    return self._materialize(chunk)
            logger.debug("Stream for %s ended without a terminal chunk", self.session_id)
            return None
        except StreamAbort as exc:
            logger.debug("%s", exc)
            return None
        except asyncio.CancelledError:
            if not self._stop_requested.is_set():
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.debug("Stream for %s aborted", self.session_id)
            return None
        finally:
            self._reset()
            await _close_upstream(chunks)

    def stop(self) -> None:
        """Abort the in-flight stream. No-op when idle."""
        if not self._streaming:
            return
        self._stop_requested.set()
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        self.stop()
        await asyncio.sleep(0)

    async def __aenter__(self) -> "StreamingResponseController":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _materialize(self, chunk: StreamChunk) -> Message:
        metadata: dict[str, Any] = {}
        if chunk.extracted_fields:
            metadata["extracted_fields"] = {
                field_id: candidate.model_dump(mode="json")
                for field_id, candidate in chunk.extracted_fields.items()
            }
        message = Message(
            session_id=self.session_id,
            role=MessageRole.AGENT,
            content=chunk.content,
            metadata=metadata,
        )
        self._on_message(message)
        return message

    def _reset(self) -> None:
        self._streaming = False
        self._content = ""
        self._task = None


async def _close_upstream(chunks: AsyncIterator[StreamChunk]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()
