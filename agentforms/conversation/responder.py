"""Scripted agent replies, streamed word by word as cumulative chunks."""

import asyncio
from typing import AsyncIterator, Mapping, Optional, Sequence

from agentforms.conversation.completion import CompletionTracker
from agentforms.prompts.templates import scripted_reply
from agentforms.schemas.agent_schema import Agent
from agentforms.schemas.session_schema import Message, StreamChunk


class ScriptedResponder:
    """ResponseStreamer that needs no language model.

    Asks for the next required field in the persona's tone, or thanks the
    visitor once everything is collected.
    """

    def __init__(self, tracker: Optional[CompletionTracker] = None, delay: float = 0.0) -> None:
        self._tracker = tracker or CompletionTracker()
        self._delay = delay

    async def stream_reply(
        self,
        agent: Agent,
        messages: Sequence[Message],
        extracted: Mapping[str, str],
    ) -> AsyncIterator[StreamChunk]:
        next_field = self._tracker.next_required_field(extracted, agent.form_schema)
        words = scripted_reply(agent, next_field).split(" ")
        for i in range(len(words)):
            if self._delay:
                await asyncio.sleep(self._delay)
            yield StreamChunk(content=" ".join(words[: i + 1]), done=i == len(words) - 1)
