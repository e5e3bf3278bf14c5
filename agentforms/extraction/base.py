"""Extraction strategy interfaces composed by the coordinator."""

from typing import AsyncIterator, Mapping, Optional, Protocol, Sequence

from agentforms.schemas.agent_schema import Agent, AgentSchema
from agentforms.schemas.session_schema import ExtractedField, Message, StreamChunk


class PrimaryExtractor(Protocol):
    """Probabilistic extractor. May fail; failures are transport errors."""

    async def extract_fields(
        self, messages: Sequence[Message], schema: AgentSchema
    ) -> dict[str, ExtractedField]:
        ...


class FallbackExtractor(Protocol):
    """Deterministic extractor. Must be total and side-effect free."""

    def extract(
        self,
        messages: Sequence[Message],
        schema: AgentSchema,
        existing: Optional[Mapping[str, str]] = None,
    ) -> dict[str, str]:
        ...


class ResponseStreamer(Protocol):
    """Produces the agent's next reply as cumulative chunks."""

    def stream_reply(
        self,
        agent: Agent,
        messages: Sequence[Message],
        extracted: Mapping[str, str],
    ) -> AsyncIterator[StreamChunk]:
        ...
