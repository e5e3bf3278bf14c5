"""Session, message and extraction data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from agentforms.schemas.agent_schema import AgentSchema
from agentforms.utils import new_id, utc_now


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"


class MessageRole(str, Enum):
    AGENT = "agent"
    VISITOR = "visitor"


class ExtractionSource(str, Enum):
    LLM = "llm"
    FALLBACK = "fallback"


class ExtractedField(BaseModel):
    """Transient extraction candidate. Folded into a session only once accepted."""

    model_config = ConfigDict(frozen=True)

    field_id: str
    value: str
    confidence: int = Field(ge=0, le=100)
    source: ExtractionSource


class Message(BaseModel):
    """One append-only transcript entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    session_id: str
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)
    validation_state: Optional[str] = None
    validation_errors: Optional[dict[str, list[str]]] = None


class Session(BaseModel):
    """
    A visitor conversation and everything collected from it so far.

    Only the SessionStateMachine produces new Session values; callers
    persist whatever it returns.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("sess"))
    schema_ref: str
    form_schema: AgentSchema
    status: SessionStatus = SessionStatus.ACTIVE
    extracted_fields: dict[str, str] = Field(default_factory=dict)
    field_confidence: dict[str, int] = Field(default_factory=dict)
    field_sources: dict[str, ExtractionSource] = Field(default_factory=dict)
    completed_count: int = 0
    required_count: int = 0
    completion_rate: float = 0.0
    processed_message_ids: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    error_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.ACTIVE


class StreamChunk(BaseModel):
    """Partial agent reply. ``content`` is cumulative, not a delta."""

    content: str
    done: bool = False
    extracted_fields: Optional[dict[str, ExtractedField]] = None
