"""
Domain events emitted by session transitions.

The state machine only returns events; the engine publishes them on an
EventBus after the new session state is stored. Handlers (the webhook
delivery worker, audit sinks, tests) subscribe to the bus. A failing
handler is logged and never blocks session progression.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, ClassVar, Optional

from agentforms.schemas.session_schema import ExtractionSource
from agentforms.schemas.webhook_schema import EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """Base event. ``fields`` is a snapshot of extracted values at emission time."""

    session_id: str
    agent_id: str
    occurred_at: datetime
    fields: dict[str, str] = field(default_factory=dict)

    event_type: ClassVar[EventType]

    def to_payload(self) -> dict[str, Any]:
        """Canonical webhook body."""
        return {
            "event": self.event_type.value,
            "sessionId": self.session_id,
            "fields": dict(self.fields),
            "timestamp": self.occurred_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionStarted(DomainEvent):
    event_type: ClassVar[EventType] = EventType.SESSION_STARTED


@dataclass(frozen=True)
class FieldExtracted(DomainEvent):
    field_id: str = ""
    value: str = ""
    source: ExtractionSource = ExtractionSource.FALLBACK
    confidence: int = 100

    event_type: ClassVar[EventType] = EventType.FIELD_EXTRACTED


@dataclass(frozen=True)
class SessionCompleted(DomainEvent):
    event_type: ClassVar[EventType] = EventType.SESSION_COMPLETED


@dataclass(frozen=True)
class SessionAbandoned(DomainEvent):
    event_type: ClassVar[EventType] = EventType.SESSION_ABANDONED


@dataclass(frozen=True)
class SessionErrored(DomainEvent):
    reason: Optional[str] = None

    event_type: ClassVar[EventType] = EventType.SESSION_ERROR


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """In-process fan-out of domain events to async handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: DomainEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s (session %s)",
                    handler, event.event_type.value, event.session_id,
                )
