"""
Finite state machine for the session lifecycle.

A session starts ``active`` and ends in exactly one terminal state:
``completed``, ``abandoned`` or ``error``. Every legal move is listed in
TRANSITIONS; anything else raises InvalidTransitionError naming the
triggers that would have been accepted.

The machine is pure. It takes a Session value and returns a new Session
plus the domain events the move produced. Persisting the session and
publishing the events is the caller's job.

Usage:
    sm = SessionStateMachine(CompletionTracker())
    result = sm.apply_extraction(session, message.id, accepted)
    store(result.session)
    for event in result.events:
        await bus.publish(event)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from agentforms.conversation.completion import CompletionTracker
from agentforms.conversation.events import (
    DomainEvent,
    FieldExtracted,
    SessionAbandoned,
    SessionCompleted,
    SessionErrored,
    SessionStarted,
)
from agentforms.exceptions import InvalidTransitionError
from agentforms.schemas.session_schema import ExtractedField, Session, SessionStatus
from agentforms.utils import utc_now

logger = logging.getLogger(__name__)


class SessionTrigger(str, Enum):
    """Events that cause lifecycle transitions."""
    MESSAGE_PROCESSED = "message_processed"
    ALL_REQUIRED_COLLECTED = "all_required_collected"
    OPERATOR_CLOSED = "operator_closed"
    IDLE_TIMEOUT = "idle_timeout"
    UNRECOVERABLE_ERROR = "unrecoverable_error"


@dataclass(frozen=True)
class Transition:
    """A single valid state transition."""
    from_state: SessionStatus
    to_state: SessionStatus
    trigger: SessionTrigger


@dataclass(frozen=True)
class TransitionResult:
    session: Session
    events: list[DomainEvent] = field(default_factory=list)
    duplicate: bool = False


class SessionStateMachine:
    """
    Deterministic lifecycle control for visitor sessions.

    Terminal sessions accept no trigger except UNRECOVERABLE_ERROR, so a
    storage failure found after completion can still flag the record for
    operator review. A session already in ``error`` accepts nothing.
    """

    TRANSITIONS: list[Transition] = [
        # --- Conversation ---
        Transition(SessionStatus.ACTIVE, SessionStatus.ACTIVE,
                   SessionTrigger.MESSAGE_PROCESSED),

        # --- Completion ---
        Transition(SessionStatus.ACTIVE, SessionStatus.COMPLETED,
                   SessionTrigger.ALL_REQUIRED_COLLECTED),
        Transition(SessionStatus.ACTIVE, SessionStatus.COMPLETED,
                   SessionTrigger.OPERATOR_CLOSED),

        # --- Abandonment ---
        Transition(SessionStatus.ACTIVE, SessionStatus.ABANDONED,
                   SessionTrigger.IDLE_TIMEOUT),

        # --- Errors ---
        Transition(SessionStatus.ACTIVE, SessionStatus.ERROR,
                   SessionTrigger.UNRECOVERABLE_ERROR),
        Transition(SessionStatus.COMPLETED, SessionStatus.ERROR,
                   SessionTrigger.UNRECOVERABLE_ERROR),
        Transition(SessionStatus.ABANDONED, SessionStatus.ERROR,
                   SessionTrigger.UNRECOVERABLE_ERROR),
    ]

    def __init__(self, tracker: Optional[CompletionTracker] = None) -> None:
        self._tracker = tracker or CompletionTracker()

    @property
    def tracker(self) -> CompletionTracker:
        return self._tracker

    def valid_triggers(self, status: SessionStatus) -> list[SessionTrigger]:
        """Return all triggers valid from ``status``."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == status]

    def start(self, session: Session, now: Optional[datetime] = None) -> TransitionResult:
        """Initialise counters for a fresh session and emit ``session.started``."""
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Cannot start a session in '{session.status.value}' state"
            )
        stats = self._tracker.completion(session.extracted_fields, session.form_schema)
        started = session.model_copy(update={
            "completed_count": stats.completed,
            "required_count": stats.total,
            "completion_rate": stats.rate,
        })
        event = SessionStarted(
            session_id=started.id,
            agent_id=started.schema_ref,
            occurred_at=now or utc_now(),
            fields=dict(started.extracted_fields),
        )
        return TransitionResult(session=started, events=[event])

    def transition(
        self,
        session: Session,
        trigger: SessionTrigger,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Execute a lifecycle transition.

        Args:
            session: Current session value.
            trigger: The event triggering the transition.
            now: Timestamp recorded as ``ended_at`` and on the event.
            reason: Stored as ``error_reason`` when moving to ``error``.

        Returns:
            TransitionResult with the new session and at most one event.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state != session.status or t.trigger != trigger:
                continue

            if t.to_state == t.from_state:
                return TransitionResult(session=session)

            now = now or utc_now()
            changes: dict = {"status": t.to_state}
            if session.ended_at is None:
                changes["ended_at"] = now
            if t.to_state == SessionStatus.ERROR:
                changes["error_reason"] = reason
            updated = session.model_copy(update=changes)

            logger.info(
                "Session %s: %s -> %s (trigger: %s)",
                session.id, t.from_state.value, t.to_state.value, trigger.value,
            )
            return TransitionResult(session=updated, events=[self._lifecycle_event(updated, now, reason)])

        valid = [v.value for v in self.valid_triggers(session.status)]
        raise InvalidTransitionError(
            f"No valid transition from '{session.status.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def apply_extraction(
        self,
        session: Session,
        message_id: str,
        accepted: Mapping[str, ExtractedField],
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Merge accepted candidates from one visitor message into the session.

        A field already holding an accepted value is only replaced by a
        different value with strictly higher confidence. Values failing
        validation are ignored. A message id seen before is a no-op.
        Completes the session when every required field is accepted.
        """
        if message_id in session.processed_message_ids:
            logger.debug("Message %s already applied to session %s", message_id, session.id)
            return TransitionResult(session=session, duplicate=True)

        if session.status != SessionStatus.ACTIVE:
            valid = [v.value for v in self.valid_triggers(session.status)]
            raise InvalidTransitionError(
                f"No valid transition from '{session.status.value}' "
                f"with trigger '{SessionTrigger.MESSAGE_PROCESSED.value}'. Valid triggers: {valid}"
            )

        schema = session.form_schema
        values = dict(session.extracted_fields)
        confidence = dict(session.field_confidence)
        sources = dict(session.field_sources)
        changed: list[ExtractedField] = []

        for field_id, candidate in self.eligible_candidates(session, accepted).items():
            schema_field = schema.get_field(field_id)
            if schema_field is None or not self._tracker.is_accepted(schema_field, candidate.value):
                continue
            values[field_id] = candidate.value
            confidence[field_id] = candidate.confidence
            sources[field_id] = candidate.source
            changed.append(candidate)

        stats = self._tracker.completion(values, schema)
        updated = session.model_copy(update={
            "extracted_fields": values,
            "field_confidence": confidence,
            "field_sources": sources,
            "completed_count": stats.completed,
            "required_count": stats.total,
            "completion_rate": stats.rate,
            "processed_message_ids": [*session.processed_message_ids, message_id],
        })

        now = now or utc_now()
        events: list[DomainEvent] = [
            FieldExtracted(
                session_id=updated.id,
                agent_id=updated.schema_ref,
                occurred_at=now,
                fields=dict(values),
                field_id=c.field_id,
                value=c.value,
                source=c.source,
                confidence=c.confidence,
            )
            for c in changed
        ]

        if stats.total > 0 and stats.completed == stats.total:
            completed = self.transition(updated, SessionTrigger.ALL_REQUIRED_COLLECTED, now=now)
            return TransitionResult(session=completed.session, events=events + completed.events)

        return TransitionResult(session=updated, events=events)

    @staticmethod
    def eligible_candidates(
        session: Session, accepted: Mapping[str, ExtractedField]
    ) -> dict[str, ExtractedField]:
        """Candidates that would replace the session's current value, before validation.

        Unknown fields are dropped. A field already holding a value only
        takes a different value with strictly higher confidence.
        """
        eligible: dict[str, ExtractedField] = {}
        for field_id, candidate in accepted.items():
            if session.form_schema.get_field(field_id) is None:
                continue
            current = session.extracted_fields.get(field_id)
            if current is not None:
                if current == candidate.value:
                    continue
                if candidate.confidence <= session.field_confidence.get(field_id, 0):
                    continue
            eligible[field_id] = candidate
        return eligible

    @staticmethod
    def _lifecycle_event(session: Session, now: datetime, reason: Optional[str]) -> DomainEvent:
        common = dict(
            session_id=session.id,
            agent_id=session.schema_ref,
            occurred_at=now,
            fields=dict(session.extracted_fields),
        )
        if session.status == SessionStatus.COMPLETED:
            return SessionCompleted(**common)
        if session.status == SessionStatus.ABANDONED:
            return SessionAbandoned(**common)
        return SessionErrored(reason=reason, **common)
