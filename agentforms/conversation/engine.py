"""
Session engine: the entry point request handlers call.

Wires the collaborators together for each visitor turn:

    guardrails -> extraction coordinator -> validation -> state machine
               -> persist session + message -> publish domain events

Per-session work is serialised with an asyncio.Lock so two messages for
the same session can never interleave their read-extract-merge-persist
sequence. Different sessions run fully in parallel.

Usage:
    engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator())
    session = await engine.start_session("agent-1")
    turn = await engine.handle_visitor_message(session.id, "my email is a@b.com")
    reply = await engine.stream_reply(session.id)
"""

import asyncio
import json
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from agentforms.conversation.completion import CompletionTracker
from agentforms.conversation.events import DomainEvent, EventBus
from agentforms.conversation.guardrails import GuardrailPipeline
from agentforms.conversation.responder import ScriptedResponder
from agentforms.conversation.state_machine import SessionStateMachine, SessionTrigger
from agentforms.conversation.streaming import StreamingResponseController
from agentforms.diagnostics import DiagnosticsSink
from agentforms.exceptions import (
    InvalidTransitionError,
    MessageRejected,
    RateLimitExceeded,
    StreamingInProgress,
)
from agentforms.extraction.base import ResponseStreamer
from agentforms.extraction.coordinator import FieldExtractionCoordinator
from agentforms.extraction.llm_client import LLMExtractorClient
from agentforms.logging_context import get_session_logger, session_scope
from agentforms.schemas.session_schema import (
    ExtractedField,
    Message,
    MessageRole,
    Session,
    SessionStatus,
)
from agentforms.tools.datastore import InMemoryDatastore
from agentforms.utils import utc_now
from agentforms.validation.engine import RuleStore, ValidationRuleEngine

logger = get_session_logger(__name__)


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one visitor message."""
    session: Session
    message: Message
    accepted: dict[str, ExtractedField] = field(default_factory=dict)
    validation_errors: dict[str, list[str]] = field(default_factory=dict)
    events: list[DomainEvent] = field(default_factory=list)
    duplicate: bool = False

    @property
    def completed(self) -> bool:
        return self.session.status == SessionStatus.COMPLETED


class SessionEngine:
    """Runs visitor sessions against a datastore."""

    def __init__(
        self,
        datastore: InMemoryDatastore,
        coordinator: Optional[FieldExtractionCoordinator] = None,
        rule_engine: Optional[ValidationRuleEngine] = None,
        responder: Optional[ResponseStreamer] = None,
        event_bus: Optional[EventBus] = None,
        guardrails: Optional[GuardrailPipeline] = None,
    ) -> None:
        self._store = datastore
        self._rules = rule_engine or ValidationRuleEngine(RuleStore(datastore))
        self._machine = SessionStateMachine(CompletionTracker(self._rules))
        self._coordinator = coordinator or FieldExtractionCoordinator()
        self._responder = responder or ScriptedResponder(self._machine.tracker)
        self._guardrails = guardrails or GuardrailPipeline()
        self.events = event_bus or EventBus()
        # A lock lives only while some coroutine holds or waits on it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._streams: dict[str, StreamingResponseController] = {}

    @classmethod
    def from_settings(
        cls,
        datastore: InMemoryDatastore,
        diagnostics: Optional[DiagnosticsSink] = None,
        **kwargs,
    ) -> "SessionEngine":
        """Engine that extracts and replies through the LLM when an API key is set.

        Without a key it runs on the pattern fallback and the scripted responder.
        """
        coordinator = FieldExtractionCoordinator.from_settings(diagnostics=diagnostics)
        if isinstance(coordinator.primary, LLMExtractorClient):
            kwargs.setdefault("responder", coordinator.primary)
        return cls(datastore, coordinator=coordinator, **kwargs)

    @property
    def tracker(self) -> CompletionTracker:
        return self._machine.tracker

    @property
    def coordinator(self) -> FieldExtractionCoordinator:
        return self._coordinator

    @property
    def responder(self) -> ResponseStreamer:
        return self._responder

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        """Per-session lock. Raises RecordNotFound for unknown sessions."""
        self._store.sessions.get(session_id)
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _release(self, session_id: str) -> None:
        """Drop per-session runtime state once the session has left ``active``."""
        self.stop_stream(session_id)
        self._streams.pop(session_id, None)
        self._guardrails.forget(session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, agent_id: str) -> Session:
        """Open a session for an agent, posting its welcome message if it has one."""
        agent = self._store.agents.get(agent_id)
        result = self._machine.start(Session(schema_ref=agent.id, form_schema=agent.form_schema))
        session = result.session

        with session_scope(session.id):
            self._store.sessions.create(session)
            if agent.welcome_message:
                self._store.messages.create(Message(
                    session_id=session.id,
                    role=MessageRole.AGENT,
                    content=agent.welcome_message,
                    metadata={"type": "welcome"},
                ))
            logger.info(
                "Session started for agent %s (%d required field(s))",
                agent.id, session.required_count,
            )
            await self._publish(result.events)
        return session

    async def close_session(self, session_id: str) -> Session:
        """Operator close: marks the session completed whatever its progress."""
        return await self._apply_trigger(session_id, SessionTrigger.OPERATOR_CLOSED)

    async def abandon_session(self, session_id: str) -> Session:
        """Idle-timeout signal from the hosting environment."""
        return await self._apply_trigger(session_id, SessionTrigger.IDLE_TIMEOUT)

    async def fail_session(self, session_id: str, reason: str) -> Session:
        return await self._apply_trigger(
            session_id, SessionTrigger.UNRECOVERABLE_ERROR, reason=reason
        )

    async def _apply_trigger(
        self, session_id: str, trigger: SessionTrigger, reason: Optional[str] = None
    ) -> Session:
        async with self._lock_for(session_id):
            with session_scope(session_id):
                session = self._store.sessions.get(session_id)
                result = self._machine.transition(session, trigger, reason=reason)
                self._store.sessions.replace(result.session)
                self._release(session_id)
        with session_scope(session_id):
            await self._publish(result.events)
        return result.session

    # ------------------------------------------------------------------
    # Visitor turns
    # ------------------------------------------------------------------

    async def handle_visitor_message(
        self, session_id: str, content: str, message_id: Optional[str] = None
    ) -> TurnResult:
        """
        Process one visitor message.

        Raises:
            MessageRejected: Empty or over-long message.
            RateLimitExceeded: Too many messages in the last minute.
            InvalidTransitionError: The session is no longer active.
        """
        async with self._lock_for(session_id):
            with session_scope(session_id):
                session = self._store.sessions.get(session_id)

                if message_id is not None and message_id in session.processed_message_ids:
                    logger.info("Message %s already processed, ignoring redelivery", message_id)
                    return TurnResult(
                        session=session,
                        message=self._store.messages.get(message_id),
                        duplicate=True,
                    )

                if session.status != SessionStatus.ACTIVE:
                    raise InvalidTransitionError(
                        f"Session {session_id} is '{session.status.value}' and accepts no messages"
                    )

                self._check_guardrails(session_id, content)

                draft = Message(session_id=session_id, role=MessageRole.VISITOR, content=content)
                if message_id is not None:
                    draft = draft.model_copy(update={"id": message_id})

                history = self._store.messages_for(session_id)
                accepted = await self._coordinator.extract_fields(
                    [*history, draft],
                    session.form_schema,
                    existing=session.extracted_fields,
                    processed_ids=set(session.processed_message_ids),
                )
                eligible = self._machine.eligible_candidates(session, accepted)
                errors = self._validate(session, eligible)
                message = draft.model_copy(update={
                    "validation_state": ("invalid" if errors else "valid") if eligible else None,
                    "validation_errors": errors or None,
                })

                try:
                    self._store.messages.create(message)
                    result = self._machine.apply_extraction(session, message.id, accepted)
                    self._store.sessions.replace(result.session)
                except InvalidTransitionError:
                    raise
                except Exception as exc:
                    logger.exception("Storage failure while processing message %s", message.id)
                    await self._publish(self._mark_error(session, f"storage failure: {exc}"))
                    self._release(session_id)
                    raise

                if result.session.status != session.status:
                    self._release(session_id)
                logger.info(
                    "Turn processed: %d accepted, %d/%d required, status=%s",
                    len(accepted), result.session.completed_count,
                    result.session.required_count, result.session.status.value,
                )

        with session_scope(session_id):
            await self._publish(result.events)
        return TurnResult(
            session=result.session,
            message=message,
            accepted=accepted,
            validation_errors=errors,
            events=result.events,
        )

    def _check_guardrails(self, session_id: str, content: str) -> None:
        failures = self._guardrails.check_visitor_message(session_id, content)
        if not failures:
            return
        first = failures[0]
        logger.info("Visitor message rejected: %s", first.violation_type)
        if first.violation_type == "rate_limited":
            raise RateLimitExceeded(first.message or "Rate limited", first.retry_after or 0.0)
        raise MessageRejected(first.message or "Message rejected", first.violation_type or "rejected")

    def _validate(
        self, session: Session, eligible: dict[str, ExtractedField]
    ) -> dict[str, list[str]]:
        errors: dict[str, list[str]] = {}
        for field_id, candidate in eligible.items():
            schema_field = session.form_schema.get_field(field_id)
            if schema_field is None:
                continue
            result = self.tracker.validate(schema_field, candidate.value)
            if not result.valid:
                errors[field_id] = result.errors
        return errors

    def _mark_error(self, session: Session, reason: str) -> list[DomainEvent]:
        """Best-effort move to ``error`` after a failed write. Caller holds the lock."""
        try:
            result = self._machine.transition(
                session, SessionTrigger.UNRECOVERABLE_ERROR, reason=reason
            )
            self._store.sessions.replace(result.session)
        except Exception:
            logger.exception("Could not record error state for session %s", session.id)
            return []
        return result.events

    # ------------------------------------------------------------------
    # Agent replies
    # ------------------------------------------------------------------

    def stream_controller(self, session_id: str) -> StreamingResponseController:
        controller = self._streams.get(session_id)
        if controller is None:
            controller = StreamingResponseController(session_id, self._store.messages.create)
            self._streams[session_id] = controller
        return controller

    def is_streaming(self, session_id: str) -> bool:
        controller = self._streams.get(session_id)
        return controller is not None and controller.is_streaming

    async def stream_reply(self, session_id: str) -> Optional[Message]:
        """Stream the agent's next reply into the transcript.

        Raises:
            StreamingInProgress: A reply is already streaming for this session.
        """
        controller = self.stream_controller(session_id)
        if controller.is_streaming:
            raise StreamingInProgress(f"Session {session_id} is already streaming")

        with session_scope(session_id):
            session = self._store.sessions.get(session_id)
            agent = self._store.agents.get(session.schema_ref)
            agent = agent.model_copy(update={"form_schema": session.form_schema})
            chunks = self._responder.stream_reply(
                agent, self._store.messages_for(session_id), session.extracted_fields
            )
            reply = await controller.run(chunks)
            if self._store.sessions.get(session_id).status != SessionStatus.ACTIVE:
                if self._streams.get(session_id) is controller and not controller.is_streaming:
                    del self._streams[session_id]
            return reply

    def stop_stream(self, session_id: str) -> None:
        controller = self._streams.get(session_id)
        if controller is not None:
            controller.stop()

    async def aclose(self) -> None:
        for controller in list(self._streams.values()):
            await controller.aclose()
        self._streams.clear()
        await self._coordinator.aclose()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        return self._store.sessions.get(session_id)

    def get_transcript(self, session_id: str) -> list[Message]:
        return self._store.messages_for(session_id)

    def export_session(self, session_id: str, exported_at: Optional[datetime] = None) -> str:
        """JSON document with the session, its transcript and its delivery log."""
        session = self._store.sessions.get(session_id)
        deliveries = self._store.deliveries.list(
            where={"session_id": session_id}, order_by=lambda d: d.created_at
        )
        document = {
            "session": session.model_dump(mode="json"),
            "messages": [m.model_dump(mode="json") for m in self.get_transcript(session_id)],
            "deliveries": [d.model_dump(mode="json") for d in deliveries],
            "exported_at": (exported_at or utc_now()).isoformat(),
        }
        return json.dumps(document, indent=2)

    async def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.events.publish(event)
