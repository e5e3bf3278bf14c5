"""Tests for the session lifecycle state machine."""

from datetime import datetime, timezone

import pytest

from agentforms.conversation.events import (
    FieldExtracted,
    SessionAbandoned,
    SessionCompleted,
    SessionErrored,
    SessionStarted,
)
from agentforms.conversation.state_machine import SessionStateMachine, SessionTrigger
from agentforms.exceptions import InvalidTransitionError, StateViolation
from agentforms.schemas.agent_schema import FieldType
from agentforms.schemas.session_schema import ExtractionSource, SessionStatus
from agentforms.schemas.webhook_schema import EventType

from tests.conftest import make_candidate, make_field, make_schema, make_session

NOW = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)

TWO_FIELDS = make_schema(
    make_field("email", "Email", FieldType.EMAIL),
    make_field("name", "Name"),
)


class TestStart:
    def test_counts_required_fields(self, state_machine):
        result = state_machine.start(make_session(TWO_FIELDS), now=NOW)
        assert result.session.required_count == 2
        assert result.session.completed_count == 0
        assert isinstance(result.events[0], SessionStarted)

    def test_cannot_start_terminal_session(self, state_machine):
        with pytest.raises(InvalidTransitionError):
            state_machine.start(make_session(status=SessionStatus.COMPLETED))


class TestLifecycleTransitions:
    def test_operator_close_completes(self, state_machine):
        result = state_machine.transition(make_session(), SessionTrigger.OPERATOR_CLOSED, now=NOW)
        assert result.session.status == SessionStatus.COMPLETED
        assert result.session.ended_at == NOW
        assert isinstance(result.events[0], SessionCompleted)

    def test_idle_timeout_abandons(self, state_machine):
        result = state_machine.transition(make_session(), SessionTrigger.IDLE_TIMEOUT)
        assert result.session.status == SessionStatus.ABANDONED
        assert isinstance(result.events[0], SessionAbandoned)

    def test_error_records_reason(self, state_machine):
        result = state_machine.transition(
            make_session(), SessionTrigger.UNRECOVERABLE_ERROR, reason="disk full"
        )
        assert result.session.status == SessionStatus.ERROR
        assert result.session.error_reason == "disk full"
        assert result.events[0].reason == "disk full"
        assert result.events[0].event_type == EventType.SESSION_ERROR

    def test_terminal_session_can_still_error(self, state_machine):
        closed = make_session(status=SessionStatus.COMPLETED, ended_at=NOW)
        result = state_machine.transition(closed, SessionTrigger.UNRECOVERABLE_ERROR)
        assert result.session.status == SessionStatus.ERROR
        assert result.session.ended_at == NOW

    def test_message_processed_keeps_active_without_event(self, state_machine):
        session = make_session()
        result = state_machine.transition(session, SessionTrigger.MESSAGE_PROCESSED)
        assert result.session is session
        assert result.events == []

    def test_completed_never_regresses(self, state_machine):
        closed = make_session(status=SessionStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError, match="Valid triggers"):
            state_machine.transition(closed, SessionTrigger.MESSAGE_PROCESSED)

    def test_error_is_final(self, state_machine):
        failed = make_session(status=SessionStatus.ERROR)
        with pytest.raises(StateViolation):
            state_machine.transition(failed, SessionTrigger.UNRECOVERABLE_ERROR)

    def test_input_session_not_mutated(self, state_machine):
        session = make_session()
        state_machine.transition(session, SessionTrigger.OPERATOR_CLOSED)
        assert session.status == SessionStatus.ACTIVE

    def test_valid_triggers_from_active(self, state_machine):
        assert set(state_machine.valid_triggers(SessionStatus.ACTIVE)) == set(SessionTrigger)


class TestApplyExtraction:
    def test_merges_accepted_field(self, state_machine):
        session = state_machine.start(make_session(TWO_FIELDS)).session
        result = state_machine.apply_extraction(
            session, "msg-1", {"email": make_candidate("email", "a@b.com")}, now=NOW
        )
        assert result.session.extracted_fields == {"email": "a@b.com"}
        assert result.session.completed_count == 1
        assert result.session.completion_rate == 50.0
        assert result.session.field_sources["email"] == ExtractionSource.LLM
        assert result.session.status == SessionStatus.ACTIVE
        event = result.events[0]
        assert isinstance(event, FieldExtracted)
        assert event.field_id == "email"
        assert event.fields == {"email": "a@b.com"}

    def test_invalid_value_not_merged(self, state_machine):
        session = make_session(TWO_FIELDS)
        result = state_machine.apply_extraction(
            session, "msg-1", {"email": make_candidate("email", "nope")}
        )
        assert result.session.extracted_fields == {}
        assert result.events == []

    def test_unknown_field_ignored(self, state_machine):
        result = state_machine.apply_extraction(
            make_session(TWO_FIELDS), "msg-1", {"phone": make_candidate("phone", "555")}
        )
        assert "phone" not in result.session.extracted_fields

    def test_completes_when_all_required_accepted(self, state_machine):
        session = make_session(TWO_FIELDS)
        result = state_machine.apply_extraction(session, "msg-1", {
            "email": make_candidate("email", "a@b.com"),
            "name": make_candidate("name", "Ada"),
        }, now=NOW)
        assert result.session.status == SessionStatus.COMPLETED
        assert result.session.ended_at == NOW
        assert [type(e) for e in result.events] == [FieldExtracted, FieldExtracted, SessionCompleted]

    def test_no_required_fields_never_auto_completes(self, state_machine):
        schema = make_schema(make_field("notes", required=False))
        result = state_machine.apply_extraction(
            make_session(schema), "msg-1", {"notes": make_candidate("notes", "hello")}
        )
        assert result.session.status == SessionStatus.ACTIVE

    def test_lower_confidence_does_not_overwrite(self, state_machine):
        session = make_session(TWO_FIELDS)
        first = state_machine.apply_extraction(
            session, "msg-1", {"email": make_candidate("email", "a@b.com", confidence=90)}
        ).session
        second = state_machine.apply_extraction(
            first, "msg-2", {"email": make_candidate("email", "x@y.com", confidence=80)}
        )
        assert second.session.extracted_fields["email"] == "a@b.com"
        assert second.events == []

    def test_higher_confidence_overwrites(self, state_machine):
        session = make_session(TWO_FIELDS)
        first = state_machine.apply_extraction(
            session, "msg-1", {"email": make_candidate("email", "a@b.com", confidence=75)}
        ).session
        second = state_machine.apply_extraction(
            first, "msg-2", {"email": make_candidate("email", "x@y.com", confidence=95)}
        )
        assert second.session.extracted_fields["email"] == "x@y.com"
        assert second.session.field_confidence["email"] == 95

    def test_same_message_applied_twice_is_noop(self, state_machine):
        session = make_session(TWO_FIELDS)
        accepted = {"email": make_candidate("email", "a@b.com")}
        first = state_machine.apply_extraction(session, "msg-1", accepted)
        again = state_machine.apply_extraction(first.session, "msg-1", accepted)
        assert again.duplicate
        assert again.session == first.session
        assert again.events == []

    def test_same_value_twice_is_idempotent(self, state_machine):
        session = make_session(TWO_FIELDS)
        accepted = {"email": make_candidate("email", "a@b.com")}
        first = state_machine.apply_extraction(session, "msg-1", accepted).session
        second = state_machine.apply_extraction(first, "msg-2", accepted)
        assert second.session.extracted_fields == first.extracted_fields
        assert second.session.completed_count == first.completed_count
        assert second.events == []

    def test_rejects_terminal_session(self, state_machine):
        closed = make_session(TWO_FIELDS, status=SessionStatus.ABANDONED)
        with pytest.raises(InvalidTransitionError):
            state_machine.apply_extraction(closed, "msg-1", {})

    def test_default_tracker(self):
        machine = SessionStateMachine()
        result = machine.apply_extraction(
            make_session(), "msg-1", {"email": make_candidate("email", "a@b.com")}
        )
        assert result.session.status == SessionStatus.COMPLETED


class TestEventPayload:
    def test_canonical_shape(self):
        event = SessionCompleted(
            session_id="sess-1", agent_id="agent-1", occurred_at=NOW, fields={"email": "a@b.com"}
        )
        assert event.to_payload() == {
            "event": "session.completed",
            "sessionId": "sess-1",
            "fields": {"email": "a@b.com"},
            "timestamp": "2025-03-15T10:00:00+00:00",
        }

    def test_errored_event_type(self):
        event = SessionErrored(session_id="s", agent_id="a", occurred_at=NOW, reason="x")
        assert event.to_payload()["event"] == "session.error"
