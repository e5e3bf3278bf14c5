"""End-to-end tests for the session engine."""

import asyncio
import json

import pytest

from agentforms.conversation.engine import SessionEngine
from agentforms.conversation.events import FieldExtracted, SessionCompleted, SessionStarted
from agentforms.conversation.guardrails import GuardrailPipeline, RateLimitGuardrail
from agentforms.conversation.responder import ScriptedResponder
from agentforms.exceptions import (
    InvalidTransitionError,
    MessageRejected,
    RateLimitExceeded,
    RecordNotFound,
    StreamingInProgress,
)
from agentforms.extraction import coordinator as coordinator_module
from agentforms.extraction.coordinator import FieldExtractionCoordinator
from agentforms.extraction.llm_client import LLMExtractorClient
from agentforms.schemas.agent_schema import FieldType, FieldValidation
from agentforms.schemas.session_schema import (
    ExtractionSource,
    MessageRole,
    SessionStatus,
    StreamChunk,
)

from tests.conftest import (
    FailingExtractor,
    FakeExtractor,
    FakeStreamer,
    make_agent,
    make_candidate,
    make_field,
    make_rule,
    make_schema,
    settings_with_llm_key,
)


class TestStartSession:
    @pytest.mark.asyncio
    async def test_welcome_message_and_started_event(self, engine, email_agent, recorded_events):
        session = await engine.start_session(email_agent.id)
        transcript = engine.get_transcript(session.id)
        assert [m.content for m in transcript] == ["Hi! I'm Ava."]
        assert transcript[0].role == MessageRole.AGENT
        assert transcript[0].metadata == {"type": "welcome"}
        assert isinstance(recorded_events[0], SessionStarted)
        assert session.required_count == 1

    @pytest.mark.asyncio
    async def test_unknown_agent(self, engine):
        with pytest.raises(RecordNotFound):
            await engine.start_session("agent-missing")

    @pytest.mark.asyncio
    async def test_session_keeps_schema_snapshot(self, engine, datastore, email_agent):
        session = await engine.start_session(email_agent.id)
        datastore.agents.update(email_agent.id, form_schema=make_schema(make_field("phone")))
        assert engine.get_session(session.id).form_schema.field_ids == {"email"}


class TestEmailScenario:
    @pytest.mark.asyncio
    async def test_single_email_message_completes(self, engine, email_agent, rule_store, recorded_events):
        rule_store.create(make_rule("email", "email", "Please enter a valid email"))
        session = await engine.start_session(email_agent.id)

        turn = await engine.handle_visitor_message(session.id, "my email is a@b.com")

        assert turn.accepted["email"].value == "a@b.com"
        assert turn.accepted["email"].source == ExtractionSource.FALLBACK
        assert turn.validation_errors == {}
        assert turn.message.validation_state == "valid"
        assert turn.completed
        stored = engine.get_session(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert (stored.completed_count, stored.required_count, stored.completion_rate) == (1, 1, 100.0)
        assert [type(e) for e in recorded_events] == [SessionStarted, FieldExtracted, SessionCompleted]

    @pytest.mark.asyncio
    async def test_rule_error_surfaces_on_message(self, engine, datastore, rule_store):
        agent = make_agent(make_schema(make_field("code", "Promo code")))
        datastore.agents.create(agent)
        rule_store.create(make_rule("code", "min_length", "Code is too short", validation_criteria={"min": 30}))
        session = await engine.start_session(agent.id)

        turn = await engine.handle_visitor_message(session.id, "my promo code is SAVE")

        assert turn.validation_errors == {"code": ["Code is too short"]}
        assert turn.message.validation_state == "invalid"
        assert turn.session.extracted_fields == {}
        assert turn.session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_message_without_fields_has_no_validation_state(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        turn = await engine.handle_visitor_message(session.id, "hello")
        assert turn.message.validation_state is None
        assert turn.accepted == {}


class TestCorrections:
    @pytest.mark.asyncio
    async def test_rejected_number_is_replaced_by_correction(self, engine, datastore):
        agent = make_agent(make_schema(
            make_field("age", "Age", FieldType.NUMBER, validation=FieldValidation(min=18)),
        ))
        datastore.agents.create(agent)
        session = await engine.start_session(agent.id)

        first = await engine.handle_visitor_message(session.id, "I am 5")
        assert first.validation_errors == {"age": ["Must be at least 18"]}
        assert first.session.extracted_fields == {}

        second = await engine.handle_visitor_message(session.id, "sorry, I am 25")
        assert second.accepted["age"].value == "25"
        assert second.validation_errors == {}
        assert second.message.validation_state == "valid"
        assert second.session.extracted_fields == {"age": "25"}
        assert second.completed

    @pytest.mark.asyncio
    async def test_short_promo_code_then_longer_one(self, engine, datastore, rule_store):
        agent = make_agent(make_schema(make_field("code", "Promo code")))
        datastore.agents.create(agent)
        rule_store.create(make_rule("code", "min_length", "Code is too short", validation_criteria={"min": 30}))
        session = await engine.start_session(agent.id)

        first = await engine.handle_visitor_message(session.id, "my promo code is SAVE")
        assert first.message.validation_state == "invalid"

        corrected = "my promo code is SAVEBIGONSUMMERSTUFF"
        second = await engine.handle_visitor_message(session.id, corrected)
        assert second.validation_errors == {}
        assert second.session.extracted_fields == {"code": corrected}
        assert second.completed

    @pytest.mark.asyncio
    async def test_weaker_candidate_for_filled_field_is_not_validated(self, datastore):
        agent = make_agent(make_schema(
            make_field("email", "Email", FieldType.EMAIL),
            make_field("company", "Company"),
        ))
        datastore.agents.create(agent)
        primary = FakeExtractor({"email": make_candidate("email", "a@b.com", confidence=95)})
        engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator(primary=primary))
        session = await engine.start_session(agent.id)
        await engine.handle_visitor_message(session.id, "a@b.com")

        primary.results = {"email": make_candidate("email", "not-an-email", confidence=80)}
        turn = await engine.handle_visitor_message(session.id, "thanks")

        assert turn.validation_errors == {}
        assert turn.message.validation_state is None
        assert turn.session.extracted_fields == {"email": "a@b.com"}


class TestExtractionDegradation:
    @pytest.mark.asyncio
    async def test_llm_failure_is_invisible(self, datastore, email_agent):
        engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator(primary=FailingExtractor()))
        session = await engine.start_session(email_agent.id)
        turn = await engine.handle_visitor_message(session.id, "reach me at a@b.com")
        assert turn.completed

    @pytest.mark.asyncio
    async def test_low_confidence_llm_result_ignored(self, datastore, email_agent):
        primary = FakeExtractor({"email": make_candidate("email", "a@b.com", confidence=40)})
        engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator(primary=primary))
        session = await engine.start_session(email_agent.id)
        turn = await engine.handle_visitor_message(session.id, "maybe a@b.com")
        assert turn.accepted == {}
        assert turn.session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_extractor_sees_full_transcript(self, datastore, email_agent):
        primary = FakeExtractor()
        engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator(primary=primary))
        session = await engine.start_session(email_agent.id)
        await engine.handle_visitor_message(session.id, "hello")
        await engine.handle_visitor_message(session.id, "still here")
        assert [m.content for m in primary.calls[-1]] == ["Hi! I'm Ava.", "hello", "still here"]


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivered_message_id_is_noop(self, engine, datastore):
        agent = make_agent(make_schema(
            make_field("email", "Email", FieldType.EMAIL),
            make_field("budget", "Budget", FieldType.NUMBER),
        ))
        datastore.agents.create(agent)
        session = await engine.start_session(agent.id)

        first = await engine.handle_visitor_message(session.id, "a@b.com", message_id="m-1")
        again = await engine.handle_visitor_message(session.id, "a@b.com", message_id="m-1")

        assert again.duplicate
        assert again.session.completed_count == first.session.completed_count == 1
        assert len(engine.get_transcript(session.id)) == 1


class TestLifecycleErrors:
    @pytest.mark.asyncio
    async def test_completed_session_rejects_messages(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        await engine.handle_visitor_message(session.id, "a@b.com")
        with pytest.raises(InvalidTransitionError):
            await engine.handle_visitor_message(session.id, "c@d.com")

    @pytest.mark.asyncio
    async def test_operator_close(self, engine, email_agent, recorded_events):
        session = await engine.start_session(email_agent.id)
        closed = await engine.close_session(session.id)
        assert closed.status == SessionStatus.COMPLETED
        assert isinstance(recorded_events[-1], SessionCompleted)

    @pytest.mark.asyncio
    async def test_abandon_then_close_rejected(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        await engine.abandon_session(session.id)
        with pytest.raises(InvalidTransitionError):
            await engine.close_session(session.id)

    @pytest.mark.asyncio
    async def test_fail_session_keeps_transcript(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        await engine.handle_visitor_message(session.id, "hello")
        failed = await engine.fail_session(session.id, "upstream outage")
        assert failed.status == SessionStatus.ERROR
        assert failed.error_reason == "upstream outage"
        assert len(engine.get_transcript(session.id)) == 2

    @pytest.mark.asyncio
    async def test_storage_failure_moves_to_error(self, engine, datastore, email_agent):
        session = await engine.start_session(email_agent.id)

        def broken_create(record):
            raise OSError("disk full")

        datastore.messages.create = broken_create
        with pytest.raises(OSError):
            await engine.handle_visitor_message(session.id, "a@b.com")
        stored = engine.get_session(session.id)
        assert stored.status == SessionStatus.ERROR
        assert "disk full" in stored.error_reason


class TestGuardrails:
    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        with pytest.raises(MessageRejected) as exc_info:
            await engine.handle_visitor_message(session.id, "   ")
        assert exc_info.value.violation_type == "empty_message"
        assert len(engine.get_transcript(session.id)) == 1

    @pytest.mark.asyncio
    async def test_rate_limit(self, datastore, email_agent):
        guardrails = GuardrailPipeline(rate=RateLimitGuardrail(max_per_minute=2))
        engine = SessionEngine(datastore, guardrails=guardrails)
        session = await engine.start_session(email_agent.id)
        await engine.handle_visitor_message(session.id, "one")
        await engine.handle_visitor_message(session.id, "two")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await engine.handle_visitor_message(session.id, "three")
        assert exc_info.value.retry_after > 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_session_messages_serialised(self, datastore):
        agent = make_agent(make_schema(
            make_field("email", "Email", FieldType.EMAIL),
            make_field("budget", "Budget", FieldType.NUMBER),
        ))
        datastore.agents.create(agent)

        class SlowExtractor:
            def __init__(self):
                self.active = 0
                self.max_active = 0

            async def extract_fields(self, messages, schema):
                self.active += 1
                self.max_active = max(self.max_active, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return {}

        slow = SlowExtractor()
        engine = SessionEngine(datastore, coordinator=FieldExtractionCoordinator(primary=slow))
        session = await engine.start_session(agent.id)

        await asyncio.gather(*(
            engine.handle_visitor_message(session.id, f"message {i}") for i in range(5)
        ))

        assert slow.max_active == 1
        contents = [m.content for m in engine.get_transcript(session.id)]
        assert sorted(contents) == [f"message {i}" for i in range(5)]
        assert len(engine.get_session(session.id).processed_message_ids) == 5


class TestReplies:
    @pytest.mark.asyncio
    async def test_scripted_reply_appended(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        reply = await engine.stream_reply(session.id)
        assert reply.content == "Hi! Could you please share your email?"
        assert engine.get_transcript(session.id)[-1] == reply

    @pytest.mark.asyncio
    async def test_concurrent_stream_rejected(self, datastore, email_agent):
        gate = asyncio.Event()
        streamer = FakeStreamer(
            [StreamChunk(content="One"), StreamChunk(content="One two", done=True)], gate=gate
        )
        engine = SessionEngine(datastore, responder=streamer)
        session = await engine.start_session(email_agent.id)

        first = asyncio.create_task(engine.stream_reply(session.id))
        await asyncio.sleep(0.01)
        assert engine.is_streaming(session.id)
        with pytest.raises(StreamingInProgress):
            await engine.stream_reply(session.id)

        gate.set()
        reply = await first
        assert reply.content == "One two"

    @pytest.mark.asyncio
    async def test_close_stops_stream(self, datastore, email_agent):
        gate = asyncio.Event()
        streamer = FakeStreamer(
            [StreamChunk(content="One"), StreamChunk(content="One two", done=True)], gate=gate
        )
        engine = SessionEngine(datastore, responder=streamer)
        session = await engine.start_session(email_agent.id)

        task = asyncio.create_task(engine.stream_reply(session.id))
        await asyncio.sleep(0.01)
        await engine.close_session(session.id)

        assert await task is None
        assert [m.content for m in engine.get_transcript(session.id)] == ["Hi! I'm Ava."]


class TestExport:
    @pytest.mark.asyncio
    async def test_export_document(self, engine, email_agent):
        session = await engine.start_session(email_agent.id)
        await engine.handle_visitor_message(session.id, "a@b.com")
        document = json.loads(engine.export_session(session.id))
        assert document["session"]["id"] == session.id
        assert document["session"]["status"] == "completed"
        assert [m["role"] for m in document["messages"]] == ["agent", "visitor"]
        assert document["deliveries"] == []
        assert "exported_at" in document


class TestSessionResources:
    @pytest.mark.asyncio
    async def test_ended_sessions_leave_no_runtime_state(self, datastore, email_agent):
        guardrails = GuardrailPipeline()
        engine = SessionEngine(datastore, guardrails=guardrails)
        for _ in range(3):
            session = await engine.start_session(email_agent.id)
            await engine.handle_visitor_message(session.id, "hello")
            await engine.stream_reply(session.id)
            await engine.close_session(session.id)

        finished = await engine.start_session(email_agent.id)
        turn = await engine.handle_visitor_message(finished.id, "a@b.com")
        assert turn.completed
        await engine.stream_reply(finished.id)

        assert len(engine._locks) == 0
        assert engine._streams == {}
        assert guardrails.rate.tracked_sessions == 0

    @pytest.mark.asyncio
    async def test_unknown_session_creates_no_lock(self, engine):
        for i in range(3):
            with pytest.raises(RecordNotFound):
                await engine.handle_visitor_message(f"missing-{i}", "hi")
            with pytest.raises(RecordNotFound):
                await engine.close_session(f"missing-{i}")
        assert len(engine._locks) == 0


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_without_key_runs_offline(self, datastore, monkeypatch):
        monkeypatch.setattr(coordinator_module, "settings", settings_with_llm_key(""))
        engine = SessionEngine.from_settings(datastore)
        assert engine.coordinator.primary is None
        assert isinstance(engine.responder, ScriptedResponder)
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_with_key_extracts_and_replies_through_llm(self, datastore, monkeypatch):
        monkeypatch.setattr(coordinator_module, "settings", settings_with_llm_key("sk-test"))
        engine = SessionEngine.from_settings(datastore)
        assert isinstance(engine.coordinator.primary, LLMExtractorClient)
        assert engine.responder is engine.coordinator.primary
        await engine.aclose()
        assert engine.coordinator.primary._client.is_closed

    @pytest.mark.asyncio
    async def test_explicit_responder_wins(self, datastore, monkeypatch):
        monkeypatch.setattr(coordinator_module, "settings", settings_with_llm_key("sk-test"))
        streamer = FakeStreamer([])
        engine = SessionEngine.from_settings(datastore, responder=streamer)
        assert engine.responder is streamer
        await engine.aclose()
