"""Shared test fixtures and helpers."""

import asyncio
from dataclasses import replace
from typing import Callable, Optional

import httpx
import pytest

from agentforms.config import AppConfig, settings
from agentforms.conversation.completion import CompletionTracker
from agentforms.conversation.engine import SessionEngine
from agentforms.conversation.events import DomainEvent
from agentforms.conversation.state_machine import SessionStateMachine
from agentforms.diagnostics import NullDiagnostics
from agentforms.exceptions import ExtractionFailure
from agentforms.extraction.coordinator import FieldExtractionCoordinator
from agentforms.schemas.agent_schema import (
    Agent,
    AgentSchema,
    FieldType,
    FieldValidation,
    Persona,
    PersonaTone,
    SchemaField,
)
from agentforms.schemas.session_schema import (
    ExtractedField,
    ExtractionSource,
    Message,
    MessageRole,
    Session,
    StreamChunk,
)
from agentforms.schemas.validation_schema import ValidationRule
from agentforms.schemas.webhook_schema import EventType, RetryPolicy, Webhook
from agentforms.tools.datastore import InMemoryDatastore
from agentforms.validation.engine import RuleStore, ValidationRuleEngine
from agentforms.webhooks.delivery import WebhookDeliveryService


def make_field(
    field_id: str,
    label: Optional[str] = None,
    type: FieldType = FieldType.TEXT,
    required: bool = True,
    options: Optional[list[str]] = None,
    order: int = 0,
    validation: Optional[FieldValidation] = None,
    **kwargs,
) -> SchemaField:
    """Helper to create a SchemaField."""
    return SchemaField(
        id=field_id,
        label=label or field_id.replace("_", " ").title(),
        type=type,
        required=required,
        options=options,
        order=order,
        validation=validation,
        **kwargs,
    )


def make_schema(*fields: SchemaField) -> AgentSchema:
    return AgentSchema(fields=list(fields))


def make_agent(
    schema: Optional[AgentSchema] = None,
    agent_id: str = "agent-1",
    tone: PersonaTone = PersonaTone.FRIENDLY,
    welcome_message: Optional[str] = None,
) -> Agent:
    return Agent(
        id=agent_id,
        name="Lead Intake",
        form_schema=schema or make_schema(make_field("email", "Email", FieldType.EMAIL)),
        persona=Persona(name="Ava", description="Collects leads.", tone=tone),
        welcome_message=welcome_message,
    )


def make_message(
    content: str,
    role: MessageRole = MessageRole.VISITOR,
    session_id: str = "sess-test",
    message_id: Optional[str] = None,
) -> Message:
    message = Message(session_id=session_id, role=role, content=content)
    if message_id is not None:
        message = message.model_copy(update={"id": message_id})
    return message


def make_session(schema: Optional[AgentSchema] = None, **kwargs) -> Session:
    return Session(
        schema_ref=kwargs.pop("schema_ref", "agent-1"),
        form_schema=schema or make_schema(make_field("email", "Email", FieldType.EMAIL)),
        **kwargs,
    )


def make_candidate(
    field_id: str,
    value: str,
    confidence: int = 90,
    source: ExtractionSource = ExtractionSource.LLM,
) -> ExtractedField:
    return ExtractedField(field_id=field_id, value=value, confidence=confidence, source=source)


def make_rule(field_name: Optional[str], rule_type: str, error_message: str, **kwargs) -> ValidationRule:
    """Build a rule from the flat ``{rule_type, validation_criteria}`` record shape."""
    return ValidationRule.model_validate({
        "form_component": kwargs.pop("form_component", "agent_session"),
        "field_name": field_name,
        "rule_type": rule_type,
        "validation_criteria": kwargs.pop("validation_criteria", {}),
        "error_message": error_message,
        **kwargs,
    })


def make_webhook(
    agent_id: str = "agent-1",
    url: str = "https://hooks.example.com/leads",
    triggers: Optional[set[EventType]] = None,
    max_attempts: int = 1,
    **kwargs,
) -> Webhook:
    return Webhook(
        agent_id=agent_id,
        name=kwargs.pop("name", "CRM"),
        url=url,
        triggers=triggers or {EventType.SESSION_COMPLETED},
        retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_multiplier=2.0, initial_delay=1.0),
        **kwargs,
    )


def make_service(
    datastore: InMemoryDatastore,
    handler: Callable[[httpx.Request], httpx.Response],
    **kwargs,
) -> WebhookDeliveryService:
    """Delivery service whose HTTP calls are answered by ``handler``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", _no_sleep)
    return WebhookDeliveryService(datastore, client=client, **kwargs)


async def _no_sleep(_delay: float) -> None:
    return None


def settings_with_llm_key(api_key: str) -> AppConfig:
    """Copy of the loaded settings with the LLM API key swapped."""
    return replace(settings, model=replace(settings.model, llm_api_key=api_key))


class FakeExtractor:
    """PrimaryExtractor double: returns canned candidates or raises."""

    def __init__(
        self,
        results: Optional[dict[str, ExtractedField]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.results = results or {}
        self.error = error
        self.calls: list[list[Message]] = []

    async def extract_fields(self, messages, schema):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return dict(self.results)


class FailingExtractor(FakeExtractor):
    def __init__(self) -> None:
        super().__init__(error=ExtractionFailure("LLM unreachable"))


class FakeStreamer:
    """ResponseStreamer double yielding fixed chunks.

    With ``gate`` set, every chunk after the first waits for the event,
    which lets a test hold a stream open.
    """

    def __init__(self, chunks: list[StreamChunk], gate: Optional[asyncio.Event] = None) -> None:
        self.chunks = chunks
        self.gate = gate
        self.closed = False

    async def stream_reply(self, agent, messages, extracted):
        try:
            for i, chunk in enumerate(self.chunks):
                if i > 0 and self.gate is not None:
                    await self.gate.wait()
                yield chunk
        finally:
            self.closed = True


@pytest.fixture
def datastore():
    return InMemoryDatastore()


@pytest.fixture
def rule_store(datastore):
    return RuleStore(datastore)


@pytest.fixture
def rule_engine(rule_store):
    return ValidationRuleEngine(rule_store)


@pytest.fixture
def tracker(rule_engine):
    return CompletionTracker(rule_engine)


@pytest.fixture
def state_machine(tracker):
    return SessionStateMachine(tracker)


@pytest.fixture
def email_agent(datastore):
    agent = make_agent(welcome_message="Hi! I'm Ava.")
    datastore.agents.create(agent)
    return agent


@pytest.fixture
def engine(datastore, rule_engine):
    coordinator = FieldExtractionCoordinator(diagnostics=NullDiagnostics())
    return SessionEngine(datastore, coordinator=coordinator, rule_engine=rule_engine)


@pytest.fixture
def recorded_events(engine):
    events: list[DomainEvent] = []

    async def record(event: DomainEvent) -> None:
        events.append(event)

    engine.events.subscribe(record)
    return events
