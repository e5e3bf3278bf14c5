"""
Console demo: runs a full lead-intake session against an in-memory datastore.

With LLM_API_KEY set the engine extracts and replies through the LLM.
Without it the demo runs offline on the pattern fallback extractor and the
scripted responder. Webhook deliveries are answered by a local mock receiver
so the delivery log and health report have something to show.

Usage:
    python console_demo.py
    python console_demo.py --scenario lead
    python console_demo.py --scenario abandon
"""

import argparse
import asyncio
import logging
from typing import Optional

import httpx

from agentforms.conversation.engine import SessionEngine
from agentforms.conversation.events import DomainEvent
from agentforms.diagnostics import NullDiagnostics
from agentforms.exceptions import AgentFormsError
from agentforms.schemas.agent_schema import (
    Agent,
    AgentSchema,
    FieldType,
    FieldValidation,
    Persona,
    PersonaTone,
    SchemaField,
)
from agentforms.schemas.session_schema import SessionStatus
from agentforms.schemas.webhook_schema import EventType, Webhook
from agentforms.tools.datastore import InMemoryDatastore
from agentforms.webhooks.delivery import WebhookDeliveryService
from agentforms.webhooks.worker import DeliveryWorker

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_AGENT = Agent(
    id="agent-demo",
    name="Lead Intake",
    form_schema=AgentSchema(fields=[
        SchemaField(id="name", label="Name", required=True, order=0),
        SchemaField(id="email", label="Email", type=FieldType.EMAIL, required=True, order=1,
                    help_text="We only use it to send your quote."),
        SchemaField(id="team_size", label="Team size", type=FieldType.NUMBER, required=True,
                    order=2, validation=FieldValidation(min=1, max=10000)),
        SchemaField(id="plan", label="Plan", type=FieldType.SELECT, required=True, order=3,
                    options=["Starter", "Growth", "Enterprise"]),
        SchemaField(id="notes", label="Notes", order=4),
    ]),
    persona=Persona(name="Ava", description="Collects sales leads.", tone=PersonaTone.FRIENDLY),
    welcome_message="Hi! I'm Ava. I'll grab a few details so the team can follow up.",
)


def _mock_receiver(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"received": True})


class ConsoleSession:
    """Simulates a visitor chatting with a published agent in the terminal."""

    SCENARIOS: dict[str, list[str]] = {
        "lead": [
            "Hi, my name is Jordan Lee",
            "jordan@example.com",
            "We have a team of 12 people",
            "The Growth plan sounds right",
        ],
        "abandon": [
            "Hello, my name is Sam",
            "not sure yet",
        ],
    }

    def __init__(self) -> None:
        self.store = InMemoryDatastore()
        self.store.agents.create(DEMO_AGENT)
        self.webhook = self.store.webhooks.create(Webhook(
            agent_id=DEMO_AGENT.id,
            name="Demo CRM",
            url="https://crm.local/hooks/leads",
            triggers={EventType.SESSION_COMPLETED, EventType.FIELD_EXTRACTED},
            secret="demo-secret",
        ))
        self.engine = SessionEngine.from_settings(self.store, diagnostics=NullDiagnostics())
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(_mock_receiver))
        self.delivery = WebhookDeliveryService(self.store, client=self.http)
        self.worker = DeliveryWorker(self.delivery, concurrency=2)
        self.engine.events.subscribe(self.worker.handle_event)
        self.engine.events.subscribe(self._log_event)
        self.session_id = ""

    def agent_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[{DEMO_AGENT.persona.name}]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    async def _log_event(self, event: DomainEvent) -> None:
        self.system_log(f"Event: {event.event_type.value}")

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        async with self.worker:
            await self._open()
            for step in steps:
                if not self._active():
                    break
                print(f"\n{BLUE}[Visitor] {RESET}{step}")
                await self._process_input(step)
            if self._active() and scenario == "abandon":
                await self.engine.abandon_session(self.session_id)
                self.system_log("Idle timeout: session abandoned")
        self._summary()

    async def run(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        async with self.worker:
            await self._open()
            while self._active():
                user_input = (await asyncio.to_thread(input, f"\n{BLUE}[Visitor] {RESET}")).strip()
                if not user_input:
                    continue
                if user_input.lower() in ("quit", "exit", "q"):
                    await self.engine.close_session(self.session_id)
                    print(f"\n{DIM}Session closed.{RESET}")
                    break
                await self._process_input(user_input)
        self._summary()

    # ------------------------------------------------------------------ #
    # Turn handling
    # ------------------------------------------------------------------ #

    async def _open(self) -> None:
        session = await self.engine.start_session(DEMO_AGENT.id)
        self.session_id = session.id
        for message in self.engine.get_transcript(session.id):
            self.agent_say(message.content)
        await self._reply()

    async def _process_input(self, text: str) -> None:
        try:
            turn = await self.engine.handle_visitor_message(self.session_id, text)
        except AgentFormsError as exc:
            self.agent_say(f"Sorry, I couldn't take that: {exc}")
            return

        for field_id, candidate in turn.accepted.items():
            status = "INVALID" if field_id in turn.validation_errors else "OK"
            self.system_log(
                f"Field '{field_id}': {status} ({candidate.source.value}, {candidate.confidence}%)"
            )
        for field_id, errors in turn.validation_errors.items():
            self.system_log(f"{YELLOW}{field_id}: {'; '.join(errors)}{RESET}")

        session = turn.session
        self.system_log(
            f"Progress: {session.completed_count}/{session.required_count} "
            f"({session.completion_rate:.0%}), status={session.status.value}"
        )
        await self._reply()

    async def _reply(self) -> None:
        reply = await self.engine.stream_reply(self.session_id)
        if reply is not None:
            self.agent_say(reply.content)

    def _active(self) -> bool:
        return self.engine.get_session(self.session_id).status == SessionStatus.ACTIVE

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  AGENTFORMS - {title}{RESET}")
        print(f"{BOLD}  Agent: {DEMO_AGENT.name}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    def _summary(self) -> None:
        session = self.engine.get_session(self.session_id)
        health = self.delivery.health(self.webhook.id)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Session {session.status.value}.{RESET}")
        print(f"{DIM}  Fields: {dict(session.extracted_fields)}{RESET}")
        print(f"{DIM}  Deliveries: {len(self.delivery.deliveries_for_session(session.id))}, "
              f"webhook health: {health.status.value} ({health.success_rate}%){RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")


async def _main(scenario: Optional[str]) -> None:
    session = ConsoleSession()
    try:
        if scenario:
            await session.run_scenario(scenario)
        else:
            await session.run()
    finally:
        await session.engine.aclose()
        await session.http.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument("--verbose", action="store_true", help="Show engine logs")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_main(args.scenario))


if __name__ == "__main__":
    main()
