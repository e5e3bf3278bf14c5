"""
Webhook delivery: HTTP POST of domain events with a recorded attempt log.

Every attempt is its own Delivery row. A row is written as ``pending``
before the request goes out and moved to ``success``, ``retrying`` or
``failed`` once the outcome is known, so a crash mid-request leaves a
pending row that ``reconcile_stale`` later turns into ``failed`` for an
operator to resend. A ``retrying`` row whose follow-up attempt never
happens is moved to ``failed`` the same way.

Outbound calls share one httpx.AsyncClient with a request timeout and
are bounded by a semaphore.

Usage:
    service = WebhookDeliveryService(datastore)
    deliveries = await service.deliver_event(event)
    retry = await service.resend(webhook.id, session.id)
    report = service.health_report(agent_id="agent-1")
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx

from agentforms.config import settings
from agentforms.conversation.events import DomainEvent
from agentforms.exceptions import DeliveryFailure, RecordNotFound
from agentforms.schemas.webhook_schema import (
    Delivery,
    DeliveryStatus,
    EventType,
    Webhook,
    WebhookHealth,
)
from agentforms.tools.datastore import InMemoryDatastore
from agentforms.utils import utc_now
from agentforms.webhooks.health import compute_health
from agentforms.webhooks.signing import SIGNATURE_HEADER, canonical_body, sign_payload

logger = logging.getLogger(__name__)

RESPONSE_BODY_LIMIT = 1000
DEFAULT_LOG_LIMIT = 100
TEST_SESSION_ID = "test-session"


class WebhookDeliveryService:
    """Sends event payloads to subscribed webhooks and keeps the delivery log."""

    def __init__(
        self,
        datastore: InMemoryDatastore,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        count_test_deliveries: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = datastore
        self._timeout = timeout or settings.webhooks.timeout_sec
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.webhooks.max_concurrency)
        self._count_tests = (
            settings.webhooks.count_test_deliveries
            if count_test_deliveries is None
            else count_test_deliveries
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "WebhookDeliveryService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def matching_webhooks(self, agent_id: str, event_type: EventType) -> list[Webhook]:
        """Enabled webhooks of ``agent_id`` subscribed to ``event_type``."""
        return self._store.webhooks.list(
            where={"agent_id": agent_id, "enabled": True},
            predicate=lambda w: event_type in w.triggers,
        )

    async def deliver_event(self, event: DomainEvent) -> list[Delivery]:
        """Deliver one event to every matching webhook concurrently.

        Returns the final Delivery of each webhook.
        """
        hooks = self.matching_webhooks(event.agent_id, event.event_type)
        if not hooks:
            return []
        payload = event.to_payload()
        return list(await asyncio.gather(*(
            self.deliver(hook, event.event_type, payload, session_id=event.session_id)
            for hook in hooks
        )))

    async def deliver(
        self,
        webhook: Webhook,
        event_type: EventType,
        payload: dict[str, Any],
        session_id: Optional[str] = None,
        first_attempt: int = 1,
        max_attempts: Optional[int] = None,
        is_test: bool = False,
    ) -> Delivery:
        """
        POST ``payload`` to ``webhook.url``, retrying per the webhook's policy.

        Args:
            webhook: Target webhook.
            event_type: Event recorded on each attempt row.
            payload: JSON body.
            session_id: Session the event belongs to, if any.
            first_attempt: Attempt number of the first request.
            max_attempts: Overrides ``webhook.retry_policy.max_attempts``.
            is_test: Marks the rows as test deliveries.

        Returns:
            The Delivery row of the last attempt made.
        """
        policy = webhook.retry_policy
        budget = max_attempts or policy.max_attempts
        last_attempt = first_attempt + budget - 1

        attempt = first_attempt
        while True:
            delivery = await self._attempt(
                webhook, event_type, payload, session_id,
                attempt=attempt, last_attempt=last_attempt, is_test=is_test,
            )
            if delivery.status == DeliveryStatus.SUCCESS or attempt >= last_attempt:
                return delivery

            delay = policy.delay_before(attempt - first_attempt + 2)
            logger.info(
                "Webhook %s attempt %d failed, retrying in %.1fs",
                webhook.id, attempt, delay,
            )
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                self._give_up(delivery, "retry cancelled before the next attempt")
                raise

            current = self._store.webhooks.find(webhook.id)
            if current is None or not current.enabled:
                logger.info("Webhook %s removed or disabled, abandoning retries", webhook.id)
                return self._give_up(delivery, "webhook removed or disabled before the next attempt")
            webhook = current
            attempt += 1

    async def resend(
        self,
        webhook_id: str,
        session_id: str,
        event_type: Optional[EventType] = None,
    ) -> Delivery:
        """Operator resend: one fresh attempt reusing the last recorded body.

        Raises:
            RecordNotFound: No earlier delivery exists for this webhook and session.
        """
        webhook = self._store.webhooks.get(webhook_id)
        where: dict[str, Any] = {"webhook_id": webhook_id, "session_id": session_id, "is_test": False}
        if event_type is not None:
            where["event"] = event_type
        previous = self._store.deliveries.list(where=where, descending=True, limit=1)
        if not previous:
            raise RecordNotFound("webhook_deliveries", f"{webhook_id}/{session_id}")

        last = previous[0]
        logger.info(
            "Resending %s for session %s to webhook %s (attempt %d)",
            last.event.value, session_id, webhook_id, last.attempt + 1,
        )
        return await self.deliver(
            webhook, last.event, last.request_body, session_id=session_id,
            first_attempt=last.attempt + 1, max_attempts=1,
        )

    async def send_test(self, webhook_id: str) -> Delivery:
        """Send a sample payload. Never triggered by a session event."""
        webhook = self._store.webhooks.get(webhook_id)
        payload = {
            "event": EventType.WEBHOOK_TEST.value,
            "sessionId": TEST_SESSION_ID,
            "fields": {"example_field": "example value"},
            "timestamp": utc_now().isoformat(),
        }
        return await self.deliver(
            webhook, EventType.WEBHOOK_TEST, payload, max_attempts=1, is_test=True
        )

    async def _attempt(
        self,
        webhook: Webhook,
        event_type: EventType,
        payload: dict[str, Any],
        session_id: Optional[str],
        attempt: int,
        last_attempt: int,
        is_test: bool,
    ) -> Delivery:
        delivery = self._store.deliveries.create(Delivery(
            webhook_id=webhook.id,
            session_id=session_id,
            event=event_type,
            attempt=attempt,
            max_attempts=last_attempt,
            is_test=is_test,
            request_url=webhook.url,
            request_body=payload,
        ))

        started = time.perf_counter()
        http_status: Optional[int] = None
        response_body: Optional[str] = None
        error: Optional[str] = None
        try:
            http_status, response_body = await self._post(webhook, event_type, delivery.id, payload)
        except DeliveryFailure as exc:
            http_status = exc.status_code
            error = str(exc)
            response_body = exc.response_body
        duration_ms = int((time.perf_counter() - started) * 1000)

        if error is None:
            status = DeliveryStatus.SUCCESS
        elif attempt >= last_attempt:
            status = DeliveryStatus.FAILED
        else:
            status = DeliveryStatus.RETRYING

        finished = self._store.deliveries.update(
            delivery.id,
            status=status,
            http_status=http_status,
            response_body=response_body,
            error_message=error,
            duration_ms=duration_ms,
            completed_at=utc_now(),
        )
        self._record_outcome(finished)

        if error is None:
            logger.info(
                "Delivered %s to webhook %s (HTTP %s, %dms)",
                event_type.value, webhook.id, http_status, duration_ms,
            )
        else:
            logger.warning(
                "Delivery %s to webhook %s failed on attempt %d/%d: %s",
                delivery.id, webhook.id, attempt, last_attempt, error,
            )
        return finished

    async def _post(
        self,
        webhook: Webhook,
        event_type: EventType,
        delivery_id: str,
        payload: dict[str, Any],
    ) -> tuple[int, str]:
        body = canonical_body(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{settings.service_name}-webhooks",
            "X-Webhook-Event": event_type.value,
            "X-Webhook-Delivery": delivery_id,
        }
        if webhook.secret:
            headers[SIGNATURE_HEADER] = sign_payload(webhook.secret, body)

        try:
            async with self._semaphore:
                response = await self._client.post(
                    webhook.url, content=body, headers=headers, timeout=self._timeout
                )
        except httpx.TimeoutException as exc:
            raise DeliveryFailure(f"Request timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Network error: {type(exc).__name__}: {exc}") from exc

        text = response.text[:RESPONSE_BODY_LIMIT]
        if not response.is_success:
            raise DeliveryFailure(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=text,
            )
        return response.status_code, text

    def _give_up(self, delivery: Delivery, reason: str) -> Delivery:
        """Finalize a ``retrying`` row that will get no further attempt.

        The attempt itself was already counted as a failure.
        """
        error = f"{delivery.error_message}; {reason}" if delivery.error_message else reason
        failed = self._store.deliveries.update(
            delivery.id, status=DeliveryStatus.FAILED, error_message=error
        )
        if self._store.webhooks.find(delivery.webhook_id) is not None:
            self._store.webhooks.update(
                delivery.webhook_id, last_delivery_status=DeliveryStatus.FAILED
            )
        return failed

    def _record_outcome(self, delivery: Delivery) -> None:
        """Fold a finished attempt into the webhook's counters."""
        if delivery.is_test and not self._count_tests:
            return
        webhook = self._store.webhooks.find(delivery.webhook_id)
        if webhook is None:
            return
        succeeded = delivery.status == DeliveryStatus.SUCCESS
        self._store.webhooks.update(
            webhook.id,
            total_deliveries=webhook.total_deliveries + 1,
            successful_deliveries=webhook.successful_deliveries + (1 if succeeded else 0),
            failed_deliveries=webhook.failed_deliveries + (0 if succeeded else 1),
            last_delivery_status=delivery.status,
            last_delivery_at=delivery.completed_at,
        )

    # ------------------------------------------------------------------
    # Delivery log
    # ------------------------------------------------------------------

    def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> list[Delivery]:
        """Attempts for one webhook, newest first."""
        where: dict[str, Any] = {"webhook_id": webhook_id}
        if status is not None:
            where["status"] = status
        return self._store.deliveries.list(where=where, descending=True, limit=limit)

    def deliveries_for_session(self, session_id: str) -> list[Delivery]:
        """Attempts made on behalf of one session, oldest first."""
        return self._store.deliveries.list(where={"session_id": session_id})

    def reconcile_stale(
        self, older_than: timedelta, now: Optional[datetime] = None
    ) -> list[Delivery]:
        """Fail attempts a crash left behind.

        Covers ``pending`` rows that never finished and ``retrying`` rows
        whose follow-up attempt never happened. Earlier ``retrying`` rows of
        a chain that did continue are history and stay as they are.
        """
        now = now or utc_now()
        cutoff = now - older_than
        reconciled = []

        for delivery in self._store.deliveries.list(
            where={"status": DeliveryStatus.PENDING},
            predicate=lambda d: d.created_at < cutoff,
        ):
            failed = self._store.deliveries.update(
                delivery.id,
                status=DeliveryStatus.FAILED,
                error_message="Delivery interrupted before completion",
                completed_at=now,
            )
            self._record_outcome(failed)
            reconciled.append(failed)

        for delivery in self._store.deliveries.list(
            where={"status": DeliveryStatus.RETRYING},
            predicate=lambda d: (d.completed_at or d.created_at) < cutoff,
        ):
            if self._has_later_attempt(delivery):
                continue
            reconciled.append(self._give_up(delivery, "retry interrupted before the next attempt"))

        if reconciled:
            logger.warning("Marked %d stale delivery attempt(s) as failed", len(reconciled))
        return reconciled

    def _has_later_attempt(self, delivery: Delivery) -> bool:
        return bool(self._store.deliveries.list(
            where={
                "webhook_id": delivery.webhook_id,
                "session_id": delivery.session_id,
                "event": delivery.event,
                "is_test": delivery.is_test,
            },
            predicate=lambda d: d.attempt > delivery.attempt,
            limit=1,
        ))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self, webhook_id: str) -> WebhookHealth:
        webhook = self._store.webhooks.get(webhook_id)
        recent = self._store.deliveries.list(
            where={"webhook_id": webhook_id},
            predicate=lambda d: self._count_tests or not d.is_test,
            descending=True,
            limit=settings.webhooks.health_window,
        )
        return compute_health(webhook, recent)

    def health_report(self, agent_id: Optional[str] = None) -> list[WebhookHealth]:
        """Health of every enabled webhook, optionally for one agent."""
        where: dict[str, Any] = {"enabled": True}
        if agent_id is not None:
            where["agent_id"] = agent_id
        return [self.health(w.id) for w in self._store.webhooks.list(where=where)]
