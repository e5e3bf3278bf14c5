"""
Background delivery worker.

Subscribes to the session EventBus, turns each domain event into one job
per matching webhook and drains the job queue with a fixed number of
consumer tasks. Publishing an event only enqueues work, so a slow or
failing receiver never holds up the visitor's turn.

Usage:
    worker = DeliveryWorker(service)
    engine.events.subscribe(worker.handle_event)
    worker.start()
    ...
    await worker.join()
    await worker.stop()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from agentforms.config import settings
from agentforms.conversation.events import DomainEvent
from agentforms.schemas.webhook_schema import Webhook
from agentforms.webhooks.delivery import WebhookDeliveryService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryJob:
    webhook: Webhook
    event: DomainEvent


class DeliveryWorker:
    """Multi-consumer queue in front of a WebhookDeliveryService."""

    def __init__(self, service: WebhookDeliveryService, concurrency: Optional[int] = None) -> None:
        self._service = service
        self._concurrency = concurrency or settings.webhooks.max_concurrency
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def handle_event(self, event: DomainEvent) -> None:
        """EventBus handler: enqueue one job per subscribed webhook."""
        for webhook in self._service.matching_webhooks(event.agent_id, event.event_type):
            self._queue.put_nowait(DeliveryJob(webhook=webhook, event=event))
            logger.debug("Queued %s for webhook %s", event.event_type.value, webhook.id)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._consume(n), name=f"webhook-worker-{n}")
            for n in range(self._concurrency)
        ]
        logger.info("Started %d webhook delivery worker(s)", self._concurrency)

    async def join(self) -> None:
        """Wait until every queued job has been attempted."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def __aenter__(self) -> "DeliveryWorker":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.join()
        await self.stop()

    async def _consume(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                payload = job.event.to_payload()
                await self._service.deliver(
                    job.webhook, job.event.event_type, payload, session_id=job.event.session_id
                )
            except Exception:
                logger.exception(
                    "Worker %d: delivery of %s to webhook %s crashed",
                    n, job.event.event_type.value, job.webhook.id,
                )
            finally:
                self._queue.task_done()
