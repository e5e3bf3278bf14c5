"""
In-memory datastore standing in for the managed persistence collaborator.

In production this would be a hosted row/document store. The engine only
relies on what is exposed here: get/list/create/update/delete by id with
equality filters, and no transactions across collections.
"""

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

from agentforms.exceptions import RecordNotFound
from agentforms.schemas.agent_schema import Agent
from agentforms.schemas.session_schema import Message, Session
from agentforms.schemas.validation_schema import ValidationRule
from agentforms.schemas.webhook_schema import Delivery, Webhook

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class Collection(Generic[T]):
    """A named table of pydantic records keyed by their ``id`` attribute.

    Iteration order is insertion order, which is what gives message logs
    and delivery logs their append order.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._records: dict[str, T] = {}

    def __len__(self) -> int:
        return len(self._records)

    def create(self, record: T) -> T:
        record_id = getattr(record, "id")
        if record_id in self._records:
            raise ValueError(f"{self.name} record '{record_id}' already exists")
        self._records[record_id] = record
        logger.debug("%s: created %s", self.name, record_id)
        return record

    def find(self, record_id: str) -> Optional[T]:
        return self._records.get(record_id)

    def get(self, record_id: str) -> T:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(self.name, record_id)
        return record

    def update(self, record_id: str, **changes: Any) -> T:
        current = self.get(record_id)
        updated = current.model_copy(update=changes)
        self._records[record_id] = updated
        return updated

    def replace(self, record: T) -> T:
        record_id = getattr(record, "id")
        self.get(record_id)
        self._records[record_id] = record
        return record

    def delete(self, record_id: str) -> None:
        if self._records.pop(record_id, None) is None:
            raise RecordNotFound(self.name, record_id)

    def list(
        self,
        where: Optional[dict[str, Any]] = None,
        predicate: Optional[Callable[[T], bool]] = None,
        order_by: Optional[Callable[[T], Any]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[T]:
        """Return records matching every ``where`` equality and the predicate."""
        records = [
            r for r in self._records.values()
            if all(getattr(r, key) == value for key, value in (where or {}).items())
            and (predicate is None or predicate(r))
        ]
        if order_by is not None:
            records.sort(key=order_by, reverse=descending)
        elif descending:
            records.reverse()
        if limit is not None:
            records = records[:limit]
        return records


class InMemoryDatastore:
    """All collections the engine reads and writes."""

    def __init__(self) -> None:
        self.agents: Collection[Agent] = Collection("agents")
        self.sessions: Collection[Session] = Collection("sessions")
        self.messages: Collection[Message] = Collection("messages")
        self.rules: Collection[ValidationRule] = Collection("validation_rules")
        self.webhooks: Collection[Webhook] = Collection("webhooks")
        self.deliveries: Collection[Delivery] = Collection("webhook_deliveries")

    def messages_for(self, session_id: str) -> list[Message]:
        """Transcript for a session in append order."""
        return self.messages.list(where={"session_id": session_id})
