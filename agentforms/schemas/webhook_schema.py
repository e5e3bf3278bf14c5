"""Webhook configuration, delivery log and health data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentforms.config import settings
from agentforms.utils import new_id, utc_now


class EventType(str, Enum):
    """Domain events a webhook can subscribe to."""

    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_ABANDONED = "session.abandoned"
    SESSION_ERROR = "session.error"
    FIELD_EXTRACTED = "field.extracted"
    WEBHOOK_TEST = "webhook.test"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class RetryPolicy(BaseModel):
    """Bounded automatic retry. A single attempt leaves remediation to an operator."""

    max_attempts: int = Field(default_factory=lambda: settings.webhooks.max_attempts, ge=1)
    backoff_multiplier: float = Field(
        default_factory=lambda: settings.webhooks.backoff_multiplier, ge=1.0
    )
    initial_delay: float = Field(
        default_factory=lambda: settings.webhooks.initial_delay_sec, ge=0.0
    )

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (the first attempt never waits)."""
        if attempt <= 1:
            return 0.0
        return self.initial_delay * self.backoff_multiplier ** (attempt - 2)


class Webhook(BaseModel):
    id: str = Field(default_factory=lambda: new_id("wh"))
    agent_id: str
    name: str = ""
    url: str
    secret: Optional[str] = None
    triggers: set[EventType] = Field(default_factory=lambda: {EventType.SESSION_COMPLETED})
    enabled: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    last_delivery_status: Optional[DeliveryStatus] = None
    last_delivery_at: Optional[datetime] = None
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class Delivery(BaseModel):
    """One attempt record.

    Finished rows are history. The one exception is a ``retrying`` row whose
    next attempt never happens: it is moved to ``failed``.
    """

    id: str = Field(default_factory=lambda: new_id("dlv"))
    webhook_id: str
    session_id: Optional[str] = None
    event: EventType
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt: int = 1
    max_attempts: int = 1
    is_test: bool = False
    http_status: Optional[int] = None
    request_url: str
    request_body: dict[str, Any] = Field(default_factory=dict)
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class WebhookHealth(BaseModel):
    webhook_id: str
    name: str
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: int
    average_response_ms: int
    last_delivery_at: Optional[datetime] = None
    status: HealthStatus
