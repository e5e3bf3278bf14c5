"""
Webhook health scoring.

Totals come from the webhook's running counters. The success rate and
average response time are taken over the most recent completed attempts,
so a webhook that recovers climbs back to ``healthy`` without a reset.
"""

from typing import Optional, Sequence

from agentforms.config import settings
from agentforms.schemas.webhook_schema import (
    Delivery,
    DeliveryStatus,
    HealthStatus,
    Webhook,
    WebhookHealth,
)


def classify(
    success_rate: float,
    has_deliveries: bool,
    healthy_threshold: Optional[float] = None,
    warning_threshold: Optional[float] = None,
) -> HealthStatus:
    """Map a success percentage to a health status. No history counts as healthy."""
    if not has_deliveries:
        return HealthStatus.HEALTHY
    healthy = settings.webhooks.healthy_threshold if healthy_threshold is None else healthy_threshold
    warning = settings.webhooks.warning_threshold if warning_threshold is None else warning_threshold
    if success_rate < warning:
        return HealthStatus.CRITICAL
    if success_rate < healthy:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def compute_health(webhook: Webhook, recent: Sequence[Delivery]) -> WebhookHealth:
    """Build the health summary for one webhook.

    ``recent`` holds the completed attempts that count toward health,
    newest first; pending attempts are ignored.
    """
    finished = [d for d in recent if d.status != DeliveryStatus.PENDING]
    successes = sum(1 for d in finished if d.status == DeliveryStatus.SUCCESS)
    success_rate = round(successes / len(finished) * 100) if finished else 0

    durations = [d.duration_ms for d in finished if d.duration_ms is not None]
    average_ms = round(sum(durations) / len(durations)) if durations else 0

    return WebhookHealth(
        webhook_id=webhook.id,
        name=webhook.name,
        total_deliveries=webhook.total_deliveries,
        successful_deliveries=webhook.successful_deliveries,
        failed_deliveries=webhook.failed_deliveries,
        success_rate=success_rate,
        average_response_ms=average_ms,
        last_delivery_at=webhook.last_delivery_at,
        status=classify(success_rate, bool(finished)),
    )
