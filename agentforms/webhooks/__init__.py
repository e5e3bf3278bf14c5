from agentforms.webhooks.delivery import WebhookDeliveryService
from agentforms.webhooks.health import classify, compute_health
from agentforms.webhooks.signing import (
    SIGNATURE_HEADER,
    canonical_body,
    sign_payload,
    verify_signature,
)
from agentforms.webhooks.worker import DeliveryJob, DeliveryWorker

__all__ = [
    "DeliveryJob",
    "DeliveryWorker",
    "SIGNATURE_HEADER",
    "WebhookDeliveryService",
    "canonical_body",
    "classify",
    "compute_health",
    "sign_payload",
    "verify_signature",
]
