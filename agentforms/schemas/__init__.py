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
    SessionStatus,
    StreamChunk,
)
from agentforms.schemas.validation_schema import RuleType, ValidationResult, ValidationRule
from agentforms.schemas.webhook_schema import (
    Delivery,
    DeliveryStatus,
    EventType,
    HealthStatus,
    RetryPolicy,
    Webhook,
    WebhookHealth,
)

__all__ = [
    "Agent", "AgentSchema", "FieldType", "FieldValidation", "Persona", "PersonaTone",
    "SchemaField", "ExtractedField", "ExtractionSource", "Message", "MessageRole",
    "Session", "SessionStatus", "StreamChunk", "RuleType", "ValidationResult",
    "ValidationRule", "Delivery", "DeliveryStatus", "EventType", "HealthStatus",
    "RetryPolicy", "Webhook", "WebhookHealth",
]
