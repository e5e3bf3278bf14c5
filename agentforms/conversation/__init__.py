from agentforms.conversation.completion import CompletionStats, CompletionTracker
from agentforms.conversation.engine import SessionEngine, TurnResult
from agentforms.conversation.events import (
    DomainEvent,
    EventBus,
    FieldExtracted,
    SessionAbandoned,
    SessionCompleted,
    SessionErrored,
    SessionStarted,
)
from agentforms.conversation.guardrails import (
    GuardrailPipeline,
    GuardrailResult,
    MessageLengthGuardrail,
    RateLimitGuardrail,
)
from agentforms.conversation.responder import ScriptedResponder
from agentforms.conversation.state_machine import (
    SessionStateMachine,
    SessionTrigger,
    Transition,
    TransitionResult,
)
from agentforms.conversation.streaming import StreamingResponseController

__all__ = [
    "CompletionStats",
    "CompletionTracker",
    "DomainEvent",
    "EventBus",
    "FieldExtracted",
    "GuardrailPipeline",
    "GuardrailResult",
    "MessageLengthGuardrail",
    "RateLimitGuardrail",
    "ScriptedResponder",
    "SessionAbandoned",
    "SessionCompleted",
    "SessionEngine",
    "SessionErrored",
    "SessionStarted",
    "SessionStateMachine",
    "SessionTrigger",
    "StreamingResponseController",
    "Transition",
    "TransitionResult",
    "TurnResult",
]
