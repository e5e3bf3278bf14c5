"""
Completion tracking over a session's extracted fields.

A required field counts as complete only when it has a value that passes
both its schema-level checks and every enabled rule scoped to it.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

from agentforms.config import settings
from agentforms.schemas.agent_schema import AgentSchema, SchemaField
from agentforms.schemas.validation_schema import ValidationResult
from agentforms.validation.engine import ValidationRuleEngine
from agentforms.validation.field_validator import validate_field_value


@dataclass(frozen=True)
class CompletionStats:
    completed: int
    total: int
    rate: float


class CompletionTracker:
    """Derives completed/required counts and picks the next field to ask for."""

    def __init__(
        self,
        rule_engine: Optional[ValidationRuleEngine] = None,
        form_component: Optional[str] = None,
    ) -> None:
        self._rules = rule_engine
        self.form_component = form_component or settings.sessions.form_component

    def validate(self, field: SchemaField, value: str) -> ValidationResult:
        errors = list(validate_field_value(value, field).errors)
        if self._rules is not None:
            errors += self._rules.validate(self.form_component, field.id, value).errors
        return ValidationResult.from_errors(errors)

    def is_accepted(self, field: SchemaField, value: Optional[str]) -> bool:
        return bool(value) and self.validate(field, value).valid

    def completion(self, extracted: Mapping[str, str], schema: AgentSchema) -> CompletionStats:
        required = schema.required_fields()
        total = len(required)
        completed = sum(1 for f in required if self.is_accepted(f, extracted.get(f.id)))
        rate = completed / total * 100 if total > 0 else 0.0
        return CompletionStats(completed=completed, total=total, rate=rate)

    def next_required_field(
        self, extracted: Mapping[str, str], schema: AgentSchema
    ) -> Optional[SchemaField]:
        """First required field, in schema order, without an accepted value."""
        for field in schema.required_fields():
            if not self.is_accepted(field, extracted.get(field.id)):
                return field
        return None

    def missing_required_fields(
        self, extracted: Mapping[str, str], schema: AgentSchema
    ) -> list[SchemaField]:
        return [
            f for f in schema.required_fields()
            if not self.is_accepted(f, extracted.get(f.id))
        ]
