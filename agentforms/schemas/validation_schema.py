"""Validation rule data models.

Rule parameters are a tagged union keyed by ``rule_type``: each variant
carries only the criteria that rule understands. Plain JSON records in
the flat ``{rule_type, validation_criteria}`` shape are accepted and
folded into the tagged form on load.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentforms.utils import new_id, utc_now


class RuleType(str, Enum):
    REQUIRED = "required"
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    PATTERN = "pattern"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    NUMBER = "number"
    DATE = "date"
    CUSTOM = "custom"


class RequiredCriteria(BaseModel):
    rule_type: Literal["required"] = "required"


class MinLengthCriteria(BaseModel):
    rule_type: Literal["min_length"] = "min_length"
    min: Optional[int] = None


class MaxLengthCriteria(BaseModel):
    rule_type: Literal["max_length"] = "max_length"
    max: Optional[int] = None


class PatternCriteria(BaseModel):
    rule_type: Literal["pattern"] = "pattern"
    pattern: Optional[str] = None


class FormatCriteria(BaseModel):
    """Fixed-format checks that take no parameters."""

    rule_type: Literal["email", "url", "phone", "number", "date"]


class CustomCriteria(BaseModel):
    model_config = ConfigDict(extra="allow")

    rule_type: Literal["custom"] = "custom"


RuleCriteria = Annotated[
    Union[
        RequiredCriteria,
        MinLengthCriteria,
        MaxLengthCriteria,
        PatternCriteria,
        FormatCriteria,
        CustomCriteria,
    ],
    Field(discriminator="rule_type"),
]


class ValidationRule(BaseModel):
    """A configurable check scoped to a form component and optionally one field."""

    id: str = Field(default_factory=lambda: new_id("rule"))
    rule_name: str = ""
    rule_description: Optional[str] = None
    form_component: str
    field_name: Optional[str] = None
    criteria: RuleCriteria
    error_message: str
    enabled: bool = True
    priority: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_record(cls, data: Any) -> Any:
        if isinstance(data, dict) and "criteria" not in data and "rule_type" in data:
            data = dict(data)
            params = dict(data.pop("validation_criteria", None) or {})
            params["rule_type"] = data.pop("rule_type")
            data["criteria"] = params
        return data

    @property
    def rule_type(self) -> RuleType:
        return RuleType(self.criteria.rule_type)

    def applies_to(self, form_component: str, field_name: str) -> bool:
        """A rule without ``field_name`` covers every field of its form."""
        if self.form_component != form_component:
            return False
        return not self.field_name or self.field_name == field_name


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors))
