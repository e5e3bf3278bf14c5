"""Schema-level checks implied by a field's declared type and constraints."""

import re
from typing import Optional

from agentforms.schemas.agent_schema import FieldType, SchemaField
from agentforms.schemas.validation_schema import ValidationResult
from agentforms.validation.rules import is_date, is_email


def _parse_number(text: str) -> Optional[float]:
    try:
        return float(text)
    except ValueError:
        return None


def validate_field_value(value: str, field: SchemaField) -> ValidationResult:
    """Check a candidate value against its schema field definition."""
    errors: list[str] = []
    text = value.strip()

    if field.required and not text:
        errors.append(f"{field.label} is required")

    if text:
        bounds = field.validation
        if field.type == FieldType.EMAIL:
            if not is_email(value):
                errors.append("Invalid email format")
        elif field.type == FieldType.NUMBER:
            number = _parse_number(text)
            if number is None:
                errors.append("Must be a valid number")
            elif bounds is not None:
                if bounds.min is not None and number < bounds.min:
                    errors.append(f"Must be at least {bounds.min:g}")
                if bounds.max is not None and number > bounds.max:
                    errors.append(f"Must be at most {bounds.max:g}")
        elif field.type == FieldType.SELECT:
            if field.options and value not in field.options:
                errors.append(f"Must be one of: {', '.join(field.options)}")
        elif field.type == FieldType.DATE:
            if not is_date(text):
                errors.append("Invalid date format")

        if bounds is not None and bounds.pattern:
            try:
                matched = re.search(bounds.pattern, value) is not None
            except re.error:
                matched = True
            if not matched:
                errors.append("Invalid format")

    return ValidationResult.from_errors(errors)
