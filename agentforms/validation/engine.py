"""
Configurable, prioritized validation rule engine.

Rules live in the datastore and are managed through RuleStore. The engine
selects the enabled rules for a (form component, field) pair, orders them
highest priority first then newest first, and accumulates the error
message of every rule that fails.

Usage:
    engine = ValidationRuleEngine(RuleStore(datastore))
    result = engine.validate("agent_session", "email", "a@b.com")
    if not result.valid:
        show(result.errors)
"""

import logging
from typing import Any, Optional

from agentforms.schemas.validation_schema import ValidationResult, ValidationRule
from agentforms.tools.datastore import InMemoryDatastore
from agentforms.utils import utc_now
from agentforms.validation.rules import check_rule

logger = logging.getLogger(__name__)

_IMMUTABLE_RULE_FIELDS = frozenset({"id", "created_at"})


def _rule_order(rule: ValidationRule) -> tuple[int, float]:
    return (rule.priority, rule.created_at.timestamp())


class RuleStore:
    """CRUD over ValidationRule records, scoped by form component."""

    def __init__(self, datastore: InMemoryDatastore) -> None:
        self._rules = datastore.rules

    def create(self, rule: ValidationRule) -> ValidationRule:
        created = self._rules.create(rule)
        logger.info(
            "Validation rule '%s' created for %s.%s",
            rule.rule_name or rule.id, rule.form_component, rule.field_name or "*",
        )
        return created

    def get(self, rule_id: str) -> ValidationRule:
        return self._rules.get(rule_id)

    def update(self, rule_id: str, **changes: Any) -> ValidationRule:
        blocked = _IMMUTABLE_RULE_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(f"Cannot update immutable rule fields: {sorted(blocked)}")
        current = self._rules.get(rule_id)
        data = current.model_dump()
        if "rule_type" in changes or "validation_criteria" in changes:
            data.pop("criteria")
            data["rule_type"] = changes.pop("rule_type", current.rule_type.value)
            data["validation_criteria"] = changes.pop("validation_criteria", {})
        data.update(changes)
        data["updated_at"] = utc_now()
        return self._rules.replace(ValidationRule.model_validate(data))

    def delete(self, rule_id: str) -> None:
        self._rules.delete(rule_id)

    def list(
        self, form_component: Optional[str] = None, enabled_only: bool = False
    ) -> list[ValidationRule]:
        """Rules ordered by priority descending, then most recent first."""
        where: dict[str, Any] = {}
        if form_component:
            where["form_component"] = form_component
        if enabled_only:
            where["enabled"] = True
        return self._rules.list(where=where, order_by=_rule_order, descending=True)


class ValidationRuleEngine:
    """Evaluates values against the stored rule set."""

    def __init__(self, store: RuleStore) -> None:
        self._store = store

    def rules_for(self, form_component: str, field_name: str) -> list[ValidationRule]:
        return [
            rule
            for rule in self._store.list(form_component, enabled_only=True)
            if rule.applies_to(form_component, field_name)
        ]

    def validate(self, form_component: str, field_name: str, value: Any) -> ValidationResult:
        errors: list[str] = []
        for rule in self.rules_for(form_component, field_name):
            if not check_rule(rule.criteria, value):
                errors.append(rule.error_message)
        if errors:
            logger.debug(
                "Validation failed for %s.%s: %d rule(s)", form_component, field_name, len(errors)
            )
        return ValidationResult.from_errors(errors)
