from agentforms.validation.engine import RuleStore, ValidationRuleEngine
from agentforms.validation.field_validator import validate_field_value
from agentforms.validation.rules import check_rule

__all__ = ["RuleStore", "ValidationRuleEngine", "validate_field_value", "check_rule"]
