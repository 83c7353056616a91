"""Rule storage and the tagged condition/action model schedules rely on."""

from fx_ledger.rules.conditions import FieldKind, RuleEntry, validate_rule
from fx_ledger.rules.repository import Rule, RuleStore

__all__ = ["FieldKind", "Rule", "RuleEntry", "RuleStore", "validate_rule"]
