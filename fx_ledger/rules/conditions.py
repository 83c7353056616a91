"""Tagged rule entries.

Rule conditions and actions travel as JSON objects of the shape
``{"op": ..., "field": ..., "value": ...}`` plus optional extra keys
(``options``, ``type``, ``category_group`` ...). :class:`RuleEntry` keeps that
shape intact while classifying the field into a closed set of kinds so the
name <-> id mapping can match on it exhaustively. Fields outside the known
kinds are carried through as :attr:`FieldKind.OTHER`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from fx_ledger.errors import RuleValidationError


class FieldKind(str, Enum):
    ACCOUNT = "account"
    PAYEE = "payee"
    CATEGORY = "category"
    DATE = "date"
    AMOUNT = "amount"
    OTHER = "other"


FIELD_ALIASES = {"acct": "account", "description": "payee"}

CONDITION_OPS = frozenset(
    {
        "is",
        "isNot",
        "oneOf",
        "notOneOf",
        "contains",
        "doesNotContain",
        "matches",
        "isapprox",
        "isbetween",
        "gt",
        "gte",
        "lt",
        "lte",
        "hasTags",
        "onBudget",
        "offBudget",
    }
)
ACTION_OPS = frozenset(
    {
        "set",
        "set-split-amount",
        "link-schedule",
        "prepend-notes",
        "append-notes",
        "delete-transaction",
    }
)
STAGES = (None, "pre", "post")
CONDITIONS_OPS = ("and", "or")
LINK_SCHEDULE = "link-schedule"


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


def field_kind(name: str | None) -> FieldKind:
    if name is None:
        return FieldKind.OTHER
    try:
        return FieldKind(canonical_field(name))
    except ValueError:
        return FieldKind.OTHER


@dataclass(slots=True)
class RuleEntry:
    """One condition or action, tagged with the kind of field it targets."""

    op: str
    field: str | None
    value: Any
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> FieldKind:
        return field_kind(self.field)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleEntry":
        extra = {key: value for key, value in data.items() if key not in {"op", "field", "value"}}
        return cls(op=data.get("op"), field=data.get("field"), value=data.get("value"), extra=extra)

    def canonical(self) -> "RuleEntry":
        """Copy of the entry with ``acct``/``description`` renamed to their canonical field."""

        if self.field is None:
            return RuleEntry(self.op, None, self.value, dict(self.extra))
        return RuleEntry(self.op, canonical_field(self.field), self.value, dict(self.extra))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op}
        if self.field is not None:
            data["field"] = self.field
        data["value"] = self.value
        data.update(self.extra)
        return data


def validate_rule(
    stage: Any,
    conditions_op: Any,
    conditions: Iterable[Any],
    actions: Iterable[Any],
) -> None:
    """Raise :class:`RuleValidationError` unless the rule can be stored."""

    if stage not in STAGES:
        raise RuleValidationError(f"Invalid rule stage: {stage}")
    if conditions_op not in CONDITIONS_OPS:
        raise RuleValidationError(f"Invalid conditions operator: {conditions_op}")
    for condition in conditions:
        if not isinstance(condition, Mapping):
            raise RuleValidationError("Rule conditions must be objects")
        if condition.get("op") not in CONDITION_OPS:
            raise RuleValidationError(f"Invalid condition operator: {condition.get('op')}")
        if not isinstance(condition.get("field"), str):
            raise RuleValidationError("Rule conditions require a field")
    for action in actions:
        if not isinstance(action, Mapping):
            raise RuleValidationError("Rule actions must be objects")
        if action.get("op") not in ACTION_OPS:
            raise RuleValidationError(f"Invalid action operator: {action.get('op')}")


__all__ = [
    "ACTION_OPS",
    "CONDITION_OPS",
    "FIELD_ALIASES",
    "FieldKind",
    "LINK_SCHEDULE",
    "RuleEntry",
    "canonical_field",
    "field_kind",
    "validate_rule",
]
