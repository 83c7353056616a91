"""Persistence of rules in the ``rules`` table."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping

from fx_ledger.db.store import Row, Store
from fx_ledger.rules.conditions import LINK_SCHEDULE, validate_rule
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

RuleListener = Callable[["Rule"], None]


@dataclass(slots=True)
class Rule:
    id: str
    stage: str | None = None
    conditions_op: str = "and"
    conditions: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Row) -> "Rule":
        return cls(
            id=row["id"],
            stage=row["stage"],
            conditions_op=row["conditions_op"] or "and",
            conditions=_load_json(row["conditions"]),
            actions=_load_json(row["actions"]),
        )

    def serialize(self) -> dict[str, Any]:
        """Rule in its wire shape (``conditionsOp`` camel-cased)."""

        return {
            "id": self.id,
            "stage": self.stage,
            "conditionsOp": self.conditions_op,
            "conditions": json.loads(json.dumps(self.conditions)),
            "actions": json.loads(json.dumps(self.actions)),
        }

    @property
    def linked_schedule(self) -> str | None:
        for action in self.actions:
            if action.get("op") == LINK_SCHEDULE:
                return action.get("value")
        return None


def _load_json(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        LOGGER.warning("Ignoring unparsable rule payload")
        return []
    return value if isinstance(value, list) else []


class RuleStore:
    """CRUD access to rules with validation and change listeners.

    Listeners fire after every insert or update with the stored rule.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._listeners: List[RuleListener] = []

    def add_listener(self, listener: RuleListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, rule: Rule) -> None:
        for listener in list(self._listeners):
            listener(rule)

    def get(self, rule_id: str | None) -> Rule | None:
        if rule_id is None:
            return None
        row = self.store.get("rules", rule_id)
        if row is None or row["tombstone"]:
            return None
        return Rule.from_row(row)

    def all(self) -> list[Rule]:
        rows = self.store.all("SELECT * FROM rules WHERE tombstone = 0")
        return [Rule.from_row(row) for row in rows]

    def insert(self, rule: Mapping[str, Any]) -> str:
        stage = rule.get("stage")
        conditions_op = rule.get("conditionsOp", "and")
        conditions = list(rule.get("conditions") or [])
        actions = list(rule.get("actions") or [])
        validate_rule(stage, conditions_op, conditions, actions)
        row = {
            "stage": stage,
            "conditions_op": conditions_op,
            "conditions": json.dumps(conditions),
            "actions": json.dumps(actions),
            "tombstone": 0,
        }
        if rule.get("id"):
            row["id"] = rule["id"]
        rule_id = self.store.insert("rules", row)
        self._notify(Rule(rule_id, stage, conditions_op, conditions, actions))
        return rule_id

    def update(self, changes: Mapping[str, Any]) -> Rule:
        """Apply ``changes`` (wire-shaped, must carry ``id``) to an existing rule."""

        current = self.get(changes.get("id"))
        if current is None:
            raise LookupError(f"Rule not found: {changes.get('id')}")
        updated = Rule(
            id=current.id,
            stage=changes["stage"] if "stage" in changes else current.stage,
            conditions_op=changes.get("conditionsOp", current.conditions_op),
            conditions=list(changes.get("conditions", current.conditions)),
            actions=list(changes.get("actions", current.actions)),
        )
        validate_rule(updated.stage, updated.conditions_op, updated.conditions, updated.actions)
        self.store.update(
            "rules",
            {
                "id": updated.id,
                "stage": updated.stage,
                "conditions_op": updated.conditions_op,
                "conditions": json.dumps(updated.conditions),
                "actions": json.dumps(updated.actions),
            },
        )
        self._notify(updated)
        return updated

    def delete(self, rule_id: str | None) -> int:
        return self.store.delete("rules", rule_id)


__all__ = ["Rule", "RuleStore"]
