"""Name-based export and import of schedules.

Exported files are JSON5 documents::

    {
      version: 1,
      exportedAt: "2024-05-01T10:00:00.000+00:00",
      schedules: [
        {
          name: "Rent",
          posts_transaction: true,
          completed: false,
          rule: {stage: null, conditionsOp: "and", conditions: [...], actions: [...]},
        },
      ],
    }

Account, payee and category ids inside conditions and actions are replaced by
display names (categories also carry their group name) so the file can be
imported into a budget where the ids differ. ``link-schedule`` actions are
dropped on export and regenerated on import.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Set

import json5

from fx_ledger.errors import ScheduleTransferError, ValidationError
from fx_ledger.rules.conditions import LINK_SCHEDULE, FieldKind, RuleEntry
from fx_ledger.utils.dates import iso_timestamp
from fx_ledger.utils.logger import get_logger

if TYPE_CHECKING:
    from fx_ledger.schedules.service import ScheduleService

LOGGER = get_logger(__name__)

SCHEDULE_TRANSFER_VERSION = 1
_GROUP_SEPARATOR = "\0"

CATEGORY_ROWS_SQL = """
    SELECT c.id AS id, c.name AS name, cg.name AS group_name
      FROM categories c
      LEFT JOIN category_groups cg ON cg.id = c.cat_group
     WHERE c.tombstone = 0
"""


@dataclass(slots=True)
class ScheduleImportError:
    schedule_name: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"scheduleName": self.schedule_name, "message": self.message}


@dataclass(slots=True)
class ScheduleImportResult:
    imported: int = 0
    skipped: int = 0
    errors: List[ScheduleImportError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": [error.to_dict() for error in self.errors],
        }


def normalize_name(name: Any) -> Optional[str]:
    if not isinstance(name, str):
        return None
    trimmed = name.strip()
    return trimmed.lower() if trimmed else None


@dataclass(slots=True)
class NameLookup:
    """Normalised name -> id, with names shared by several rows kept apart."""

    ids_by_name: Dict[str, str] = field(default_factory=dict)
    ambiguous: Set[str] = field(default_factory=set)

    @classmethod
    def build(cls, rows: List[Mapping[str, Any]]) -> "NameLookup":
        lookup = cls()
        for row in rows:
            normalized = normalize_name(row["name"])
            if not normalized:
                continue
            if normalized in lookup.ids_by_name:
                lookup.ambiguous.add(normalized)
                del lookup.ids_by_name[normalized]
                continue
            if normalized not in lookup.ambiguous:
                lookup.ids_by_name[normalized] = row["id"]
        return lookup

    def resolve(self, name: str, label: str) -> str:
        normalized = normalize_name(name)
        if not normalized:
            return name
        if normalized in self.ambiguous:
            raise ValidationError(f"{label} name is ambiguous: {name}")
        entity_id = self.ids_by_name.get(normalized)
        if not entity_id:
            raise ValidationError(f"{label} not found: {name}")
        return entity_id


@dataclass(slots=True)
class CategoryLookup(NameLookup):
    ids_by_name_and_group: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, rows: List[Mapping[str, Any]]) -> "CategoryLookup":
        names = NameLookup.build(rows)
        lookup = cls(ids_by_name=names.ids_by_name, ambiguous=names.ambiguous)
        for row in rows:
            name, group = normalize_name(row["name"]), normalize_name(row["group_name"])
            if name and group:
                lookup.ids_by_name_and_group[f"{name}{_GROUP_SEPARATOR}{group}"] = row["id"]
        return lookup

    def resolve_category(self, name: str, group_name: Optional[str]) -> str:
        """Match name and group first, falling back to an unambiguous name match."""

        normalized = normalize_name(name)
        if not normalized:
            return name
        group = normalize_name(group_name)
        if group:
            scoped = self.ids_by_name_and_group.get(f"{normalized}{_GROUP_SEPARATOR}{group}")
            if scoped:
                return scoped
            if normalized in self.ambiguous:
                raise ValidationError(f"Category not found with group: {name} ({group_name})")
        if normalized in self.ambiguous:
            raise ValidationError(f"Category name is ambiguous: {name}")
        category_id = self.ids_by_name.get(normalized)
        if not category_id:
            raise ValidationError(f"Category not found: {name}")
        return category_id


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------
@dataclass(slots=True)
class _ExportNames:
    accounts: Dict[str, str]
    payees: Dict[str, str]
    categories: Dict[str, str]
    category_groups: Dict[str, Optional[str]]


def _ids_to_names(value: Any, names: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return names.get(value, value)
    if isinstance(value, list):
        return [names.get(item, item) if isinstance(item, str) else item for item in value]
    return value


def _export_entries(entries: List[Any], names: _ExportNames) -> List[Any]:
    exported: List[Any] = []
    for raw in copy.deepcopy(entries):
        if not isinstance(raw, Mapping) or not isinstance(raw.get("field"), str):
            exported.append(raw)
            continue
        entry = RuleEntry.from_dict(raw).canonical()
        kind = entry.kind
        if kind is FieldKind.ACCOUNT:
            entry.value = _ids_to_names(entry.value, names.accounts)
        elif kind is FieldKind.PAYEE:
            entry.value = _ids_to_names(entry.value, names.payees)
        elif kind is FieldKind.CATEGORY:
            value = entry.value
            if isinstance(value, str):
                group = names.category_groups.get(value)
                if group:
                    entry.extra["category_group"] = group
            elif isinstance(value, list):
                groups = [
                    names.category_groups.get(item) if isinstance(item, str) else None
                    for item in value
                ]
                if any(group is not None for group in groups):
                    entry.extra["category_groups"] = groups
            entry.value = _ids_to_names(value, names.categories)
        exported.append(entry.to_dict())
    return exported


def _export_names(service: "ScheduleService") -> _ExportNames:
    store = service.store
    accounts = store.all("SELECT id, name FROM accounts WHERE tombstone = 0")
    payees = store.all("SELECT id, name FROM payees WHERE tombstone = 0")
    categories = store.all(CATEGORY_ROWS_SQL)

    names = _ExportNames(
        accounts={row["id"]: row["name"] for row in accounts},
        payees={row["id"]: row["name"] for row in payees},
        categories={row["id"]: row["name"] for row in categories},
        category_groups={row["id"]: row["group_name"] for row in categories},
    )
    # Merged payees and categories point at their surviving row.
    for mapping in store.all('SELECT id, "targetId" AS target FROM payee_mapping'):
        target_name = names.payees.get(mapping["target"])
        if target_name:
            names.payees[mapping["id"]] = target_name
    category_names = dict(names.categories)
    category_groups = dict(names.category_groups)
    for mapping in store.all('SELECT id, "transferId" AS target FROM category_mapping'):
        if category_names.get(mapping["target"]):
            names.categories[mapping["id"]] = category_names[mapping["target"]]
        if category_groups.get(mapping["target"]):
            names.category_groups[mapping["id"]] = category_groups[mapping["target"]]
    return names


def export_schedules(service: "ScheduleService") -> str:
    names = _export_names(service)
    rules = {rule.id: rule for rule in service.rules.all()}
    exported = []
    for schedule in service.get_schedules():
        rule = rules.get(schedule["rule"])
        conditions = _export_entries(list(schedule["_conditions"] or []), names)
        actions = [
            action
            for action in _export_entries(list(schedule["_actions"] or []), names)
            if not (isinstance(action, Mapping) and action.get("op") == LINK_SCHEDULE)
        ]
        exported.append(
            {
                "name": schedule["name"],
                "posts_transaction": bool(schedule["posts_transaction"]),
                "completed": bool(schedule["completed"]),
                "rule": {
                    "stage": rule.stage if rule else None,
                    "conditionsOp": rule.conditions_op if rule else "and",
                    "conditions": conditions,
                    "actions": actions,
                },
            }
        )
    payload = {
        "version": SCHEDULE_TRANSFER_VERSION,
        "exportedAt": iso_timestamp(),
        "schedules": exported,
    }
    return json5.dumps(payload, indent=2)


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------
def parse_schedule_transfer(raw: str) -> Dict[str, Any]:
    try:
        parsed = json5.loads(raw)
    except (ValueError, TypeError) as exc:
        raise ScheduleTransferError("Unable to parse schedules file as JSON5") from exc
    if not isinstance(parsed, dict):
        raise ScheduleTransferError("Schedules file must be an object")
    version = parsed.get("version")
    if isinstance(version, bool) or version != SCHEDULE_TRANSFER_VERSION:
        shown = "missing" if version is None else version
        raise ScheduleTransferError(f"Unsupported schedules file version: {shown}")
    if not isinstance(parsed.get("schedules"), list):
        raise ScheduleTransferError("Schedules file must contain a schedules array")
    return parsed


class _ImportResolver:
    """Maps names in imported rule entries back to ids of this budget."""

    def __init__(self, service: "ScheduleService") -> None:
        store = service.store
        self.store = store
        self.accounts = NameLookup.build(store.all("SELECT id, name FROM accounts WHERE tombstone = 0"))
        self.payees = NameLookup.build(store.all("SELECT id, name FROM payees WHERE tombstone = 0"))
        self.categories = CategoryLookup.build(store.all(CATEGORY_ROWS_SQL))

    def _payee_id(self, name: Any) -> Any:
        if not isinstance(name, str):
            return name
        normalized = normalize_name(name)
        if not normalized:
            return name
        if normalized in self.payees.ambiguous:
            raise ValidationError(f"Payee name is ambiguous: {name}")
        payee_id = self.payees.ids_by_name.get(normalized)
        if not payee_id:
            payee_id = self.store.insert("payees", {"name": name})
            self.payees.ids_by_name[normalized] = payee_id
            LOGGER.debug("Created payee %s while importing schedules", name)
        return payee_id

    def _account_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.accounts.resolve(value, "Account")
        if isinstance(value, list):
            return [self.accounts.resolve(item, "Account") if isinstance(item, str) else item for item in value]
        return value

    def _category_value(self, entry: RuleEntry) -> Any:
        group = entry.extra.pop("category_group", None)
        groups = entry.extra.pop("category_groups", None)
        value = entry.value
        if isinstance(value, str):
            return self.categories.resolve_category(value, group if isinstance(group, str) else None)
        if isinstance(value, list):
            resolved = []
            for index, item in enumerate(value):
                if not isinstance(item, str):
                    resolved.append(item)
                    continue
                item_group = None
                if isinstance(groups, list) and index < len(groups) and isinstance(groups[index], str):
                    item_group = groups[index]
                resolved.append(self.categories.resolve_category(item, item_group))
            return resolved
        return value

    def map_entries(self, entries: List[Any]) -> List[Any]:
        mapped: List[Any] = []
        for raw in copy.deepcopy(entries):
            if not isinstance(raw, Mapping) or not isinstance(raw.get("field"), str):
                mapped.append(raw)
                continue
            entry = RuleEntry.from_dict(raw).canonical()
            kind = entry.kind
            if kind is FieldKind.ACCOUNT:
                entry.value = self._account_value(entry.value)
            elif kind is FieldKind.PAYEE:
                if isinstance(entry.value, list):
                    entry.value = [self._payee_id(item) for item in entry.value]
                else:
                    entry.value = self._payee_id(entry.value)
            elif kind is FieldKind.CATEGORY:
                entry.value = self._category_value(entry)
            mapped.append(entry.to_dict())
        return mapped


def _validate_entry(item: Any) -> Mapping[str, Any]:
    if not isinstance(item, Mapping):
        raise ValidationError("Invalid schedule entry")
    rule = item.get("rule")
    if not isinstance(rule, Mapping):
        raise ValidationError("Missing schedule rule payload")
    if not isinstance(rule.get("conditions"), list):
        raise ValidationError("Schedule rule conditions must be an array")
    if not isinstance(rule.get("actions"), list):
        raise ValidationError("Schedule rule actions must be an array")
    return rule


def import_schedules(service: "ScheduleService", content: str) -> ScheduleImportResult:
    """Create schedules from an export file.

    Each entry is imported in its own transaction; a failing entry is rolled
    back, recorded in the result and the import carries on.
    """

    payload = parse_schedule_transfer(content)
    resolver = _ImportResolver(service)
    result = ScheduleImportResult()

    for item in payload["schedules"]:
        name = item.get("name") if isinstance(item, Mapping) else None
        schedule_name = name if isinstance(name, str) else None
        schedule_id: Optional[str] = None
        known_payees = dict(resolver.payees.ids_by_name)
        try:
            rule_payload = _validate_entry(item)
            with service.store.batch():
                conditions = resolver.map_entries(rule_payload["conditions"])
                actions = resolver.map_entries(rule_payload["actions"])
                schedule_id = service.create_schedule(
                    {
                        "name": schedule_name,
                        "posts_transaction": bool(item.get("posts_transaction")),
                        "completed": bool(item.get("completed")),
                    },
                    conditions,
                )
                rule = service.get_rule_for_schedule(schedule_id)
                if rule is None:
                    rule = service.fix_rule_for_schedule(schedule_id)
                service.rules.update(
                    {
                        "id": rule.id,
                        "stage": rule_payload.get("stage"),
                        "conditionsOp": rule_payload.get("conditionsOp") or "and",
                        "conditions": conditions,
                        "actions": [{"op": LINK_SCHEDULE, "value": schedule_id}]
                        + [
                            action
                            for action in actions
                            if not (isinstance(action, Mapping) and action.get("op") == LINK_SCHEDULE)
                        ],
                    }
                )
            result.imported += 1
        except Exception as exc:
            resolver.payees.ids_by_name = known_payees
            if schedule_id is not None and service.get_schedule(schedule_id) is not None:
                try:
                    service.delete_schedule(schedule_id)
                except Exception:
                    LOGGER.exception("Failed to clean up schedule %s after import error", schedule_id)
            result.skipped += 1
            result.errors.append(ScheduleImportError(schedule_name, str(exc)))
            LOGGER.warning("Skipped schedule %r during import: %s", schedule_name, exc)
    return result


__all__ = [
    "CategoryLookup",
    "NameLookup",
    "SCHEDULE_TRANSFER_VERSION",
    "ScheduleImportError",
    "ScheduleImportResult",
    "export_schedules",
    "import_schedules",
    "normalize_name",
    "parse_schedule_transfer",
]
