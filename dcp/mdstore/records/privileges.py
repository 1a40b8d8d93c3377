"""
Privilege sets: rules deciding whether a user may view, author or edit.

A PrivilegeSet combines, under AND or OR logic:
- privilege flags the user must hold
- conditions on the record's field values (e.g. "Release Flag == 1",
  "Added By == current user", "Date Of Release < now")
- nested PrivilegeSets

Invariants:
    - A set with no components is met by everyone
    - A condition that cannot be evaluated (no record given, field unknown
      or from another schema, value unset for date comparisons) is neutral:
      true under AND, false under OR
    - meets_requirements() recomputes get_result_expiration_date() on
      every call; the date is when a relative-date condition could flip

Example:
    >>> rules = PrivilegeSet("OR", privileges=[PRIV_RESOURCEADMIN])
    >>> rules.add_condition(owner_field_id, "==", PrivilegeSet.CURRENT_USER)
    >>> rules.meets_requirements(user, record)
    True
"""

from __future__ import annotations

import logging
import operator as op
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable, Optional

from ..contracts import User
from ..errors import MetadataStoreError
from ..schema.types import FieldType
from .values import parse_timestamp

if TYPE_CHECKING:
    from .record import Record

logger = logging.getLogger(__name__)

_OPERATORS = {
    "==": op.eq,
    "!=": op.ne,
    "<": op.lt,
    ">": op.gt,
    "<=": op.le,
    ">=": op.ge,
}

_RELATIVE_DATE = re.compile(r"^now\s*(?:([+-])\s*(\d+)\s*([smhdw]))?$", re.IGNORECASE)
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


@dataclass(frozen=True)
class Condition:
    """Comparison of a record field value against a fixed or relative value."""

    field_id: int
    operator: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field_id": self.field_id, "operator": self.operator, "value": self.value}


class PrivilegeSet:
    """Concrete PrivilegeEvaluator."""

    CURRENT_USER = "__current_user__"

    def __init__(
        self,
        logic: str = "AND",
        privileges: Iterable[int] = (),
        conditions: Iterable[Condition] = (),
        subsets: Iterable[PrivilegeSet] = (),
    ) -> None:
        logic = logic.upper()
        if logic not in ("AND", "OR"):
            raise MetadataStoreError(f"Privilege logic must be AND or OR, got {logic!r}", code="INVALID_PRIVILEGES")
        self.logic = logic
        self.privileges: list[int] = [int(p) for p in privileges]
        self.conditions: list[Condition] = list(conditions)
        self.subsets: list[PrivilegeSet] = list(subsets)
        self._expiration: Optional[datetime] = None

    # -- building ----------------------------------------------------------

    def add_privilege(self, privilege: int) -> None:
        if privilege not in self.privileges:
            self.privileges.append(int(privilege))

    def add_condition(self, field_id: int, operator: str, value: Any) -> None:
        if operator not in _OPERATORS:
            raise MetadataStoreError(f"Unknown condition operator: {operator!r}", code="INVALID_PRIVILEGES")
        self.conditions.append(Condition(int(field_id), operator, value))

    def add_subset(self, subset: PrivilegeSet) -> None:
        self.subsets.append(subset)

    @property
    def is_empty(self) -> bool:
        return not (self.privileges or self.conditions or self.subsets)

    # -- introspection -----------------------------------------------------

    def privilege_flags_checked(self) -> set[int]:
        flags = set(self.privileges)
        for subset in self.subsets:
            flags |= subset.privilege_flags_checked()
        return flags

    def checks_field(self, field_id: int) -> bool:
        if any(c.field_id == field_id for c in self.conditions):
            return True
        return any(subset.checks_field(field_id) for subset in self.subsets)

    def fields_with_user_comparisons(self, operator: Optional[str] = None) -> set[int]:
        found = {
            c.field_id
            for c in self.conditions
            if c.value == self.CURRENT_USER and (operator is None or c.operator == operator)
        }
        for subset in self.subsets:
            found |= subset.fields_with_user_comparisons(operator)
        return found

    def get_result_expiration_date(self) -> Optional[datetime]:
        """When the last meets_requirements() result may stop being valid."""
        return self._expiration

    # -- evaluation --------------------------------------------------------

    def meets_requirements(self, user: User, record: Optional[Record] = None) -> bool:
        """Evaluate the rules for a user, against a record if given."""
        state = {"now": datetime.now().replace(microsecond=0), "expires": None}
        result = self._meets(user, record, state)
        self._expiration = state["expires"]
        return result

    def _meets(self, user: User, record: Optional[Record], state: dict[str, Any]) -> bool:
        if self.is_empty:
            return True

        is_and = self.logic == "AND"
        for result in self._component_results(user, record, state):
            if result is None:
                continue
            if is_and and not result:
                return False
            if not is_and and result:
                return True
        return is_and

    def _component_results(self, user: User, record: Optional[Record], state: dict[str, Any]):
        for privilege in self.privileges:
            yield user.has_privilege(privilege)
        for condition in self.conditions:
            yield self._condition_result(condition, user, record, state)
        for subset in self.subsets:
            yield subset._meets(user, record, state)

    def _condition_result(
        self,
        condition: Condition,
        user: User,
        record: Optional[Record],
        state: dict[str, Any],
    ) -> Optional[bool]:
        if record is None:
            return None
        registry = record.store.registry
        if not registry.field_exists(condition.field_id):
            return None
        field = registry.get_field(condition.field_id)
        if field.schema_id != record.schema_id:
            return None

        compare = _OPERATORS[condition.operator]

        if condition.value == self.CURRENT_USER:
            if user.is_anonymous:
                return condition.operator == "!="
            if field.type is FieldType.USER:
                held = set(record.get(field).keys())
            else:
                held = {record.get(field)}
            matched = user.user_id in held
            return matched if condition.operator == "==" else not matched

        if field.type in (FieldType.TIMESTAMP, FieldType.DATE):
            return self._date_result(field, condition, record, state)

        value = record.get(field)
        if field.type is FieldType.NUMBER:
            return value is not None and compare(value, int(condition.value))
        if field.type is FieldType.FLAG:
            return compare(bool(value), _truthy(condition.value))
        if isinstance(value, dict):
            wanted = condition.value
            present = wanted in value or str(wanted) in {str(v) for v in value.values()}
            try:
                present = present or int(wanted) in value
            except (TypeError, ValueError):
                pass
            return present if condition.operator != "!=" else not present
        return compare("" if value is None else str(value), str(condition.value))

    def _date_result(
        self,
        field: Any,
        condition: Condition,
        record: Record,
        state: dict[str, Any],
    ) -> Optional[bool]:
        stored = record.get(field, rich_objects=True)
        if stored is None:
            return None
        if field.type is FieldType.DATE:
            stored = datetime(stored.begin.year, stored.begin.month, stored.begin.day)

        target, offset = _resolve_date_value(condition.value, state["now"])
        result = _OPERATORS[condition.operator](stored, target)

        if offset is not None:
            flips_at = stored - offset
            if flips_at > state["now"] and (state["expires"] is None or flips_at < state["expires"]):
                state["expires"] = flips_at
        return result

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.logic,
            "privileges": list(self.privileges),
            "conditions": [c.to_dict() for c in self.conditions],
            "subsets": [s.to_dict() for s in self.subsets],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> PrivilegeSet:
        if not data:
            return cls()
        privset = cls(logic=data.get("logic", "AND"), privileges=data.get("privileges", ()))
        for item in data.get("conditions", ()):
            privset.add_condition(item["field_id"], item.get("operator", "=="), item.get("value"))
        for item in data.get("subsets", ()):
            privset.add_subset(cls.from_dict(item))
        return privset

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivilegeSet):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"PrivilegeSet({self.to_dict()!r})"


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _resolve_date_value(value: Any, now: datetime) -> tuple[datetime, Optional[timedelta]]:
    """Resolve a condition value to (datetime, offset from now or None)."""
    match = _RELATIVE_DATE.match(str(value).strip())
    if match:
        sign, amount, unit = match.groups()
        offset = timedelta()
        if amount:
            offset = timedelta(**{_UNITS[unit.lower()]: int(amount)})
            if sign == "-":
                offset = -offset
        return now + offset, offset
    return parse_timestamp(value), None
