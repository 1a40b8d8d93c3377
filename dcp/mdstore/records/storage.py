"""
Per-shape value storage strategies.

Record.get/set/clear never branch on field type themselves; they look up
the strategy for the field's StorageShape in STRATEGIES and delegate.
Each strategy knows one physical layout:

- Column strategies read and write the record's own row
  (TEXT, NUMBER, FLAG, TIMESTAMP, DATE, POINT, SEARCH_PARAMETERS)
- Association strategies keep id sets in side tables
  (CONTROLLED, TREE, USER, REFERENCE, IMAGE, FILE)

Invariants:
    - write() and clear() return the list of Changes they made; an empty
      list means the stored value did not change and nothing may be
      published or queued
    - Input normalization raises InvalidValueError before anything is
      written
    - Single-valued association fields keep only the first value given
      and replace the current one

How to change safely:
    - A new FieldType reuses an existing shape or adds a strategy here and
      a column layout in schema/types.py
    - Strategies receive the Record and the FieldDescriptor and use only
      record.store, record.id and the record row helpers
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional

from ..contracts import User
from ..errors import IllegalTransitionError, InvalidValueError
from ..events import EventKind
from ..schema.types import FieldType, StorageShape
from ..storage.attachments import Attachment
from ..storage.terms import clear_visible_counts, factory_for
from .values import DateValue, Point, SearchParameterSet, format_timestamp, parse_timestamp

if TYPE_CHECKING:
    from ..schema.field import FieldDescriptor
    from .record import Record

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class Change:
    """One observable change to a record value."""

    kind: EventKind
    payload: Any = None


def _invalid(field: FieldDescriptor, value: Any, reason: str) -> InvalidValueError:
    return InvalidValueError(
        f"Invalid value for {field.type.display_name} field {field.name}: {reason}",
        field_name=field.name,
        value=value,
    )


def _is_blank(value: Any) -> bool:
    return value is None or value is False or (isinstance(value, str) and not value.strip())


def _integral(value: Any) -> int:
    """Whole number from an int, an integral float or their string forms."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            value = float(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        return int(value)
    raise TypeError(f"{type(value).__name__} is not a number")


class ValueStrategy:
    """Interface shared by all storage strategies."""

    def read(self, record: Record, field: FieldDescriptor, rich_objects: bool = False,
             include_variants: bool = False) -> Any:
        raise NotImplementedError

    def write(self, record: Record, field: FieldDescriptor, value: Any, reset: bool) -> list[Change]:
        raise NotImplementedError

    def clear(self, record: Record, field: FieldDescriptor, subset: Any = None) -> list[Change]:
        raise NotImplementedError

    def is_set(self, record: Record, field: FieldDescriptor) -> bool:
        return self.read(record, field) is not None

    def delete_all(self, record: Record, field: FieldDescriptor) -> None:
        """Remove rows outside the records table owned by this value."""

    def copy(self, source: Record, target: Record, field: FieldDescriptor) -> None:
        """Copy the value of a field from one record to another."""
        value = self.read(source, field, rich_objects=True)
        if value is not None:
            self.write(target, field, value, reset=True)


# -- column strategies ---------------------------------------------------------


class _ColumnStrategy(ValueStrategy):
    """Values stored in columns of the records row."""

    def _columns(self, record: Record, field: FieldDescriptor) -> dict[str, Any]:
        if field.is_temporary:
            return {name: None for name in field.columns()}
        return {name: record.column_value(name) for name in field.columns()}

    def _store(self, record: Record, field: FieldDescriptor, values: dict[str, Any]) -> None:
        if field.is_temporary:
            raise IllegalTransitionError(
                f"Field {field.name} has no storage until it is made permanent",
                current_state="temporary",
            )
        record.write_columns(values)

    def clear(self, record: Record, field: FieldDescriptor, subset: Any = None) -> list[Change]:
        return self.write(record, field, None, reset=True)


class _ScalarStrategy(_ColumnStrategy):
    """One column holding one scalar."""

    def normalize(self, field: FieldDescriptor, value: Any) -> Any:
        raise NotImplementedError

    def read(self, record, field, rich_objects=False, include_variants=False):
        return self._columns(record, field)[field.storage_name]

    def write(self, record, field, value, reset):
        new = self.normalize(field, value)
        if new == self.read(record, field):
            return []
        self._store(record, field, {field.storage_name: new})
        return [Change(EventKind.CLEAR if new is None else EventKind.SET, new)]


class TextStrategy(_ScalarStrategy):
    def normalize(self, field, value):
        if value is None or value is False or value == "":
            return None
        return str(value)

    def read(self, record, field, rich_objects=False, include_variants=False):
        value = super().read(record, field)
        return None if value == "" else value


class NumberStrategy(_ScalarStrategy):
    def normalize(self, field, value):
        if _is_blank(value):
            return None
        try:
            number = _integral(value.strip() if isinstance(value, str) else value)
        except (TypeError, ValueError, OverflowError):
            raise _invalid(field, value, "not a whole number") from None
        minimum = field.get_attribute("min_value")
        maximum = field.get_attribute("max_value")
        if minimum is not None and number < minimum:
            raise _invalid(field, value, f"below minimum {minimum}")
        if maximum is not None and number > maximum:
            raise _invalid(field, value, f"above maximum {maximum}")
        return number


class FlagStrategy(_ScalarStrategy):
    def normalize(self, field, value):
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int) and value in (0, 1):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in _TRUE_STRINGS:
                return 1
            if text in _FALSE_STRINGS:
                return 0
        raise _invalid(field, value, "expected a boolean")

    def read(self, record, field, rich_objects=False, include_variants=False):
        value = super().read(record, field)
        return None if value is None else bool(value)

    def write(self, record, field, value, reset):
        new = self.normalize(field, value)
        current = super().read(record, field)
        if new == current and (new is None) == (current is None):
            return []
        self._store(record, field, {field.storage_name: new})
        return [Change(EventKind.CLEAR if new is None else EventKind.SET, None if new is None else bool(new))]


class TimestampStrategy(_ScalarStrategy):
    def normalize(self, field, value):
        if _is_blank(value):
            return None
        try:
            return format_timestamp(value)
        except (TypeError, ValueError, OverflowError, OSError):
            raise _invalid(field, value, "unparseable timestamp") from None

    def read(self, record, field, rich_objects=False, include_variants=False):
        value = super().read(record, field)
        if value is None:
            return None
        return parse_timestamp(value) if rich_objects else str(value)


class SearchParametersStrategy(_ScalarStrategy):
    def normalize(self, field, value):
        try:
            params = SearchParameterSet.from_value(value)
        except ValueError as e:
            raise _invalid(field, value, str(e)) from None
        return None if params is None or params.is_empty else params.serialize()

    def read(self, record, field, rich_objects=False, include_variants=False):
        stored = super().read(record, field)
        if stored is None:
            return None
        params = SearchParameterSet.from_value(stored)
        return params if rich_objects else dict(params.data)

    def write(self, record, field, value, reset):
        new = self.normalize(field, value)
        if new == super().read(record, field):
            return []
        self._store(record, field, {field.storage_name: new})
        payload = None if new is None else SearchParameterSet.from_value(new).data
        return [Change(EventKind.CLEAR if new is None else EventKind.SET, payload)]


class DateStrategy(_ColumnStrategy):
    """Begin/End/Precision columns."""

    def _names(self, field):
        base = field.storage_name
        return f"{base}Begin", f"{base}End", f"{base}Precision"

    def read(self, record, field, rich_objects=False, include_variants=False):
        columns = self._columns(record, field)
        begin, end, precision = (columns[n] for n in self._names(field))
        value = DateValue.from_columns(begin, end, precision)
        if value is None:
            return None
        return value if rich_objects else value.formatted()

    def write(self, record, field, value, reset):
        try:
            new = None if _is_blank(value) else DateValue.parse(value)
        except ValueError as e:
            raise _invalid(field, value, str(e)) from None

        begin_col, end_col, precision_col = self._names(field)
        columns = self._columns(record, field)
        current = (columns[begin_col], columns[end_col], columns[precision_col])
        stored = (None, None, None) if new is None else (new.begin_date, new.end_date, int(new.precision))
        if tuple(str(v)[:10] if isinstance(v, str) else v for v in current) == stored:
            return []
        self._store(record, field, dict(zip((begin_col, end_col, precision_col), stored)))
        return [Change(EventKind.CLEAR if new is None else EventKind.SET, None if new is None else str(new))]


class PointStrategy(_ColumnStrategy):
    """X/Y columns, rounded to the field's decimal digits."""

    def read(self, record, field, rich_objects=False, include_variants=False):
        columns = self._columns(record, field)
        point = Point(columns[f"{field.storage_name}X"], columns[f"{field.storage_name}Y"])
        if rich_objects:
            return None if point.is_empty else point
        return point.to_dict()

    def is_set(self, record, field):
        point = self.read(record, field)
        return point["X"] is not None and point["Y"] is not None

    def write(self, record, field, value, reset):
        if _is_blank(value):
            new = Point()
        else:
            try:
                new = Point.from_value(value)
            except (TypeError, ValueError) as e:
                raise _invalid(field, value, str(e)) from None
            new = new.rounded(int(field.get_attribute("point_decimal_digits")))

        if new.to_dict() == self.read(record, field):
            return []
        self._store(record, field, {f"{field.storage_name}X": new.x, f"{field.storage_name}Y": new.y})
        return [Change(EventKind.CLEAR if new.is_empty else EventKind.SET, new.to_dict())]

    def copy(self, source, target, field):
        point = self.read(source, field, rich_objects=True)
        if point is not None:
            self.write(target, field, point, reset=True)


# -- association strategies ----------------------------------------------------


class _AssociationStrategy(ValueStrategy):
    """Id sets kept outside the records row."""

    def is_set(self, record, field):
        return len(self.current_ids(record, field)) > 0

    def current_ids(self, record: Record, field: FieldDescriptor) -> list[int]:
        raise NotImplementedError

    def resolve_one(self, record: Record, field: FieldDescriptor, value: Any) -> Optional[int]:
        """Map one input to an item id; None means skip it."""
        raise NotImplementedError

    def normalize_ids(self, record: Record, field: FieldDescriptor, value: Any) -> list[int]:
        """Turn any accepted input shape into an ordered, de-duplicated id list.

        Mappings contribute their keys ({id: name}); sequences and sets
        contribute each element; anything else is a single item.
        """
        if value is None or value is False:
            return []
        if isinstance(value, dict):
            items: Iterable[Any] = list(value.keys())
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = value
        else:
            items = [value]

        ids: list[int] = []
        for item in items:
            item_id = self.resolve_one(record, field, item)
            if item_id is not None and item_id not in ids:
                ids.append(item_id)
        return ids

    def add(self, record: Record, field: FieldDescriptor, ids: list[int]) -> None:
        raise NotImplementedError

    def remove(self, record: Record, field: FieldDescriptor, ids: list[int]) -> None:
        raise NotImplementedError

    def after_change(self, record: Record, field: FieldDescriptor, touched: set[int]) -> None:
        pass

    def write(self, record, field, value, reset):
        new_ids = self.normalize_ids(record, field, value)
        if not new_ids and not reset:
            return []
        single = not field.allow_multiple
        if single:
            new_ids = new_ids[:1]
        old_ids = self.current_ids(record, field)

        to_remove = [i for i in old_ids if i not in new_ids] if (reset or single) else []
        to_add = [i for i in new_ids if i not in old_ids]
        if not to_remove and not to_add:
            return []
        return self._apply(record, field, to_remove, to_add, old_ids, new_ids)

    def _apply(self, record, field, to_remove, to_add, old_ids, new_ids) -> list[Change]:
        changes = []
        with record.store.db.transaction():
            if to_remove:
                self.remove(record, field, to_remove)
                changes.append(Change(EventKind.REMOVE, list(to_remove)))
            if to_add:
                self.add(record, field, to_add)
                changes.append(Change(EventKind.ADD, list(to_add)))
            self.after_change(record, field, set(old_ids) | set(new_ids))
        return changes

    def clear(self, record, field, subset=None):
        old_ids = self.current_ids(record, field)
        if subset is None:
            doomed = list(old_ids)
        else:
            wanted = self._subset_ids(record, field, subset)
            doomed = [i for i in old_ids if i in wanted]
        if not doomed:
            return []
        return self._apply(record, field, doomed, [], old_ids, [])

    def _subset_ids(self, record, field, subset) -> set[int]:
        return set(self.normalize_ids(record, field, subset))

    def delete_all(self, record, field):
        ids = self.current_ids(record, field)
        if ids:
            with record.store.db.transaction():
                self.remove(record, field, ids)
                self.after_change(record, field, set(ids))

    def copy(self, source, target, field):
        ids = self.current_ids(source, field)
        if ids:
            self.write(target, field, ids, reset=True)


class VocabularyStrategy(_AssociationStrategy):
    """ControlledName, Option and Tree terms."""

    def _factory(self, record, field):
        return factory_for(record.store.db, field.id, field.type)

    def current_ids(self, record, field):
        return self._factory(record, field).record_term_ids(record.id)

    def read(self, record, field, rich_objects=False, include_variants=False):
        factory = self._factory(record, field)
        names = factory.names(factory.record_term_ids(record.id))
        if include_variants and field.type is not FieldType.TREE:
            flat = []
            for term_id, name in names.items():
                flat.append(name)
                flat.extend(factory.variants(term_id))
            return flat
        return names

    def resolve_one(self, record, field, value):
        factory = self._factory(record, field)
        if isinstance(value, bool):
            raise _invalid(field, value, "terms are given by id or name")
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            term_id = int(value)
            if factory.id_exists(term_id):
                return term_id
            if factory.term_field(term_id) is not None:
                raise _invalid(field, value, f"term {term_id} belongs to another field")
            if isinstance(value, int):
                raise _invalid(field, value, f"no term with id {term_id}")
        if isinstance(value, str):
            term_id = factory.resolve_name(value)
            if term_id is not None:
                return term_id
        raise _invalid(field, value, "unknown term")

    def add(self, record, field, ids):
        factory = self._factory(record, field)
        factory.add_associations(record.id, ids)
        factory.touch_last_assigned(ids)

    def remove(self, record, field, ids):
        self._factory(record, field).remove_associations(record.id, ids)

    def after_change(self, record, field, touched):
        clear_visible_counts(record.store.db, field.id, touched)
        if field.type is FieldType.TREE:
            self._factory(record, field).recalculate_record_counts(touched)


class UserStrategy(_AssociationStrategy):
    """User ids in record_user_ints."""

    def current_ids(self, record, field):
        return record.store.db.query_column(
            "SELECT user_id FROM record_user_ints WHERE record_id = ? AND field_id = ? ORDER BY user_id",
            (record.id, field.id),
        )

    def read(self, record, field, rich_objects=False, include_variants=False):
        users = record.store.users
        named = {uid: users.user_name(uid) or str(uid) for uid in self.current_ids(record, field)}
        return dict(sorted(named.items(), key=lambda item: item[1].lower()))

    def resolve_one(self, record, field, value):
        users = record.store.users
        if isinstance(value, User):
            if value.is_anonymous:
                logger.warning(
                    f"Refusing to set user field {field.name} to the anonymous user",
                    extra={"record_id": record.id, "field_id": field.id},
                )
                return None
            return value.user_id
        if isinstance(value, int) and not isinstance(value, bool):
            if users.user_exists(value):
                return value
            raise _invalid(field, value, f"no user with id {value}")
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit() and users.user_exists(int(text)):
                return int(text)
            user_id = users.resolve_user(text)
            if user_id is not None:
                return user_id
        raise _invalid(field, value, "unknown user")

    def add(self, record, field, ids):
        with record.store.db.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO record_user_ints (record_id, field_id, user_id) VALUES (?, ?, ?)",
                [(record.id, field.id, uid) for uid in ids],
            )

    def remove(self, record, field, ids):
        with record.store.db.transaction() as conn:
            conn.executemany(
                "DELETE FROM record_user_ints WHERE record_id = ? AND field_id = ? AND user_id = ?",
                [(record.id, field.id, uid) for uid in ids],
            )


class ReferenceStrategy(_AssociationStrategy):
    """Record-to-record references in reference_ints."""

    def current_ids(self, record, field):
        return record.store.db.query_column(
            "SELECT dst_record_id FROM reference_ints WHERE field_id = ? AND src_record_id = ? "
            "ORDER BY dst_record_id",
            (field.id, record.id),
        )

    def read(self, record, field, rich_objects=False, include_variants=False):
        ids = self.current_ids(record, field)
        if rich_objects:
            return {rid: record.store.records.load(rid) for rid in ids}
        return {rid: rid for rid in ids}

    def resolve_one(self, record, field, value):
        if hasattr(value, "id") and hasattr(value, "schema_id"):
            value = value.id
        try:
            target_id = int(value)
        except (TypeError, ValueError):
            raise _invalid(field, value, "references are given by record id") from None
        if target_id == record.id:
            return None
        schema_id = record.store.db.query_value(
            "SELECT schema_id FROM records WHERE record_id = ?", (target_id,)
        )
        if schema_id is None:
            raise _invalid(field, value, f"no record with id {target_id}")
        allowed = field.get_attribute("referenceable_schema_ids")
        if allowed and schema_id not in allowed:
            raise _invalid(field, value, f"records of schema {schema_id} cannot be referenced")
        return target_id

    def _subset_ids(self, record, field, subset):
        values = list(subset.keys()) if isinstance(subset, dict) else (
            list(subset) if isinstance(subset, (list, tuple, set, frozenset)) else [subset]
        )
        return {int(getattr(v, "id", v)) for v in values}

    def add(self, record, field, ids):
        with record.store.db.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO reference_ints (field_id, src_record_id, dst_record_id) VALUES (?, ?, ?)",
                [(field.id, record.id, rid) for rid in ids],
            )

    def remove(self, record, field, ids):
        with record.store.db.transaction() as conn:
            conn.executemany(
                "DELETE FROM reference_ints WHERE field_id = ? AND src_record_id = ? AND dst_record_id = ?",
                [(field.id, record.id, rid) for rid in ids],
            )


class AttachmentStrategy(_AssociationStrategy):
    """Image and File attachments.

    Images move: an image may belong to one record only. Files are
    copied when they already belong to another record. Attachments
    removed from a record are destroyed.
    """

    def current_ids(self, record, field):
        return record.store.registry.attachments.for_record(record.id, field.id)

    def read(self, record, field, rich_objects=False, include_variants=False):
        ids = self.current_ids(record, field)
        if rich_objects:
            store = record.store.registry.attachments
            return [store.get(i) for i in ids]
        return ids

    def resolve_one(self, record, field, value):
        attachment_id = value.attachment_id if isinstance(value, Attachment) else value
        try:
            attachment_id = int(attachment_id)
        except (TypeError, ValueError):
            raise _invalid(field, value, "attachments are given by id") from None
        attachment = record.store.registry.attachments.get(attachment_id)
        if attachment is None:
            raise _invalid(field, value, f"no attachment with id {attachment_id}")
        if field.type is FieldType.IMAGE and attachment.record_id not in (None, record.id):
            raise _invalid(field, value, f"image {attachment_id} belongs to record {attachment.record_id}")
        return attachment_id

    def add(self, record, field, ids):
        store = record.store.registry.attachments
        for attachment_id in ids:
            attachment = store.get(attachment_id)
            if field.type is FieldType.FILE and attachment.record_id not in (None, record.id):
                attachment = store.duplicate(attachment_id)
            store.assign(attachment.attachment_id, record.id, field.id)

    def remove(self, record, field, ids):
        store = record.store.registry.attachments
        for attachment_id in ids:
            store.destroy(attachment_id)

    def _apply(self, record, field, to_remove, to_add, old_ids, new_ids):
        changes = []
        with record.store.db.transaction():
            if to_remove:
                self.remove(record, field, to_remove)
                changes.append(Change(EventKind.REMOVE, list(to_remove)))
            if to_add:
                before = set(self.current_ids(record, field))
                self.add(record, field, to_add)
                added = [i for i in self.current_ids(record, field) if i not in before]
                changes.append(Change(EventKind.ADD, added))
        return changes

    def copy(self, source, target, field):
        store = source.store.registry.attachments
        copies = [store.duplicate(i).attachment_id for i in self.current_ids(source, field)]
        if copies:
            self.write(target, field, copies, reset=True)


STRATEGIES: dict[StorageShape, ValueStrategy] = {
    StorageShape.TEXT: TextStrategy(),
    StorageShape.NUMBER: NumberStrategy(),
    StorageShape.FLAG: FlagStrategy(),
    StorageShape.TIMESTAMP: TimestampStrategy(),
    StorageShape.DATE: DateStrategy(),
    StorageShape.POINT: PointStrategy(),
    StorageShape.SEARCH_PARAMETERS: SearchParametersStrategy(),
    StorageShape.CONTROLLED: VocabularyStrategy(),
    StorageShape.TREE: VocabularyStrategy(),
    StorageShape.USER: UserStrategy(),
    StorageShape.REFERENCE: ReferenceStrategy(),
    StorageShape.IMAGE: AttachmentStrategy(),
    StorageShape.FILE: AttachmentStrategy(),
}


def strategy_for(field: FieldDescriptor) -> ValueStrategy:
    return STRATEGIES[field.type.shape]
