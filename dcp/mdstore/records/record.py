"""
Records: one item of a schema and the values of its fields.

A Record reads and writes field values through the storage strategy for
each field's shape (records/storage.py) and owns the side effects of a
real change:
- a per-field last-modified row (timestamp and user)
- one EventBus event per change on the field's scope
- one coalesced housekeeping unit per record in the deferred queue

Lifecycle:
    create() -> temporary (negative id)
    make_permanent() -> permanent id, associations re-keyed
    destroy() -> values, associations and cache rows removed

Invariants:
    - Temporary -> permanent is one-way; destroyed is terminal
    - A write whose stored value does not change has no side effects
    - Housekeeping is queued only for permanent records, and never from
      inside a housekeeping unit
    - The visibility captured before the first write of a pending unit is
      the one the unit compares against

How to change safely:
    - New per-record side tables must be re-keyed in make_permanent() and
      cleaned in destroy()
    - Value semantics live in the strategies, not here

Example:
    >>> record = store.records.create(0, user)
    >>> record.set("Title", "Tidal Patterns")
    True
    >>> record.make_permanent()
    >>> record.get("Title")
    'Tidal Patterns'
"""

from __future__ import annotations

import copy
import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Union

from ..contracts import User
from ..errors import IllegalAttributeError, IllegalTransitionError, InvalidValueError, UnknownRecordError
from ..events import RECORD_SCOPE, EventKind, field_scope
from ..schema.types import TEXT_TYPES, FieldType, UpdateMethod
from .housekeeping import (
    HOUSEKEEPING_CALLBACK,
    PRIORITY_HIGH,
    housekeeping_key,
    merge_housekeeping_params,
)
from .storage import Change, strategy_for
from .values import now_string

if TYPE_CHECKING:
    from ..schema.field import FieldDescriptor
    from ..storage.terms import Qualifier
    from ..store import MetadataStore

logger = logging.getLogger(__name__)

DUPLICATE_MARKER = " [DUPLICATE]"
RATING_SCALE = 100

# Tables whose record_id column follows the record through make_permanent()
_RECORD_KEYED_TABLES = (
    "record_name_ints",
    "record_class_ints",
    "record_user_ints",
    "attachments",
    "record_field_timestamps",
    "record_ratings",
    "record_comments",
)

_DATE_SUBSTITUTION_TYPES = frozenset({FieldType.TEXT, FieldType.PARAGRAPH, FieldType.DATE, FieldType.TIMESTAMP})
_USER_SUBSTITUTION_TYPES = frozenset({FieldType.TEXT, FieldType.PARAGRAPH})


class RecordState(enum.Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    DESTROYED = "destroyed"


class ChangeOp(enum.IntEnum):
    """Operations accepted by Record.apply_list_of_changes()."""

    NOP = 0
    SET = 1
    CLEAR = 2
    CLEAR_ALL = 3
    APPEND = 4
    PREPEND = 5
    LEGACY_SET = 6
    FIND_REPLACE = 7


@dataclass(frozen=True)
class FieldChange:
    """One entry of a bulk edit.

    Attributes:
        field: Field reference
        op: Operation to apply
        value: New value, value to clear, or text to find
        value2: Replacement text for FIND_REPLACE
    """

    field: Any
    op: ChangeOp
    value: Any = None
    value2: Any = None

    @classmethod
    def from_value(cls, change: Union[FieldChange, Mapping[str, Any]]) -> FieldChange:
        if isinstance(change, FieldChange):
            return change
        return cls(
            field=change.get("field", change.get("field_id")),
            op=ChangeOp(int(change.get("op", ChangeOp.NOP))),
            value=change.get("value"),
            value2=change.get("value2", change.get("replace")),
        )


class Record:
    """One item of a schema.

    Thread-safety:
        Not thread-safe. Instances are cheap; load a fresh one per unit
        of work.
    """

    def __init__(self, store: MetadataStore, record_id: int, acting_user: Optional[User] = None) -> None:
        self.store = store
        self.acting_user = acting_user or User.anonymous()
        self.suppress_housekeeping = False
        self.view_expiration: Optional[datetime] = None
        self._id = int(record_id)
        self._state = RecordState.TEMPORARY if self._id < 0 else RecordState.PERMANENT
        self._values: dict[tuple[int, bool], Any] = {}
        self.permission_cache: dict[tuple[Any, str], bool] = {}
        self._row: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the records row and drop cached values."""
        row = self.store.db.query_row("SELECT * FROM records WHERE record_id = ?", (self._id,))
        if row is None:
            raise UnknownRecordError(f"No record with id {self._id}", record_id=self._id)
        self._row = {key: row[key] for key in row.keys()}
        self._values.clear()
        self.permission_cache.clear()

    # -- identity ----------------------------------------------------------

    @property
    def id(self) -> int:
        return self._id

    @property
    def schema_id(self) -> int:
        return int(self._row["schema_id"])

    @property
    def state(self) -> RecordState:
        return self._state

    @property
    def is_temporary(self) -> bool:
        return self._state is RecordState.TEMPORARY

    @property
    def date_last_modified(self) -> Optional[str]:
        return self._row.get("date_last_modified")

    @property
    def created_at(self) -> str:
        return self._row["created_at"]

    def _require_live(self) -> None:
        if self._state is RecordState.DESTROYED:
            raise IllegalTransitionError(f"Record {self._id} has been destroyed", current_state="destroyed")

    # -- row access used by the storage strategies -------------------------

    def column_value(self, name: str) -> Any:
        return self._row.get(name)

    def write_columns(self, values: Mapping[str, Any]) -> None:
        if not values:
            return
        assignments = ", ".join(f'"{name}" = ?' for name in values)
        with self.store.db.transaction() as conn:
            conn.execute(
                f"UPDATE records SET {assignments} WHERE record_id = ?",
                (*values.values(), self._id),
            )
        self._row.update(values)

    # -- values ------------------------------------------------------------

    def _field(self, field_ref: Any) -> FieldDescriptor:
        return self.store.registry.get_field(field_ref, self.schema_id)

    def get(self, field_ref: Any, rich_objects: bool = False, include_variants: bool = False) -> Any:
        """Read a field value.

        Args:
            field_ref: FieldDescriptor, field id or field name
            rich_objects: Return value objects (datetime, DateValue, Point,
                Attachment, Record) instead of plain values
            include_variants: For ControlledName/Option fields, return a
                flat list of names plus their variants

        Returns:
            The value, or the type's empty form when unset

        Raises:
            UnknownFieldError: If the field does not exist
            CrossSchemaError: If the field belongs to another schema
        """
        field = self._field(field_ref)
        strategy = strategy_for(field)
        if rich_objects:
            return strategy.read(self, field, rich_objects=True, include_variants=include_variants)

        key = (field.id, include_variants)
        if key not in self._values:
            self._values[key] = strategy.read(self, field, include_variants=include_variants)
        return copy.deepcopy(self._values[key])

    def set(self, field_ref: Any, value: Any, reset: bool = False) -> bool:
        """Write a field value.

        Args:
            field_ref: Field reference
            value: New value; ids, value objects and names are accepted
                where the type allows
            reset: Replace existing values of multi-valued fields instead
                of adding to them

        Returns:
            True if the stored value changed

        Raises:
            InvalidValueError: If the value cannot be stored
            IllegalTransitionError: If the record has been destroyed
        """
        field = self._field(field_ref)
        self._require_live()
        was_public = self._public_before_write()
        changes = strategy_for(field).write(self, field, value, reset)
        self._finish_change(field, changes, was_public)
        return bool(changes)

    def clear(self, field_ref: Any, subset: Any = None) -> bool:
        """Clear a field, or only the given values of a multi-valued field.

        Returns:
            True if the stored value changed
        """
        field = self._field(field_ref)
        self._require_live()
        was_public = self._public_before_write()
        changes = strategy_for(field).clear(self, field, subset)
        self._finish_change(field, changes, was_public)
        return bool(changes)

    def field_is_set(self, field_ref: Any) -> bool:
        field = self._field(field_ref)
        return strategy_for(field).is_set(self, field)

    def _public_before_write(self) -> bool:
        if self.is_temporary or self.suppress_housekeeping:
            return False
        return self.user_can_view(User.anonymous())

    def _finish_change(self, field: FieldDescriptor, changes: list[Change], was_public: bool) -> None:
        if not changes:
            return
        self._values.clear()
        self.permission_cache.clear()

        for change in changes:
            self.store.events.publish(
                change.kind,
                field_scope(field.id),
                {"record_id": self._id, "field_id": field.id, "value": change.payload},
            )
        self._after_value_change(field, was_public)

    def _after_value_change(self, field: FieldDescriptor, was_public: bool) -> None:
        now = now_string()
        with self.store.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO record_field_timestamps (record_id, field_id, modified_by, timestamp) "
                "VALUES (?, ?, ?, ?)",
                (self._id, field.id, self._acting_user_id(), now),
            )
            conn.execute("UPDATE records SET date_last_modified = ? WHERE record_id = ?", (now, self._id))
        self._row["date_last_modified"] = now

        if self.is_temporary:
            return
        if self.store.registry.viewing_rules_check_field(self.schema_id, field.id):
            self.store.evaluator.clear_record(self._id)
        if not self.suppress_housekeeping:
            self._queue_housekeeping(
                was_public=was_public,
                run_auto_updates=field.update_method is UpdateMethod.NO_AUTO_UPDATE,
                was_temporary=False,
            )

    def _queue_housekeeping(self, was_public: bool, run_auto_updates: bool, was_temporary: bool) -> None:
        self.store.queue.enqueue_unique(
            housekeeping_key(self._id),
            HOUSEKEEPING_CALLBACK,
            {
                "record_id": self._id,
                "user_id": self.acting_user.user_id,
                "was_public": was_public,
                "run_auto_updates": run_auto_updates,
                "was_temporary": was_temporary,
            },
            merge=merge_housekeeping_params,
            priority=PRIORITY_HIGH,
            description=f"Housekeeping for record {self._id}",
        )

    def notify_modified(self) -> None:
        """Publish a record-level SET event."""
        self.store.events.publish(EventKind.SET, RECORD_SCOPE, {"record_id": self._id, "schema_id": self.schema_id})

    def _acting_user_id(self) -> int:
        return -1 if self.acting_user.is_anonymous else int(self.acting_user.user_id)

    def field_last_modified(self, field_ref: Any) -> Optional[dict[str, Any]]:
        """When and by whom a field last changed on this record."""
        field = self._field(field_ref)
        row = self.store.db.query_row(
            "SELECT modified_by, timestamp FROM record_field_timestamps WHERE record_id = ? AND field_id = ?",
            (self._id, field.id),
        )
        if row is None:
            return None
        return {
            "timestamp": row["timestamp"],
            "modified_by": None if row["modified_by"] < 0 else row["modified_by"],
        }

    def checksum_for_fields(self, field_refs: Iterable[Any]) -> str:
        """md5 over the current values of the given fields."""
        values = [[self._field(ref).id, self.get(ref)] for ref in field_refs]
        return hashlib.md5(json.dumps(values, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    # -- qualifiers --------------------------------------------------------

    def get_qualifier(self, field_ref: Any, return_object: bool = False) -> Any:
        """Qualifier for a field's value on this record.

        Vocabulary fields return {term_id: qualifier} using each term's own
        qualifier when the field has item-level qualifiers, otherwise the
        field default. Other fields return a single qualifier: the
        record's own when set, else the field default.
        """
        field = self._field(field_ref)
        registry = self.store.registry

        def out(qualifier_id: Optional[int]) -> Union[Qualifier, int, None]:
            if qualifier_id is None or not return_object:
                return qualifier_id
            return registry.qualifiers.get(qualifier_id)

        if field.is_vocabulary:
            factory = field.factory
            result = {}
            for term_id in factory.record_term_ids(self._id):
                qualifier_id = None
                if field.has_item_level_qualifiers:
                    qualifier_id = factory.qualifier(term_id)
                result[term_id] = out(qualifier_id if qualifier_id is not None else field.default_qualifier_id)
            return result

        qualifier_id = None
        if field.has_item_level_qualifiers and field.qualifier_column:
            qualifier_id = self.column_value(field.qualifier_column)
        return out(qualifier_id if qualifier_id is not None else field.default_qualifier_id)

    def set_qualifier(self, field_ref: Any, qualifier: Any) -> None:
        """Set the record-level qualifier for a field.

        Raises:
            IllegalAttributeError: For vocabulary fields, whose qualifiers
                belong to the terms
            InvalidValueError: If the qualifier cannot be resolved
        """
        field = self._field(field_ref)
        self._require_live()
        if field.is_vocabulary:
            raise IllegalAttributeError(
                f"Qualifiers of {field.type.display_name} field {field.name} are set on its terms",
                attribute="qualifier",
                field_type=field.type.display_name,
            )
        if not field.has_item_level_qualifiers or not field.qualifier_column:
            logger.debug(f"Field {field.name} has no item-level qualifiers; ignoring set_qualifier")
            return
        qualifier_id = None if qualifier is None else field.resolve_qualifier(qualifier).qualifier_id
        self.write_columns({field.qualifier_column: qualifier_id})

    # -- lifecycle ---------------------------------------------------------

    @classmethod
    def create(cls, store: MetadataStore, schema_id: int, user: Optional[User] = None) -> Record:
        """Create a temporary record with default values applied.

        Raises:
            UnknownSchemaError: If the schema does not exist
        """
        user = user or User.anonymous()
        schema = store.registry.get_schema(schema_id)
        store.records.clean_out_stale_temp_records()

        now = now_string()
        with store.db.transaction() as conn:
            record_id = store.db.allocate_id(conn, "records", "record_id", temporary=True)
            conn.execute(
                "INSERT INTO records (record_id, schema_id, date_last_modified, created_at) VALUES (?, ?, ?, ?)",
                (record_id, schema.schema_id, now, now),
            )

        record = cls(store, record_id, acting_user=user)
        for field in store.registry.get_fields(schema.schema_id):
            if field.default_value is not None:
                record.set(field, field.default_value)
        record.update_autoupdate_fields(UpdateMethod.ON_RECORD_CREATE, user)

        store.events.publish(EventKind.ADD, RECORD_SCOPE, {"record_id": record_id, "schema_id": schema.schema_id})
        logger.debug(f"Created temporary record {record_id}", extra={"schema_id": schema.schema_id})
        return record

    def make_permanent(self) -> None:
        """Give a temporary record a permanent id.

        Raises:
            IllegalTransitionError: If the record has been destroyed
        """
        self._require_live()
        if not self.is_temporary:
            return

        db = self.store.db
        old_id = self._id
        with db.transaction() as conn:
            new_id = db.allocate_id(conn, "records", "record_id", temporary=False)
            conn.execute("UPDATE records SET record_id = ? WHERE record_id = ?", (new_id, old_id))
            for table in _RECORD_KEYED_TABLES:
                conn.execute(f"UPDATE {table} SET record_id = ? WHERE record_id = ?", (new_id, old_id))
            conn.execute("UPDATE reference_ints SET src_record_id = ? WHERE src_record_id = ?", (new_id, old_id))
            conn.execute("UPDATE reference_ints SET dst_record_id = ? WHERE dst_record_id = ?", (new_id, old_id))
            conn.execute("DELETE FROM user_perms_cache WHERE record_id = ?", (old_id,))

        self._id = new_id
        self._state = RecordState.PERMANENT
        self.reload()

        self._queue_housekeeping(was_public=False, run_auto_updates=False, was_temporary=True)
        self.store.events.publish(
            EventKind.ADD,
            RECORD_SCOPE,
            {"record_id": new_id, "previous_id": old_id, "schema_id": self.schema_id},
        )
        logger.info(f"Record {old_id} made permanent as {new_id}", extra={"schema_id": self.schema_id})

    def destroy(self) -> None:
        """Delete the record, its values and everything keyed on it."""
        if self._state is RecordState.DESTROYED:
            return

        registry = self.store.registry
        db = self.store.db
        referrers = db.query_column(
            "SELECT DISTINCT src_record_id FROM reference_ints WHERE dst_record_id = ? AND src_record_id > 0",
            (self._id,),
        )
        with db.transaction() as conn:
            for field in registry.get_fields(self.schema_id, include_disabled=True):
                strategy_for(field).delete_all(self, field)
            for table in ("record_field_timestamps", "record_ratings", "record_comments", "user_perms_cache"):
                conn.execute(f"DELETE FROM {table} WHERE record_id = ?", (self._id,))
            conn.execute("DELETE FROM reference_ints WHERE dst_record_id = ?", (self._id,))
            conn.execute("DELETE FROM records WHERE record_id = ?", (self._id,))

        self.store.queue.cancel(housekeeping_key(self._id))
        for referrer_id in referrers:
            if referrer_id != self._id:
                self.store.queue.enqueue_unique(
                    housekeeping_key(referrer_id),
                    HOUSEKEEPING_CALLBACK,
                    {"record_id": referrer_id, "user_id": self.acting_user.user_id, "was_public": False,
                     "run_auto_updates": True, "was_temporary": False},
                    merge=merge_housekeeping_params,
                    priority=PRIORITY_HIGH,
                    description=f"Housekeeping for record {referrer_id}",
                )
        if not self.is_temporary:
            self.store.indexer.remove_from_index(self._id)

        self._state = RecordState.DESTROYED
        self._values.clear()
        self.permission_cache.clear()
        self.store.events.publish(EventKind.REMOVE, RECORD_SCOPE, {"record_id": self._id, "schema_id": self.schema_id})
        logger.info(f"Destroyed record {self._id}", extra={"schema_id": self.schema_id})

    def duplicate(self, mark_as_duplicate: bool = True) -> Record:
        """Copy this record into a new one.

        Fields with copy_on_resource_duplication set are copied; files and
        images are duplicated. The copy is made permanent when this record
        is permanent, and its title (or description) gets a duplicate
        marker.
        """
        self._require_live()
        user = self.acting_user
        target = Record.create(self.store, self.schema_id, user)

        for field in self.store.registry.get_fields(self.schema_id, include_disabled=True):
            if not field.get_attribute("copy_on_resource_duplication"):
                continue
            strategy = strategy_for(field)
            strategy.clear(target, field)
            strategy.copy(self, target, field)
        target.reload()

        if mark_as_duplicate:
            registry = self.store.registry
            marked = registry.field_by_standard_name(self.schema_id, "Title") or registry.field_by_standard_name(
                self.schema_id, "Description"
            )
            if marked is not None and marked.type in TEXT_TYPES:
                target.set(marked, (target.get(marked) or "") + DUPLICATE_MARKER)

        target.update_autoupdate_fields(UpdateMethod.ON_RECORD_CREATE, user)
        target.update_autoupdate_fields(UpdateMethod.ON_RECORD_CHANGE, user)
        if not self.is_temporary:
            target.make_permanent()
            if target.user_can_view(User.anonymous()):
                target.update_autoupdate_fields(UpdateMethod.ON_RECORD_RELEASE, user)
        logger.info(f"Duplicated record {self._id} as {target.id}")
        return target

    def update_autoupdate_fields(self, method: UpdateMethod, user: Optional[User] = None) -> None:
        """Refresh Timestamp and User fields configured for the given trigger."""
        user = user or self.acting_user
        fields = self.store.registry.get_fields(self.schema_id, type_filter=(FieldType.TIMESTAMP, FieldType.USER))
        for field in fields:
            if field.update_method is not method:
                continue
            if field.type is FieldType.TIMESTAMP:
                self.set(field, "now")
            elif not user.is_anonymous:
                self.set(field, user, reset=True)

    # -- bulk edits --------------------------------------------------------

    def apply_list_of_changes(
        self,
        changes: Iterable[Union[FieldChange, Mapping[str, Any]]],
        user: Optional[User] = None,
    ) -> bool:
        """Apply a list of edit operations.

        Fields the user may not edit are skipped. CLEAR and CLEAR_ALL leave
        required fields alone unless other values remain. Vocabulary values
        that cannot be resolved are logged and skipped.

        Returns:
            True if any stored value changed
        """
        self._require_live()
        changed = False
        for entry in changes:
            change = FieldChange.from_value(entry)
            field = self._field(change.field)
            if user is not None and not self.user_can_edit_field(user, field):
                logger.debug(f"Skipping uneditable field {field.name}", extra={"record_id": self._id})
                continue
            try:
                changed = self._apply_change(field, change, user) or changed
            except InvalidValueError as e:
                if not field.is_vocabulary:
                    raise
                logger.warning(f"Skipping unresolvable value for {field.name}: {e}", extra={"record_id": self._id})
        return changed

    def _apply_change(self, field: FieldDescriptor, change: FieldChange, user: Optional[User]) -> bool:
        op = change.op
        if op is ChangeOp.NOP:
            return False

        value = self._substitute(field, change.value, user)
        if op in (ChangeOp.SET, ChangeOp.LEGACY_SET):
            if value is None or value == "" or value == [] or value == {}:
                return False
            return self.set(field, value, reset=True)

        if op is ChangeOp.CLEAR:
            if not field.optional and self._value_count(field) <= 1:
                return False
            return self.clear(field, change.value)

        if op is ChangeOp.CLEAR_ALL:
            if not field.optional:
                return False
            return self.clear(field)

        if op in (ChangeOp.APPEND, ChangeOp.PREPEND):
            if value is None or value == "":
                return False
            if field.type in TEXT_TYPES:
                current = self.get(field)
                if not current:
                    return self.set(field, value)
                separator = "\n" if field.type is FieldType.PARAGRAPH else " "
                combined = f"{current}{separator}{value}" if op is ChangeOp.APPEND else f"{value}{separator}{current}"
                return self.set(field, combined)
            return self.set(field, value, reset=False)

        if op is ChangeOp.FIND_REPLACE:
            current = self.get(field)
            if field.type not in TEXT_TYPES or not current or not change.value:
                return False
            return self.set(field, current.replace(str(change.value), str(change.value2 or "")))

        return False

    def _value_count(self, field: FieldDescriptor) -> int:
        value = self.get(field)
        if isinstance(value, (dict, list)):
            if field.type is FieldType.POINT:
                return int(strategy_for(field).is_set(self, field))
            return len(value)
        return 0 if value is None else 1

    def _substitute(self, field: FieldDescriptor, value: Any, user: Optional[User]) -> Any:
        if not isinstance(value, str):
            return value
        if field.type in _DATE_SUBSTITUTION_TYPES:
            now = datetime.now()
            value = value.replace("X-DATE-X", now.strftime("%Y-%m-%d")).replace("X-TIME-X", now.strftime("%H:%M:%S"))
        if field.type in _USER_SUBSTITUTION_TYPES and user is not None:
            value = value.replace("X-USERNAME-X", user.name).replace("X-USEREMAIL-X", user.email)
        return value

    # -- ratings and comments ----------------------------------------------

    def rate(self, user: User, rating: int) -> None:
        """Record a user's rating (0-100) and refresh the cumulative rating."""
        self._require_live()
        if user.is_anonymous:
            raise InvalidValueError("Anonymous users cannot rate records", value=rating)
        rating = int(rating)
        if not 0 <= rating <= RATING_SCALE:
            raise InvalidValueError(f"Rating must be between 0 and {RATING_SCALE}", value=rating)
        with self.store.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO record_ratings (record_id, user_id, rating) VALUES (?, ?, ?)",
                (self._id, user.user_id, rating),
            )
            average = conn.execute(
                "SELECT AVG(rating) FROM record_ratings WHERE record_id = ?", (self._id,)
            ).fetchone()[0]
            conn.execute(
                "UPDATE records SET cumulative_rating = ? WHERE record_id = ?",
                (int(round(average or 0)), self._id),
            )
        self._row["cumulative_rating"] = int(round(average or 0))

    def rating(self, user: User) -> Optional[int]:
        if user.is_anonymous:
            return None
        return self.store.db.query_value(
            "SELECT rating FROM record_ratings WHERE record_id = ? AND user_id = ?", (self._id, user.user_id)
        )

    @property
    def cumulative_rating(self) -> int:
        return int(self._row.get("cumulative_rating") or 0)

    def scaled_cumulative_rating(self, scale: int = 5) -> Optional[int]:
        """Cumulative rating on a 0..scale range, None if nobody has rated."""
        if self.num_ratings() == 0:
            return None
        return int(round(self.cumulative_rating * scale / RATING_SCALE))

    def num_ratings(self) -> int:
        return self.store.db.query_value(
            "SELECT COUNT(*) FROM record_ratings WHERE record_id = ?", (self._id,), default=0
        )

    def add_comment(self, user: User, body: str) -> int:
        self._require_live()
        if not body or not body.strip():
            raise InvalidValueError("Comment body is empty", value=body)
        with self.store.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO record_comments (record_id, user_id, body, posted_at) VALUES (?, ?, ?, ?)",
                (self._id, user.user_id, body.strip(), now_string()),
            )
        return cursor.lastrowid

    def comments(self) -> list[dict[str, Any]]:
        rows = self.store.db.query_rows(
            "SELECT comment_id, user_id, body, posted_at FROM record_comments WHERE record_id = ? "
            "ORDER BY posted_at DESC, comment_id DESC",
            (self._id,),
        )
        return [{key: row[key] for key in row.keys()} for row in rows]

    def num_comments(self) -> int:
        return self.store.db.query_value(
            "SELECT COUNT(*) FROM record_comments WHERE record_id = ?", (self._id,), default=0
        )

    # -- permissions -------------------------------------------------------

    def user_can_view(self, user: User) -> bool:
        return self.store.evaluator.check_schema_permissions(user, self, "view")

    def user_can_edit(self, user: User) -> bool:
        return self.store.evaluator.check_schema_permissions(user, self, "edit")

    def user_can_author(self, user: User) -> bool:
        return self.store.evaluator.check_schema_permissions(user, self, "author")

    def user_can_modify(self, user: User) -> bool:
        return self.store.evaluator.check_schema_permissions(user, self, "modify")

    def user_can_view_field(self, user: User, field_ref: Any) -> bool:
        return self.store.evaluator.check_field_permissions(user, self, self._field(field_ref), "view")

    def user_can_edit_field(self, user: User, field_ref: Any) -> bool:
        return self.store.evaluator.check_field_permissions(user, self, self._field(field_ref), "edit")

    def user_can_author_field(self, user: User, field_ref: Any) -> bool:
        return self.store.evaluator.check_field_permissions(user, self, self._field(field_ref), "author")

    def user_can_modify_field(self, user: User, field_ref: Any) -> bool:
        return self.store.evaluator.check_field_permissions(user, self, self._field(field_ref), "modify")

    def __repr__(self) -> str:
        return f"Record(id={self._id}, schema_id={self.schema_id}, state={self._state.value})"
