"""
Field descriptors: one typed, named slot in a schema's records.

A FieldDescriptor owns everything about a field that does not depend on a
particular record: its value type, storage layout, type-gated attributes,
default value, qualifier configuration and privilege sets.

Lifecycle:
    create() -> temporary (negative id, no storage)
    configure with set_attribute() and the property setters
    make_permanent() -> permanent id, columns allocated, placed in orders
    convert_type() -> storage migrated by TypeConverter
    drop() -> storage and exclusively owned rows removed

Invariants:
    - The legal attributes are exactly legal_attributes(self.type)
    - A field's schema never changes
    - Storage names (and the columns derived from them) are unique across
      all schemas, compared case-insensitively
    - A field that is a standard-name target cannot be dropped

How to change safely:
    - Every mutator persists first, then updates in-memory state, then
      calls _changed() so registry caches are invalidated
    - Column changes happen inside one transaction with the row update
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

from ..errors import (
    DuplicateNameError,
    IllegalAttributeError,
    IllegalNameError,
    IllegalTransitionError,
    InvalidTypeError,
    InvalidValueError,
    MappedFieldError,
    UnknownFieldError,
)
from ..events import EventKind, schema_scope
from ..records.privileges import PrivilegeSet
from ..records.values import Point
from ..storage.terms import TREE_SEPARATOR, Qualifier, factory_for
from .types import (
    ATTRIBUTES,
    RESERVED_FIELD_NAMES,
    SCHEMAID_DEFAULT,
    FieldOrder,
    FieldType,
    UpdateMethod,
    accepts_default_value,
    column_layout,
    default_attributes,
    legal_attributes,
    qualifier_column,
)

if TYPE_CHECKING:
    from .registry import SchemaRegistry

logger = logging.getLogger(__name__)

_VALID_NAME = re.compile(r"^[A-Za-z0-9 ()]+$")
_VALID_LABEL = re.compile(r"^[A-Za-z0-9 ]*$")

PRIVILEGE_LEVELS = ("viewing", "authoring", "editing")

# Settings that live in their own columns rather than in the attributes blob
_CORE_SETTINGS = (
    "label",
    "enabled",
    "editable",
    "optional",
    "owner",
    "default_value",
    "uses_qualifiers",
    "has_item_level_qualifiers",
    "default_qualifier",
)

# Tables whose rows follow a field when its temporary id is replaced
_FIELD_KEYED_TABLES = (
    "field_qualifier_ints",
    "controlled_names",
    "classifications",
    "standard_field_mappings",
    "record_user_ints",
    "reference_ints",
    "attachments",
    "record_field_timestamps",
    "visible_record_counts",
)


def normalize_field_name(name: str) -> str:
    """Lowercased alphanumerics of a name, used for reserved-name checks."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def derive_storage_name(name: str, schema_id: int) -> str:
    """Column base name: alphanumerics of the name, plus schema id off the default schema.

    Example:
        >>> derive_storage_name("Date Of Release", 0)
        'DateOfRelease'
        >>> derive_storage_name("Title (Alt)", 3)
        'TitleAlt3'
    """
    base = re.sub(r"[^A-Za-z0-9]", "", name)
    return base if schema_id == SCHEMAID_DEFAULT else f"{base}{schema_id}"


def validate_field_name(name: str) -> str:
    """Trim and check a field name.

    Raises:
        IllegalNameError: If the name has illegal characters or is reserved
    """
    name = name.strip() if isinstance(name, str) else ""
    if not name or not _VALID_NAME.match(name) or not re.search(r"[A-Za-z0-9]", name):
        raise IllegalNameError(
            f"Illegal field name {name!r}: only letters, digits, spaces and parentheses are allowed",
            name=name,
        )
    if normalize_field_name(name) in RESERVED_FIELD_NAMES:
        raise IllegalNameError(f"Field name {name!r} is reserved", name=name)
    return name


def encode_attribute(value: Any) -> Any:
    if isinstance(value, UpdateMethod):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    return value


class FieldDescriptor:
    """A metadata field.

    Instances are handed out by SchemaRegistry, which keeps one instance
    per field id; use registry.create_field() or FieldDescriptor.create()
    rather than constructing directly.

    Example:
        >>> title = FieldDescriptor.create(registry, 0, "Text", "Title", optional=False)
        >>> title.set_attribute("max_length", 200)
        >>> title.make_permanent()
        >>> title.id > 0
        True
    """

    def __init__(self, registry: SchemaRegistry, row: Any) -> None:
        self._registry = registry
        self._load(row)

    def _load(self, row: Any) -> None:
        self._id: int = row["field_id"]
        self._schema_id: int = row["schema_id"]
        self._name: str = row["name"]
        self._storage_name: str = row["storage_name"]
        self._type = FieldType(row["field_type"])
        self._label: Optional[str] = row["label"]
        self._enabled = bool(row["enabled"])
        self._editable = bool(row["editable"])
        self._optional = bool(row["optional"])
        self._owner: Optional[str] = row["owner"]
        self._default_value = json.loads(row["default_value"]) if row["default_value"] else None
        self._uses_qualifiers = bool(row["uses_qualifiers"])
        self._has_item_level_qualifiers = bool(row["has_item_level_qualifiers"])
        self._default_qualifier_id: Optional[int] = row["default_qualifier_id"]
        self._privileges = {
            level: PrivilegeSet.from_dict(json.loads(row[f"{level}_privileges"]) if row[f"{level}_privileges"] else None)
            for level in PRIVILEGE_LEVELS
        }
        stored = json.loads(row["attributes"] or "{}")
        self._attributes = default_attributes(self._type)
        for name, value in stored.items():
            spec = ATTRIBUTES.get(name)
            if spec is not None and spec.is_legal_for(self._type):
                self._attributes[name] = spec.normalize(value) if value is not None else None

    def reload(self) -> None:
        """Re-read the field from the database."""
        row = self._registry.db.query_row("SELECT * FROM metadata_fields WHERE field_id = ?", (self._id,))
        if row is None:
            raise UnknownFieldError(f"Field {self._id} no longer exists", field=self._id)
        self._load(row)

    # -- creation ----------------------------------------------------------

    @classmethod
    def create(
        cls,
        registry: SchemaRegistry,
        schema_id: int,
        field_type: Union[FieldType, str, int],
        name: str,
        optional: bool = True,
        default: Any = None,
    ) -> FieldDescriptor:
        """Create a temporary field.

        Args:
            registry: Registry the field belongs to
            schema_id: Schema for the field
            field_type: Value type (FieldType, name or number)
            name: Field name
            optional: Whether records may leave the field empty
            default: Default value for new records

        Returns:
            The temporary field (negative id, no storage yet)

        Raises:
            InvalidTypeError: If the type is unknown
            IllegalNameError: If the name is malformed or reserved
            DuplicateNameError: If the name or its storage name is taken
        """
        try:
            ftype = FieldType.from_str(field_type)
        except ValueError:
            raise InvalidTypeError(f"Unknown field type: {field_type!r}", field_type=field_type) from None

        schema = registry.get_schema(schema_id)
        name = validate_field_name(name)
        storage_name = derive_storage_name(name, schema.schema_id)
        registry.check_name_available(schema.schema_id, name, storage_name, ftype)

        attributes = {k: encode_attribute(v) for k, v in default_attributes(ftype).items()}
        db = registry.db
        with db.transaction() as conn:
            field_id = db.allocate_id(conn, "metadata_fields", "field_id", temporary=True)
            next_seq = conn.execute("SELECT COALESCE(MAX(creation_seq), 0) + 1 FROM metadata_fields").fetchone()[0]
            conn.execute(
                "INSERT INTO metadata_fields "
                "(field_id, schema_id, name, storage_name, field_type, optional, attributes, creation_seq) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (field_id, schema.schema_id, name, storage_name, int(ftype), int(bool(optional)),
                 json.dumps(attributes), next_seq),
            )
            row = conn.execute("SELECT * FROM metadata_fields WHERE field_id = ?", (field_id,)).fetchone()

        field = registry._adopt(cls(registry, row))
        if default is not None:
            field.default_value = default
        logger.debug(f"Created temporary field {name} ({ftype.display_name}) in schema {schema.schema_id}")
        return field

    # -- identity ----------------------------------------------------------

    @property
    def id(self) -> int:
        return self._id

    @property
    def schema_id(self) -> int:
        return self._schema_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def storage_name(self) -> str:
        return self._storage_name

    @property
    def type(self) -> FieldType:
        return self._type

    @property
    def is_temporary(self) -> bool:
        return self._id < 0

    @property
    def is_vocabulary(self) -> bool:
        return self._type.is_vocabulary

    @property
    def label(self) -> Optional[str]:
        return self._label

    @label.setter
    def label(self, value: Optional[str]) -> None:
        value = (value or "").strip()
        if not _VALID_LABEL.match(value):
            raise IllegalNameError(f"Illegal label {value!r}: only letters, digits and spaces are allowed", name=value)
        self._update(label=value or None)
        self._label = value or None

    @property
    def display_name(self) -> str:
        return self._label or self._name

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._update(enabled=int(bool(value)))
        self._enabled = bool(value)

    @property
    def editable(self) -> bool:
        return self._editable

    @editable.setter
    def editable(self, value: bool) -> None:
        self._update(editable=int(bool(value)))
        self._editable = bool(value)

    @property
    def optional(self) -> bool:
        return self._optional

    @optional.setter
    def optional(self, value: bool) -> None:
        self._update(optional=int(bool(value)))
        self._optional = bool(value)

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @owner.setter
    def owner(self, value: Optional[str]) -> None:
        self._update(owner=value)
        self._owner = value

    # -- attributes --------------------------------------------------------

    def legal_attributes(self) -> list[str]:
        return sorted(legal_attributes(self._type))

    def attributes(self) -> dict[str, Any]:
        return dict(self._attributes)

    def get_attribute(self, name: str) -> Any:
        """Read an attribute.

        Raises:
            IllegalAttributeError: If the attribute is not legal for the type
        """
        self._check_legal(name)
        return self._attributes[name]

    def set_attribute(self, name: str, value: Any) -> None:
        """Set a type-gated attribute.

        Raises:
            IllegalAttributeError: If the attribute is not legal for the
                type, or the value is not acceptable
        """
        spec = self._check_legal(name)
        try:
            value = spec.normalize(value) if value is not None else None
        except (TypeError, ValueError) as e:
            raise IllegalAttributeError(
                f"Bad value for {name} on field {self._name}: {e}",
                attribute=name,
                field_type=self._type.display_name,
            ) from None

        if name == "allow_multiple" and self._type.must_allow_multiple and not value:
            raise IllegalAttributeError(
                f"{self._type.display_name} fields must allow multiple values",
                attribute=name,
                field_type=self._type.display_name,
            )

        if self._attributes.get(name) == value:
            return
        updated = dict(self._attributes)
        updated[name] = value
        self._write_attributes(updated)
        self._attributes = updated

    def _check_legal(self, name: str):
        spec = ATTRIBUTES.get(name)
        if spec is None or not spec.is_legal_for(self._type):
            raise IllegalAttributeError(
                f"Attribute {name!r} is not legal for {self._type.display_name} field {self._name}",
                attribute=name,
                field_type=self._type.display_name,
            )
        return spec

    def _write_attributes(self, attributes: dict[str, Any]) -> None:
        encoded = {k: encode_attribute(v) for k, v in attributes.items()}
        self._update(attributes=json.dumps(encoded, sort_keys=True))

    @property
    def allow_multiple(self) -> bool:
        return bool(self._attributes.get("allow_multiple", False))

    @property
    def update_method(self) -> UpdateMethod:
        return self._attributes.get("update_method", UpdateMethod.NO_AUTO_UPDATE)

    def configure(self, setting: str, value: Any) -> None:
        """Apply one named setting, as used by the interchange document.

        Core settings (label, enabled, optional, default_value, qualifier
        flags, ...) go to their setters; anything else is an attribute.
        """
        if setting in PRIVILEGE_LEVELS or setting.endswith("_privileges"):
            level = setting.replace("_privileges", "")
            self.set_privileges(level, value if isinstance(value, PrivilegeSet) else PrivilegeSet.from_dict(value))
        elif setting == "default_qualifier":
            self.default_qualifier_id = self.resolve_qualifier(value).qualifier_id
        elif setting in _CORE_SETTINGS:
            setattr(self, setting, value)
        else:
            self.set_attribute(setting, value)

    # -- default value -----------------------------------------------------

    @property
    def default_value(self) -> Any:
        """Default for new records (Point as {"X","Y"}, terms as ids)."""
        return self._default_value

    @default_value.setter
    def default_value(self, value: Any) -> None:
        if value is not None and not accepts_default_value(self._type):
            raise IllegalAttributeError(
                f"{self._type.display_name} fields do not take a default value",
                attribute="default_value",
                field_type=self._type.display_name,
            )
        normalized = None if value is None else self._normalize_default(value)
        self._update(default_value=None if normalized is None else json.dumps(normalized))
        self._default_value = normalized

    def _normalize_default(self, value: Any) -> Any:
        try:
            if self._type is FieldType.POINT:
                return Point.from_value(value).to_dict()
            if self._type is FieldType.NUMBER:
                return int(value)
            if self._type is FieldType.FLAG:
                return value.strip().lower() in ("1", "true", "yes", "on") if isinstance(value, str) else bool(value)
        except (TypeError, ValueError) as e:
            raise InvalidValueError(f"Bad default for {self._name}: {e}", field_name=self._name, value=value) from None

        if self._type in (FieldType.OPTION, FieldType.TREE):
            values = value if isinstance(value, (list, tuple, set)) else [value]
            ids = [self._resolve_term(v) for v in values]
            if self.allow_multiple:
                return ids
            return ids[0] if ids else None
        return str(value)

    def _resolve_term(self, value: Any) -> int:
        factory = self.factory
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            if factory.id_exists(int(value)):
                return int(value)
        elif isinstance(value, str):
            term_id = factory.resolve_name(value)
            if term_id is not None:
                return term_id
        raise InvalidValueError(f"Unknown term {value!r} for field {self._name}", field_name=self._name, value=value)

    # -- privileges --------------------------------------------------------

    @property
    def viewing_privileges(self) -> PrivilegeSet:
        return self._privileges["viewing"]

    @property
    def authoring_privileges(self) -> PrivilegeSet:
        return self._privileges["authoring"]

    @property
    def editing_privileges(self) -> PrivilegeSet:
        return self._privileges["editing"]

    def privileges(self, level: str) -> PrivilegeSet:
        if level not in PRIVILEGE_LEVELS:
            raise IllegalAttributeError(f"Unknown privilege level {level!r}", attribute=level)
        return self._privileges[level]

    def set_privileges(self, level: str, privset: PrivilegeSet) -> None:
        self.privileges(level)
        self._update(**{f"{level}_privileges": json.dumps(privset.to_dict())})
        self._privileges[level] = privset
        self._registry.events.publish(
            EventKind.SET,
            schema_scope(self._schema_id),
            {"field_id": self._id, "privileges": level},
        )

    # -- storage -----------------------------------------------------------

    def columns(self) -> dict[str, str]:
        """Records-table columns this field occupies (excluding qualifier)."""
        return column_layout(self._type, self._storage_name)

    @property
    def qualifier_column(self) -> Optional[str]:
        if not self._type.shape.has_columns:
            return None
        return qualifier_column(self._storage_name)

    def occupied_columns(self) -> set[str]:
        names = set(self.columns())
        if self.qualifier_column:
            names.add(self.qualifier_column)
        return names

    def make_permanent(self) -> None:
        """Turn a temporary field into a permanent one.

        Allocates the next permanent id, re-keys the field's temporary
        associations, allocates record storage and appends the field to
        the display and editing orders.

        Raises:
            SchemaConflictError: If an existing column has an incompatible type
        """
        if not self.is_temporary:
            return

        db = self._registry.db
        old_id = self._id
        with db.transaction() as conn:
            new_id = db.allocate_id(conn, "metadata_fields", "field_id", temporary=False)
            conn.execute("UPDATE metadata_fields SET field_id = ? WHERE field_id = ?", (new_id, old_id))
            for table in _FIELD_KEYED_TABLES:
                conn.execute(f"UPDATE {table} SET field_id = ? WHERE field_id = ?", (new_id, old_id))

            for column, declared in self.columns().items():
                db.ensure_column(column, declared)
            if self._has_item_level_qualifiers and self.qualifier_column:
                db.ensure_column(self.qualifier_column, "INTEGER")

            for order in (FieldOrder.DISPLAY, FieldOrder.EDITING):
                conn.execute(
                    "INSERT INTO field_orders (schema_id, order_type, field_id, position) "
                    "SELECT ?, ?, ?, COALESCE(MAX(position), 0) + 1 FROM field_orders "
                    "WHERE schema_id = ? AND order_type = ?",
                    (self._schema_id, int(order), new_id, self._schema_id, int(order)),
                )

        self._id = new_id
        self._registry._rekey(old_id, self)
        self._changed()
        self._registry.events.publish(
            EventKind.ADD,
            schema_scope(self._schema_id),
            {"field_id": new_id, "name": self._name, "type": self._type.display_name},
        )
        logger.info(
            f"Field {self._name} made permanent",
            extra={"field_id": new_id, "schema_id": self._schema_id},
        )

    def rename(self, new_name: str) -> None:
        """Rename the field, renaming its storage columns.

        Raises:
            IllegalNameError: If the name is malformed or reserved
            DuplicateNameError: If the name or its storage name is taken
        """
        new_name = validate_field_name(new_name)
        if new_name == self._name:
            return
        new_storage = derive_storage_name(new_name, self._schema_id)
        self._registry.check_name_available(self._schema_id, new_name, new_storage, self._type, exclude_field_id=self._id)

        db = self._registry.db
        with db.transaction() as conn:
            conn.execute(
                "UPDATE metadata_fields SET name = ?, storage_name = ? WHERE field_id = ?",
                (new_name, new_storage, self._id),
            )
            if not self.is_temporary:
                existing = db.column_types()
                old_columns = self.occupied_columns()
                for column in old_columns:
                    if column in existing:
                        db.rename_column(column, new_storage + column[len(self._storage_name):])

        old_name = self._name
        self._name = new_name
        self._storage_name = new_storage
        self._changed()
        logger.info(f"Renamed field {old_name} to {new_name}", extra={"field_id": self._id})

    def drop(self) -> None:
        """Remove the field, its storage and the rows only it owns.

        Raises:
            MappedFieldError: If a standard name maps to this field
        """
        mapped = self._registry.standard_names_for_field(self._id)
        if mapped:
            raise MappedFieldError(
                f"Field {self._name} is mapped as standard name(s) {', '.join(mapped)}; unmap before dropping",
                standard_names=mapped,
            )

        db = self._registry.db
        attachments = self._registry.attachments
        with db.transaction() as conn:
            if not self.is_temporary:
                for column in sorted(self.occupied_columns()):
                    db.drop_column(column)
            if self.is_vocabulary:
                removed = self.factory.delete_all()
                logger.debug(f"Deleted {removed} terms of field {self._name}")
            for attachment_id in db.query_column(
                "SELECT attachment_id FROM attachments WHERE field_id = ?", (self._id,)
            ):
                attachments.destroy(attachment_id)
            conn.execute("DELETE FROM record_user_ints WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM reference_ints WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM record_field_timestamps WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM field_qualifier_ints WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM field_orders WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM visible_record_counts WHERE field_id = ?", (self._id,))
            conn.execute("DELETE FROM metadata_fields WHERE field_id = ?", (self._id,))

        self._registry._forget(self)
        self._changed()
        self._registry.events.publish(
            EventKind.REMOVE,
            schema_scope(self._schema_id),
            {"field_id": self._id, "name": self._name},
        )
        logger.info(f"Dropped field {self._name}", extra={"field_id": self._id, "schema_id": self._schema_id})

    # -- type conversion ---------------------------------------------------

    def allowed_conversion_types(self) -> list[FieldType]:
        return self._registry.converter.allowed_targets(self._type)

    def convert_type(self, new_type: Union[FieldType, str, int]) -> None:
        """Change the field's value type, migrating stored values.

        Raises:
            InvalidTypeError: If the type is unknown
            UnsupportedConversionError: If no migration is defined
        """
        try:
            target = FieldType.from_str(new_type)
        except ValueError:
            raise InvalidTypeError(f"Unknown field type: {new_type!r}", field_type=new_type) from None
        self._registry.converter.convert(self, target)

    def _apply_converted_type(self, new_type: FieldType, default_value: Any) -> None:
        """Adopt a new type after TypeConverter has migrated storage.

        Attributes that are not legal for the new type are dropped and the
        new type's attributes get their defaults.
        """
        fresh = default_attributes(new_type)
        for name, value in self._attributes.items():
            if name in fresh:
                fresh[name] = value
        if new_type.must_allow_multiple:
            fresh["allow_multiple"] = True
        self._type = new_type
        self._attributes = fresh
        self._default_value = default_value
        self._changed()

    # -- qualifiers --------------------------------------------------------

    @property
    def uses_qualifiers(self) -> bool:
        return self._uses_qualifiers

    @uses_qualifiers.setter
    def uses_qualifiers(self, value: bool) -> None:
        self._update(uses_qualifiers=int(bool(value)))
        self._uses_qualifiers = bool(value)

    @property
    def has_item_level_qualifiers(self) -> bool:
        return self._has_item_level_qualifiers

    @has_item_level_qualifiers.setter
    def has_item_level_qualifiers(self, value: bool) -> None:
        value = bool(value)
        if value == self._has_item_level_qualifiers:
            return
        db = self._registry.db
        with db.transaction():
            self._update(has_item_level_qualifiers=int(value))
            if not self.is_temporary and self.qualifier_column:
                if value:
                    db.ensure_column(self.qualifier_column, "INTEGER")
                else:
                    db.drop_column(self.qualifier_column)
        self._has_item_level_qualifiers = value

    @property
    def default_qualifier_id(self) -> Optional[int]:
        return self._default_qualifier_id

    @default_qualifier_id.setter
    def default_qualifier_id(self, value: Optional[int]) -> None:
        if value is not None and not self._registry.qualifiers.exists(value):
            raise InvalidValueError(f"Unknown qualifier {value}", field_name=self._name, value=value)
        self._update(default_qualifier_id=value)
        self._default_qualifier_id = value

    def resolve_qualifier(self, qualifier: Union[Qualifier, int, str]) -> Qualifier:
        store = self._registry.qualifiers
        if isinstance(qualifier, Qualifier):
            return qualifier
        found = None
        if isinstance(qualifier, int) or (isinstance(qualifier, str) and qualifier.isdigit()):
            found = store.get(int(qualifier))
        elif isinstance(qualifier, str):
            found = store.get_by_name(qualifier)
        if found is None:
            raise InvalidValueError(f"Unknown qualifier {qualifier!r}", field_name=self._name, value=qualifier)
        return found

    def add_qualifier(self, qualifier: Union[Qualifier, int, str]) -> Qualifier:
        """Associate a qualifier (object, id or name) with the field.

        Raises:
            InvalidValueError: If the qualifier cannot be resolved
        """
        resolved = self.resolve_qualifier(qualifier)
        with self._registry.db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO field_qualifier_ints (field_id, qualifier_id) VALUES (?, ?)",
                (self._id, resolved.qualifier_id),
            )
        return resolved

    def remove_qualifier(self, qualifier: Union[Qualifier, int, str]) -> None:
        resolved = self.resolve_qualifier(qualifier)
        with self._registry.db.transaction() as conn:
            conn.execute(
                "DELETE FROM field_qualifier_ints WHERE field_id = ? AND qualifier_id = ?",
                (self._id, resolved.qualifier_id),
            )

    def associated_qualifiers(self) -> list[Qualifier]:
        ids = self._registry.db.query_column(
            "SELECT qualifier_id FROM field_qualifier_ints WHERE field_id = ? ORDER BY qualifier_id",
            (self._id,),
        )
        return [q for q in (self._registry.qualifiers.get(i) for i in ids) if q is not None]

    # -- vocabulary --------------------------------------------------------

    @property
    def factory(self):
        """Term factory for vocabulary fields.

        Raises:
            IllegalAttributeError: If the field has no vocabulary
        """
        if not self.is_vocabulary:
            raise IllegalAttributeError(
                f"{self._type.display_name} field {self._name} has no vocabulary",
                attribute="vocabulary",
                field_type=self._type.display_name,
            )
        return factory_for(self._registry.db, self._id, self._type)

    def add_term(self, name: str) -> int:
        return self.factory.create(name)

    def terms(self) -> dict[int, str]:
        return self.factory.names()

    def load_vocabulary(self, path: Union[str, Path]) -> int:
        """Bulk-load terms from a text file, one term per line.

        Tree terms use " -- " between hierarchy levels. Lines starting
        with "#" are comments, except a "#qualifier: name | namespace | url"
        header, which creates (or reuses) a qualifier and associates it
        with the field after the terms are added.

        Returns:
            Number of terms that did not already exist

        Raises:
            IllegalAttributeError: If the field has no vocabulary
            IllegalTransitionError: If the field is still temporary
            InvalidValueError: If the qualifier conflicts with an existing one
        """
        factory = self.factory
        if self.is_temporary:
            raise IllegalTransitionError(
                f"Vocabulary can only be loaded into permanent fields ({self._name} is temporary)",
                current_state="temporary",
            )

        qualifier_spec = None
        names: list[str] = []
        for raw in Path(path).read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.lower().startswith("#qualifier:"):
                parts = [p.strip() or None for p in line.split(":", 1)[1].split("|")]
                qualifier_spec = (parts + [None, None])[:3]
                continue
            if line.startswith("#"):
                continue
            if self._type is not FieldType.TREE and TREE_SEPARATOR.strip() in line:
                line = line.replace(TREE_SEPARATOR, " ")
            names.append(line)

        qualifier = None
        if qualifier_spec and qualifier_spec[0]:
            qualifier = self._registry.qualifiers.create(*qualifier_spec)

        added = 0
        with self._registry.db.transaction():
            for name in names:
                if factory.resolve_name(name) is None:
                    added += 1
                factory.create(name)
            if qualifier is not None:
                self.add_qualifier(qualifier)

        logger.info(f"Loaded {added} new terms into field {self._name}", extra={"field_id": self._id})
        return added

    # -- export ------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self._name,
            "type": self._type.display_name,
            "optional": self._optional,
            "enabled": self._enabled,
            "editable": self._editable,
        }
        if self._label:
            data["label"] = self._label
        if self._owner:
            data["owner"] = self._owner
        if self._default_value is not None and not self.is_vocabulary:
            data["default_value"] = self._default_value
        if self._uses_qualifiers:
            data["uses_qualifiers"] = True
            data["has_item_level_qualifiers"] = self._has_item_level_qualifiers
        defaults = default_attributes(self._type)
        for name, value in sorted(self._attributes.items()):
            if value != defaults.get(name):
                data[name] = encode_attribute(value)
        for level in PRIVILEGE_LEVELS:
            if not self._privileges[level].is_empty:
                data[f"{level}_privileges"] = self._privileges[level].to_dict()
        return data

    # -- internals ---------------------------------------------------------

    def _update(self, **columns: Any) -> None:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with self._registry.db.transaction() as conn:
            conn.execute(
                f"UPDATE metadata_fields SET {assignments} WHERE field_id = ?",
                (*columns.values(), self._id),
            )
        self._changed()

    def _changed(self) -> None:
        self._registry.invalidate(self._schema_id)

    def __repr__(self) -> str:
        return f"FieldDescriptor(id={self._id}, schema_id={self._schema_id}, name={self._name!r}, type={self._type.display_name})"

