"""
Schema registry for the metadata store.

The SchemaRegistry is the catalogue of schemas and their fields. It
provides:
- Schema creation and lookup, with per-schema privilege sets
- Field creation and lookup by id, bare name or "Schema: Name"
- Field listings in creation, display, editing or alphabetical order
- Standard-name mappings (e.g. "Title" -> field 12)
- Bulk field import from interchange documents

Invariants:
    - Schema 0 ("Resources") always exists
    - One FieldDescriptor instance per field id per registry
    - Mappings target fields of the same schema
    - Every mutation ends in invalidate(), so memoized listings and
      lookups are never stale within the process

How to change safely:
    - Memoize only through self.cache, under a "schema:<id>" scope
    - New mutators must call invalidate() for the schema they touch

Example:
    >>> registry = SchemaRegistry(db, CacheService(), EventBus())
    >>> title = registry.add_field(0, "Text", "Title")
    >>> registry.std_name_to_field_mapping(0, "Title", title.id)
    >>> registry.get_field("Resources: Title") is title
    True
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from ..cache import CacheService
from ..errors import (
    CrossSchemaError,
    DuplicateNameError,
    IllegalAttributeError,
    InvalidValueError,
    UnknownFieldError,
    UnknownSchemaError,
)
from ..events import EventBus, EventKind, schema_scope
from ..records.privileges import PrivilegeSet
from ..storage.attachments import AttachmentStore
from ..storage.database import MetadataDatabase
from ..storage.terms import QualifierStore
from .converter import TypeConverter
from .field import PRIVILEGE_LEVELS, FieldDescriptor
from .types import SCHEMAID_DEFAULT, FieldOrder, FieldType

logger = logging.getLogger(__name__)

_UNSET = object()

FieldRef = Union[FieldDescriptor, int, str]


@dataclass
class Schema:
    """A named collection of fields plus its access policy.

    Attributes:
        schema_id: Schema identifier
        name: Schema name ("Resources", "Users", ...)
        item_name: What one record is called ("Resource")
        default_sort_field_id: Field used to sort listings
        view_page: Template for viewing records
        edit_page: Template for editing records
        privileges: viewing/authoring/editing PrivilegeSets
    """

    schema_id: int
    name: str
    item_name: Optional[str] = None
    default_sort_field_id: Optional[int] = None
    view_page: Optional[str] = None
    edit_page: Optional[str] = None
    privileges: dict[str, PrivilegeSet] = field(default_factory=dict)

    @property
    def viewing_privileges(self) -> PrivilegeSet:
        return self.privileges.get("viewing") or PrivilegeSet()

    @property
    def authoring_privileges(self) -> PrivilegeSet:
        return self.privileges.get("authoring") or PrivilegeSet()

    @property
    def editing_privileges(self) -> PrivilegeSet:
        return self.privileges.get("editing") or PrivilegeSet()


class SchemaRegistry:
    """Catalogue of schemas and field descriptors.

    Thread-safety:
        Not thread-safe; one unit of work runs at a time per process.
        Cross-process changes become visible after invalidate().
    """

    def __init__(
        self,
        db: MetadataDatabase,
        cache: Optional[CacheService] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.db = db
        self.cache = cache or CacheService()
        self.events = events or EventBus()
        self.qualifiers = QualifierStore(db)
        self.attachments = AttachmentStore(db)
        self.converter = TypeConverter(self)
        self._fields: dict[int, FieldDescriptor] = {}

    # -- caching -----------------------------------------------------------

    def invalidate(self, schema_id: Optional[int] = None) -> None:
        """Single invalidation entry point for registry-derived caches."""
        self.cache.invalidate(None if schema_id is None else f"schema:{schema_id}")

    def _adopt(self, descriptor: FieldDescriptor) -> FieldDescriptor:
        self._fields[descriptor.id] = descriptor
        self.invalidate(descriptor.schema_id)
        return descriptor

    def _rekey(self, old_id: int, descriptor: FieldDescriptor) -> None:
        self._fields.pop(old_id, None)
        self._fields[descriptor.id] = descriptor

    def _forget(self, descriptor: FieldDescriptor) -> None:
        self._fields.pop(descriptor.id, None)

    # -- schemas -----------------------------------------------------------

    def ensure_default_schema(self) -> Schema:
        if self.db.query_value("SELECT COUNT(*) FROM schemas WHERE schema_id = ?", (SCHEMAID_DEFAULT,)) == 0:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO schemas (schema_id, name, item_name) VALUES (?, ?, ?)",
                    (SCHEMAID_DEFAULT, "Resources", "Resource"),
                )
            logger.info("Created default schema")
        return self.get_schema(SCHEMAID_DEFAULT)

    def create_schema(
        self,
        name: str,
        item_name: Optional[str] = None,
        view_page: Optional[str] = None,
        edit_page: Optional[str] = None,
    ) -> Schema:
        """Create a new schema.

        Raises:
            DuplicateNameError: If a schema with this name exists
        """
        name = name.strip()
        if self.db.query_value("SELECT COUNT(*) FROM schemas WHERE LOWER(name) = LOWER(?)", (name,)):
            raise DuplicateNameError(f"Schema {name!r} already exists", name=name)
        with self.db.transaction() as conn:
            schema_id = conn.execute("SELECT COALESCE(MAX(schema_id), 0) + 1 FROM schemas").fetchone()[0]
            conn.execute(
                "INSERT INTO schemas (schema_id, name, item_name, view_page, edit_page) VALUES (?, ?, ?, ?, ?)",
                (schema_id, name, item_name or name, view_page, edit_page),
            )
        self.invalidate(schema_id)
        logger.info(f"Created schema {name}", extra={"schema_id": schema_id})
        return self.get_schema(schema_id)

    def get_schema(self, schema: Union[Schema, int, str]) -> Schema:
        """Look up a schema by object, id or name.

        Raises:
            UnknownSchemaError: If no schema matches
        """
        if isinstance(schema, Schema):
            schema = schema.schema_id
        if isinstance(schema, int):
            row = self.db.query_row("SELECT * FROM schemas WHERE schema_id = ?", (schema,))
        else:
            row = self.db.query_row("SELECT * FROM schemas WHERE LOWER(name) = LOWER(?)", (str(schema).strip(),))
        if row is None:
            raise UnknownSchemaError(f"Unknown schema: {schema!r}", schema=schema)
        return Schema(
            schema_id=row["schema_id"],
            name=row["name"],
            item_name=row["item_name"],
            default_sort_field_id=row["default_sort_field_id"],
            view_page=row["view_page"],
            edit_page=row["edit_page"],
            privileges={
                level: PrivilegeSet.from_dict(json.loads(row[f"{level}_privileges"]) if row[f"{level}_privileges"] else None)
                for level in PRIVILEGE_LEVELS
            },
        )

    def schemas(self) -> list[Schema]:
        return [self.get_schema(sid) for sid in self.db.query_column("SELECT schema_id FROM schemas ORDER BY schema_id")]

    def schema_exists(self, schema: Union[int, str]) -> bool:
        try:
            self.get_schema(schema)
        except UnknownSchemaError:
            return False
        return True

    def set_schema_privileges(self, schema_id: int, level: str, privset: PrivilegeSet) -> None:
        if level not in PRIVILEGE_LEVELS:
            raise IllegalAttributeError(f"Unknown privilege level {level!r}", attribute=level)
        schema = self.get_schema(schema_id)
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE schemas SET {level}_privileges = ? WHERE schema_id = ?",
                (json.dumps(privset.to_dict()), schema.schema_id),
            )
        self.invalidate(schema.schema_id)
        self.events.publish(
            EventKind.SET,
            schema_scope(schema.schema_id),
            {"schema_id": schema.schema_id, "privileges": level},
        )

    def set_default_sort_field(self, schema_id: int, field_ref: Optional[FieldRef]) -> None:
        field_id = None if field_ref is None else self.get_field(field_ref, schema_id).id
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE schemas SET default_sort_field_id = ? WHERE schema_id = ?",
                (field_id, schema_id),
            )
        self.invalidate(schema_id)

    # -- fields ------------------------------------------------------------

    def create_field(
        self,
        schema_id: int,
        field_type: Union[FieldType, str, int],
        name: str,
        optional: bool = True,
        default: Any = None,
    ) -> FieldDescriptor:
        """Create a temporary field (see FieldDescriptor.create)."""
        return FieldDescriptor.create(self, schema_id, field_type, name, optional=optional, default=default)

    def add_field(
        self,
        schema_id: int,
        field_type: Union[FieldType, str, int],
        name: str,
        optional: bool = True,
        default: Any = None,
    ) -> FieldDescriptor:
        """Create a field and make it permanent.

        A field whose storage cannot be allocated is removed again before
        the error propagates.
        """
        descriptor = self.create_field(schema_id, field_type, name, optional=optional)
        try:
            descriptor.make_permanent()
            if default is not None:
                descriptor.default_value = default
        except Exception:
            descriptor.drop()
            raise
        return descriptor

    def drop_field(self, field_ref: FieldRef, schema_id: Optional[int] = None) -> None:
        self.get_field(field_ref, schema_id).drop()

    def check_name_available(
        self,
        schema_id: int,
        name: str,
        storage_name: str,
        field_type: FieldType,
        exclude_field_id: Optional[int] = None,
    ) -> None:
        """Reject names that clash with existing fields.

        Raises:
            DuplicateNameError: If the name is used in the schema, or the
                storage name (or a column derived from it) is used anywhere
        """
        rows = self.db.query_rows("SELECT field_id, schema_id, name, storage_name, field_type FROM metadata_fields")
        wanted_columns = {c.lower() for c in self._columns_for(field_type, storage_name)}
        for row in rows:
            if row["field_id"] == exclude_field_id:
                continue
            if row["schema_id"] == schema_id and row["name"].lower() == name.lower():
                raise DuplicateNameError(f"Field name {name!r} already exists in schema {schema_id}", name=name)
            if row["storage_name"].lower() == storage_name.lower():
                raise DuplicateNameError(
                    f"Field name {name!r} collides with storage of field {row['name']!r}",
                    name=name,
                )
            existing = {c.lower() for c in self._columns_for(FieldType(row["field_type"]), row["storage_name"])}
            if existing & wanted_columns:
                raise DuplicateNameError(
                    f"Field name {name!r} collides with columns of field {row['name']!r}",
                    name=name,
                )

    @staticmethod
    def _columns_for(field_type: FieldType, storage_name: str) -> set[str]:
        from .types import column_layout, qualifier_column

        columns = set(column_layout(field_type, storage_name))
        if field_type.shape.has_columns:
            columns.add(qualifier_column(storage_name))
        return columns

    def _load_field(self, field_id: int) -> Optional[FieldDescriptor]:
        if field_id in self._fields:
            return self._fields[field_id]
        row = self.db.query_row("SELECT * FROM metadata_fields WHERE field_id = ?", (field_id,))
        if row is None:
            return None
        descriptor = FieldDescriptor(self, row)
        self._fields[field_id] = descriptor
        return descriptor

    def get_field(self, field_ref: FieldRef, schema_id: Optional[int] = None) -> FieldDescriptor:
        """Canonicalize a field reference.

        Args:
            field_ref: FieldDescriptor, field id (int or digit string),
                bare field name, or "Schema: Name"
            schema_id: Schema the field must belong to; bare names are
                looked up in this schema (default schema if None)

        Raises:
            UnknownFieldError: If no field matches
            CrossSchemaError: If the field belongs to another schema
        """
        if isinstance(field_ref, FieldDescriptor):
            descriptor = self._load_field(field_ref.id)
            if descriptor is None:
                raise UnknownFieldError(f"Field {field_ref.name!r} no longer exists", field=field_ref.id)
        elif isinstance(field_ref, int) or (isinstance(field_ref, str) and field_ref.strip().lstrip("-").isdigit()):
            descriptor = self._load_field(int(field_ref))
            if descriptor is None:
                raise UnknownFieldError(f"No field with id {field_ref}", field=field_ref)
        elif isinstance(field_ref, str):
            lookup_schema = SCHEMAID_DEFAULT if schema_id is None else schema_id
            name = field_ref.strip()
            if ": " in name:
                schema_name, name = (part.strip() for part in name.split(": ", 1))
                try:
                    lookup_schema = self.get_schema(schema_name).schema_id
                except UnknownSchemaError:
                    raise UnknownFieldError(f"Unknown schema in field name {field_ref!r}", field=field_ref) from None
            field_id = self._field_ids_by_name(lookup_schema).get(name.lower())
            if field_id is None:
                raise UnknownFieldError(f"No field named {name!r} in schema {lookup_schema}", field=field_ref)
            descriptor = self._load_field(field_id)
        else:
            raise UnknownFieldError(f"Unrecognized field reference: {field_ref!r}", field=field_ref)

        if schema_id is not None and descriptor.schema_id != schema_id:
            raise CrossSchemaError(
                f"Field {descriptor.name!r} belongs to schema {descriptor.schema_id}, not {schema_id}",
                expected_schema_id=schema_id,
                actual_schema_id=descriptor.schema_id,
            )
        return descriptor

    def field_exists(self, field_ref: FieldRef, schema_id: Optional[int] = None) -> bool:
        try:
            self.get_field(field_ref, schema_id)
        except (UnknownFieldError, CrossSchemaError):
            return False
        return True

    def _field_ids_by_name(self, schema_id: int) -> dict[str, int]:
        def load() -> dict[str, int]:
            rows = self.db.query_rows(
                "SELECT field_id, name FROM metadata_fields WHERE schema_id = ? ORDER BY field_id DESC",
                (schema_id,),
            )
            return {row["name"].lower(): row["field_id"] for row in rows}

        return self.cache.memoize(f"schema:{schema_id}:names", "all", load)

    def _field_ids(self, schema_id: int) -> list[int]:
        return self.cache.memoize(
            f"schema:{schema_id}:fields",
            "creation",
            lambda: self.db.query_column(
                "SELECT field_id FROM metadata_fields WHERE schema_id = ? ORDER BY creation_seq, field_id",
                (schema_id,),
            ),
        )

    def get_fields(
        self,
        schema_id: int = SCHEMAID_DEFAULT,
        type_filter: Union[FieldType, int, Iterable[FieldType], None] = None,
        order_by: FieldOrder = FieldOrder.CREATION,
        include_disabled: bool = False,
        include_temporary: bool = False,
    ) -> list[FieldDescriptor]:
        """List fields of a schema.

        Args:
            schema_id: Schema to list
            type_filter: A FieldType, an iterable of them, or a bit mask
            order_by: CREATION, DISPLAY, EDITING or ALPHABETICAL
            include_disabled: Include disabled fields
            include_temporary: Include temporary fields

        Returns:
            Matching fields in the requested order
        """
        self.get_schema(schema_id)
        if type_filter is None:
            mask = None
        elif isinstance(type_filter, int):
            mask = int(type_filter)
        else:
            types = [type_filter] if isinstance(type_filter, FieldType) else list(type_filter)
            mask = 0
            for ftype in types:
                mask |= int(ftype)

        ids = self._field_ids(schema_id)
        if order_by in (FieldOrder.DISPLAY, FieldOrder.EDITING):
            ordered = self.field_order(schema_id, order_by)
            ids = ordered + [i for i in ids if i not in set(ordered)]

        fields = []
        for field_id in ids:
            descriptor = self._load_field(field_id)
            if descriptor is None:
                continue
            if descriptor.is_temporary and not include_temporary:
                continue
            if not descriptor.enabled and not include_disabled:
                continue
            if mask is not None and not (int(descriptor.type) & mask):
                continue
            fields.append(descriptor)

        if order_by is FieldOrder.ALPHABETICAL:
            fields.sort(key=lambda f: f.display_name.lower())
        return fields

    # -- orders ------------------------------------------------------------

    def field_order(self, schema_id: int, order: FieldOrder) -> list[int]:
        return self.cache.memoize(
            f"schema:{schema_id}:orders",
            int(order),
            lambda: self.db.query_column(
                "SELECT field_id FROM field_orders WHERE schema_id = ? AND order_type = ? ORDER BY position",
                (schema_id, int(order)),
            ),
        )

    def move_field_in_order(self, schema_id: int, order: FieldOrder, field_ref: FieldRef, position: int) -> None:
        """Move a field to a zero-based position in the display or editing order."""
        if order not in (FieldOrder.DISPLAY, FieldOrder.EDITING):
            raise InvalidValueError(f"Only display and editing orders are maintained, got {order!r}", value=order)
        field_id = self.get_field(field_ref, schema_id).id
        ids = [i for i in self.field_order(schema_id, order) if i != field_id]
        position = max(0, min(position, len(ids)))
        ids.insert(position, field_id)
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM field_orders WHERE schema_id = ? AND order_type = ?", (schema_id, int(order)))
            conn.executemany(
                "INSERT INTO field_orders (schema_id, order_type, field_id, position) VALUES (?, ?, ?, ?)",
                [(schema_id, int(order), fid, index) for index, fid in enumerate(ids, start=1)],
            )
        self.invalidate(schema_id)

    # -- standard names ----------------------------------------------------

    def std_name_to_field_mapping(self, schema_id: int, standard_name: str, field_ref: Any = _UNSET) -> Optional[int]:
        """Get or set the field a standard name maps to.

        Args:
            schema_id: Schema of the mapping
            standard_name: Standard name ("Title", "Description", ...)
            field_ref: Omit to read; a field reference to map; False or
                None to clear

        Returns:
            The mapped field id, or None if unmapped

        Raises:
            UnknownFieldError: If the field to map does not exist
            CrossSchemaError: If the field belongs to another schema
        """
        if field_ref is not _UNSET:
            with self.db.transaction() as conn:
                if field_ref is False or field_ref is None:
                    conn.execute(
                        "DELETE FROM standard_field_mappings WHERE schema_id = ? AND standard_name = ?",
                        (schema_id, standard_name),
                    )
                else:
                    descriptor = self.get_field(field_ref, schema_id)
                    conn.execute(
                        "INSERT OR REPLACE INTO standard_field_mappings (schema_id, standard_name, field_id) "
                        "VALUES (?, ?, ?)",
                        (schema_id, standard_name, descriptor.id),
                    )
            self.invalidate(schema_id)

        return self.cache.memoize(
            f"schema:{schema_id}:stdnames",
            standard_name,
            lambda: self.db.query_value(
                "SELECT field_id FROM standard_field_mappings WHERE schema_id = ? AND standard_name = ?",
                (schema_id, standard_name),
            ),
        )

    def field_by_standard_name(self, schema_id: int, standard_name: str) -> Optional[FieldDescriptor]:
        field_id = self.std_name_to_field_mapping(schema_id, standard_name)
        return None if field_id is None else self._load_field(field_id)

    def standard_names_for_field(self, field_id: int) -> list[str]:
        return self.db.query_column(
            "SELECT standard_name FROM standard_field_mappings WHERE field_id = ? ORDER BY standard_name",
            (field_id,),
        )

    # -- permissions support -----------------------------------------------

    def viewing_rules_check_field(self, schema_id: int, field_id: int) -> bool:
        """Whether the schema's or any field's viewing rules reference a field."""

        def compute() -> bool:
            schema = self.get_schema(schema_id)
            if schema.viewing_privileges.checks_field(field_id):
                return True
            return any(
                f.viewing_privileges.checks_field(field_id)
                for f in self.get_fields(schema_id, include_disabled=True)
            )

        return self.cache.memoize(f"schema:{schema_id}:checks", field_id, compute)

    def relevant_privilege_flags(self, schema_id: int) -> frozenset[int]:
        """Privilege flags any viewing rule of the schema looks at."""

        def compute() -> frozenset[int]:
            flags = set(self.get_schema(schema_id).viewing_privileges.privilege_flags_checked())
            for descriptor in self.get_fields(schema_id, include_disabled=True):
                flags |= descriptor.viewing_privileges.privilege_flags_checked()
            return frozenset(flags)

        return self.cache.memoize(f"schema:{schema_id}:flags", "viewing", compute)

    # -- interchange -------------------------------------------------------

    def add_fields_from_interchange_document(self, document: str, schema_id: int = SCHEMAID_DEFAULT,
                                             base_dir: Optional[Path] = None) -> list[FieldDescriptor]:
        """Create fields described by a YAML interchange document (all or nothing)."""
        from .interchange import import_fields

        return import_fields(self, document, schema_id, base_dir=base_dir)

    def add_fields_from_interchange_file(self, path: Union[str, Path], schema_id: int = SCHEMAID_DEFAULT) -> list[FieldDescriptor]:
        path = Path(path)
        return self.add_fields_from_interchange_document(path.read_text(encoding="utf-8"), schema_id, base_dir=path.parent)
