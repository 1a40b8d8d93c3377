"""
Type conversion for metadata fields.

When a field's value type changes, TypeConverter builds a MigrationPlan
(ordered steps) and executes it in a single transaction. Only the pairs
below are defined; every other pair raises UnsupportedConversionError and
leaves the field untouched.

    Date <-> Timestamp
        Begin/End/Precision columns <-> one DATETIME column.
    ControlledName/Option <-> Tree
        Terms are re-created as the target kind, record associations are
        rewritten in statement-size-limited batches, default-value term
        references are remapped by matching term text.
    Same storage class (Text/Paragraph/Url/Email, Number/Flag,
    ControlledName/Option)
        No value migration; the existing layout is verified.

Invariants:
    - The field's type flips in the last step, after all data has moved
    - A failed plan rolls back completely (SQLite DDL is transactional)
    - Batch rewrites use INSERT OR IGNORE and get-or-create terms, so a
      plan can be re-run from scratch after an interruption

How to change safely:
    - New pairs need an entry in _planners and a round-trip test
    - Never widen a pair by guessing a value mapping (e.g. Text -> Number)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..errors import SchemaConflictError, UnsupportedConversionError
from ..events import EventKind, schema_scope
from ..storage.terms import ClassificationFactory, ControlledNameFactory
from .field import encode_attribute
from .types import (
    TEXT_TYPES,
    TIMESTAMP_DATE_PRECISION,
    FieldType,
    column_layout,
    default_attributes,
)

if TYPE_CHECKING:
    from .field import FieldDescriptor
    from .registry import SchemaRegistry

logger = logging.getLogger(__name__)

_RENAME_ONLY_CLASSES = (
    frozenset(TEXT_TYPES),
    frozenset({FieldType.NUMBER, FieldType.FLAG}),
    frozenset({FieldType.CONTROLLED_NAME, FieldType.OPTION}),
)

_CONTROLLED = frozenset({FieldType.CONTROLLED_NAME, FieldType.OPTION})


@dataclass(frozen=True)
class MigrationStep:
    """One ordered unit of a migration.

    Attributes:
        description: Human-readable summary, used in logs and describe()
        run: Callable receiving the open connection and shared plan state
    """

    description: str
    run: Callable[[sqlite3.Connection, dict[str, Any]], None]


@dataclass
class MigrationPlan:
    """Ordered steps that migrate one field from one type to another."""

    field_id: int
    from_type: FieldType
    to_type: FieldType
    steps: list[MigrationStep] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)

    def add(self, description: str, run: Callable[[sqlite3.Connection, dict[str, Any]], None]) -> None:
        self.steps.append(MigrationStep(description, run))

    def describe(self) -> list[str]:
        return [step.description for step in self.steps]

    def execute(self, db) -> dict[str, Any]:
        """Run every step inside one transaction.

        Returns:
            The shared state (affected record ids, new default value)
        """
        with db.transaction() as conn:
            for index, step in enumerate(self.steps, start=1):
                logger.debug(f"Migration step {index}/{len(self.steps)} for field {self.field_id}: {step.description}")
                step.run(conn, self.state)
        return self.state


class TypeConverter:
    """Plans and runs field type conversions.

    Example:
        >>> converter = TypeConverter(registry)
        >>> converter.plan(topic_field, FieldType.TREE).describe()
        ['copy terms into tree vocabulary', 'rewrite record associations', ...]
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self._registry = registry

    def allowed_targets(self, from_type: FieldType) -> list[FieldType]:
        return sorted(t for t in FieldType if t is not from_type and self.is_supported(from_type, t))

    @staticmethod
    def is_supported(from_type: FieldType, to_type: FieldType) -> bool:
        if from_type is to_type:
            return True
        if {from_type, to_type} == {FieldType.DATE, FieldType.TIMESTAMP}:
            return True
        if (from_type in _CONTROLLED and to_type is FieldType.TREE) or (
            from_type is FieldType.TREE and to_type in _CONTROLLED
        ):
            return True
        return any(from_type in group and to_type in group for group in _RENAME_ONLY_CLASSES)

    def plan(self, field: FieldDescriptor, to_type: FieldType) -> MigrationPlan:
        """Build the migration plan for converting a field.

        Raises:
            UnsupportedConversionError: If the pair is not defined
        """
        from_type = field.type
        if not self.is_supported(from_type, to_type):
            raise UnsupportedConversionError(
                f"Cannot convert field {field.name} from {from_type.display_name} to {to_type.display_name}",
                from_type=from_type.display_name,
                to_type=to_type.display_name,
            )

        plan = MigrationPlan(field.id, from_type, to_type)
        plan.state["record_ids"] = set()
        plan.state["default_value"] = field.default_value

        if {from_type, to_type} == {FieldType.DATE, FieldType.TIMESTAMP}:
            self._plan_date_timestamp(plan, field)
        elif FieldType.TREE in (from_type, to_type) and from_type is not to_type:
            self._plan_terms(plan, field)
        else:
            self._plan_rename_only(plan, field)

        self._plan_type_flip(plan, field)
        return plan

    def convert(self, field: FieldDescriptor, to_type: FieldType) -> Optional[MigrationPlan]:
        """Convert a field to a new type.

        Raises:
            UnsupportedConversionError: If the pair is not defined
            SchemaConflictError: If existing storage does not match the field
        """
        if to_type is field.type:
            return None
        plan = self.plan(field, to_type)
        state = plan.execute(self._registry.db)
        field._apply_converted_type(to_type, state["default_value"])

        record_ids = sorted(state["record_ids"])
        self._registry.events.publish(
            EventKind.SET,
            schema_scope(field.schema_id),
            {
                "field_id": field.id,
                "converted_from": plan.from_type.display_name,
                "converted_to": to_type.display_name,
                "record_ids": record_ids,
            },
        )
        logger.info(
            f"Converted field {field.name} from {plan.from_type.display_name} to {to_type.display_name}",
            extra={"field_id": field.id, "records": len(record_ids)},
        )
        return plan

    # -- planners ----------------------------------------------------------

    def _plan_rename_only(self, plan: MigrationPlan, field: FieldDescriptor) -> None:
        db = self._registry.db
        to_type = plan.to_type

        def verify_layout(conn, state):
            if field.is_temporary:
                return
            existing = db.column_types()
            for column, declared in column_layout(to_type, field.storage_name).items():
                if existing.get(column) != declared:
                    raise SchemaConflictError(
                        f"Column {column} is {existing.get(column) or 'missing'}, expected {declared}",
                        column=column,
                        existing_type=existing.get(column),
                        required_type=declared,
                    )

        plan.add("verify storage layout", verify_layout)

        if to_type is FieldType.FLAG:
            fill = 1 if field.default_value else 0

            def fill_flags(conn, state):
                if not field.is_temporary:
                    conn.execute(f'UPDATE records SET "{field.storage_name}" = ? WHERE "{field.storage_name}" IS NULL '
                                 f"AND schema_id = ?", (fill, field.schema_id))
                state["default_value"] = bool(field.default_value) if field.default_value is not None else None

            plan.add("fill unset flags with the default", fill_flags)
        elif to_type is FieldType.NUMBER and plan.from_type is FieldType.FLAG:
            def number_default(conn, state):
                if field.default_value is not None:
                    state["default_value"] = int(bool(field.default_value))

            plan.add("carry default over as a number", number_default)
        elif to_type is FieldType.CONTROLLED_NAME:
            def drop_default(conn, state):
                state["default_value"] = None

            plan.add("drop default (not supported by controlled names)", drop_default)

    def _plan_date_timestamp(self, plan: MigrationPlan, field: FieldDescriptor) -> None:
        db = self._registry.db
        name = field.storage_name
        plan.state["default_value"] = None

        if field.is_temporary:
            return

        if plan.to_type is FieldType.DATE:
            def to_date(conn, state):
                for column, declared in column_layout(FieldType.DATE, name).items():
                    db.ensure_column(column, declared)
                conn.execute(
                    f'UPDATE records SET "{name}Begin" = substr("{name}", 1, 10), '
                    f'"{name}Precision" = ? WHERE "{name}" IS NOT NULL',
                    (int(TIMESTAMP_DATE_PRECISION),),
                )
                state["record_ids"].update(
                    r[0] for r in conn.execute(f'SELECT record_id FROM records WHERE "{name}" IS NOT NULL')
                )
                db.drop_column(name)

            plan.add("move timestamps into Begin with day precision", to_date)
        else:
            def to_timestamp(conn, state):
                db.ensure_column(name, "DATETIME")
                conn.execute(
                    f'UPDATE records SET "{name}" = "{name}Begin" || \' 00:00:00\' WHERE "{name}Begin" IS NOT NULL'
                )
                state["record_ids"].update(
                    r[0] for r in conn.execute(f'SELECT record_id FROM records WHERE "{name}" IS NOT NULL')
                )
                for suffix in ("Begin", "End", "Precision"):
                    db.drop_column(f"{name}{suffix}")

            plan.add("move Begin dates into a timestamp, drop End and Precision", to_timestamp)

    def _plan_terms(self, plan: MigrationPlan, field: FieldDescriptor) -> None:
        db = self._registry.db
        if plan.to_type is FieldType.TREE:
            old = ControlledNameFactory(db, field.id)
            new = ClassificationFactory(db, field.id)
            order = "ORDER BY LENGTH(name), cname_id"
        else:
            old = ClassificationFactory(db, field.id)
            new = ControlledNameFactory(db, field.id)
            order = "ORDER BY depth, classification_id"

        default_names: list[str] = []
        if field.default_value is not None:
            ids = field.default_value if isinstance(field.default_value, list) else [field.default_value]
            names = old.names(ids)
            default_names = [names[i] for i in ids if i in names]

        def copy_terms(conn, state):
            rows = conn.execute(
                f"SELECT {old.id_column}, {old.name_column} FROM {old.table} WHERE field_id = ? {order}",
                (field.id,),
            ).fetchall()
            state["term_map"] = {row[0]: new.create(row[1]) for row in rows}

        def rewrite_associations(conn, state):
            term_map = state["term_map"]
            pairs = []
            for batch in db.chunked(list(term_map)):
                pairs.extend(
                    conn.execute(
                        f"SELECT record_id, {old.id_column} FROM {old.ints_table} "
                        f"WHERE {old.id_column} IN ({db.placeholders(len(batch))})",
                        batch,
                    ).fetchall()
                )
            rewritten = [(record_id, term_map[old_id]) for record_id, old_id in pairs]
            for batch in db.chunked(rewritten, overhead=64):
                conn.executemany(
                    f"INSERT OR IGNORE INTO {new.ints_table} (record_id, {new.id_column}) VALUES (?, ?)",
                    batch,
                )
            state["record_ids"].update(record_id for record_id, _ in pairs)

        def remove_old_terms(conn, state):
            old._delete_ids(list(state["term_map"]))

        def remap_default(conn, state):
            if plan.to_type is FieldType.CONTROLLED_NAME or not default_names:
                state["default_value"] = None
                return
            ids = [new.resolve_name(name) for name in default_names]
            ids = [i for i in ids if i is not None]
            multiple = field.allow_multiple if plan.to_type.can_allow_multiple else False
            state["default_value"] = ids if multiple else (ids[0] if ids else None)

        plan.add(f"copy terms into {plan.to_type.display_name} vocabulary", copy_terms)
        plan.add("rewrite record associations in batches", rewrite_associations)
        plan.add(f"remove {plan.from_type.display_name} terms", remove_old_terms)
        plan.add("remap default value by term text", remap_default)

        if plan.to_type is FieldType.TREE:
            def recount(conn, state):
                new.recalculate_record_counts(state["term_map"].values())

            plan.add("recalculate classification record counts", recount)

    def _plan_type_flip(self, plan: MigrationPlan, field: FieldDescriptor) -> None:
        to_type = plan.to_type

        def flip(conn, state):
            attributes = default_attributes(to_type)
            for name, value in field.attributes().items():
                if name in attributes:
                    attributes[name] = value
            if to_type.must_allow_multiple:
                attributes["allow_multiple"] = True
            encoded = {k: encode_attribute(v) for k, v in attributes.items()}
            default = state["default_value"]
            conn.execute(
                "UPDATE metadata_fields SET field_type = ?, attributes = ?, default_value = ? WHERE field_id = ?",
                (int(to_type), json.dumps(encoded, sort_keys=True),
                 None if default is None else json.dumps(default), field.id),
            )

        plan.add(f"switch field type to {to_type.display_name}", flip)
