"""
Vocabulary term storage.

Controlled names and options share the controlled_names table; tree
fields use classifications, whose full names join hierarchy levels with
" -- ". Qualifiers are shared across all fields.

Each factory is bound to one field and implements the TermFactory
contract, plus the record <-> term association helpers the record value
strategies use.

Invariants:
    - Term names are unique per field (UNIQUE (field_id, name)), so
      create() is get-or-create and safe to re-run
    - Creating a tree term creates any missing ancestors
    - Deleting a term deletes its record associations; deleting a tree
      term deletes its descendants

How to change safely:
    - Keep create() idempotent; type conversion re-runs rely on it
    - Batch IN (...) lists through MetadataDatabase.chunked()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..errors import InvalidValueError
from ..records.values import now_string
from ..schema.types import FieldType
from .database import MetadataDatabase

logger = logging.getLogger(__name__)

TREE_SEPARATOR = " -- "


@dataclass(frozen=True)
class Qualifier:
    """Provenance or scheme modifier, e.g. "LCSH" with its namespace URL."""

    qualifier_id: int
    name: str
    namespace: Optional[str] = None
    url: Optional[str] = None


class QualifierStore:
    """Shared qualifier catalogue."""

    def __init__(self, db: MetadataDatabase) -> None:
        self._db = db

    def create(self, name: str, namespace: Optional[str] = None, url: Optional[str] = None) -> Qualifier:
        """Create a qualifier, or return the existing one with the same name.

        Raises:
            InvalidValueError: If a qualifier with this name exists with a
                different namespace or url
        """
        existing = self.get_by_name(name)
        if existing is not None:
            if (namespace and existing.namespace and namespace != existing.namespace) or (
                url and existing.url and url != existing.url
            ):
                raise InvalidValueError(
                    f"Qualifier '{name}' already exists with a different namespace or url",
                    value=name,
                )
            return existing
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO qualifiers (name, namespace, url) VALUES (?, ?, ?)",
                (name, namespace, url),
            )
        logger.info(f"Created qualifier {name}", extra={"qualifier_id": cursor.lastrowid})
        return Qualifier(cursor.lastrowid, name, namespace, url)

    def get(self, qualifier_id: int) -> Optional[Qualifier]:
        row = self._db.query_row("SELECT * FROM qualifiers WHERE qualifier_id = ?", (qualifier_id,))
        return self._from_row(row) if row else None

    def get_by_name(self, name: str) -> Optional[Qualifier]:
        row = self._db.query_row("SELECT * FROM qualifiers WHERE name = ?", (name,))
        return self._from_row(row) if row else None

    def exists(self, qualifier_id: int) -> bool:
        return self.get(qualifier_id) is not None

    def delete(self, qualifier_id: int) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM qualifiers WHERE qualifier_id = ?", (qualifier_id,))
            conn.execute("DELETE FROM field_qualifier_ints WHERE qualifier_id = ?", (qualifier_id,))
            conn.execute("UPDATE controlled_names SET qualifier_id = NULL WHERE qualifier_id = ?", (qualifier_id,))
            conn.execute("UPDATE classifications SET qualifier_id = NULL WHERE qualifier_id = ?", (qualifier_id,))

    @staticmethod
    def _from_row(row) -> Qualifier:
        return Qualifier(row["qualifier_id"], row["name"], row["namespace"], row["url"])


class _TermFactory:
    """Behaviour shared by controlled-name and classification factories."""

    table = ""
    id_column = ""
    name_column = ""
    ints_table = ""

    def __init__(self, db: MetadataDatabase, field_id: int) -> None:
        self._db = db
        self.field_id = field_id

    # TermFactory contract

    def resolve_name(self, name: str) -> Optional[int]:
        return self._db.query_value(
            f"SELECT {self.id_column} FROM {self.table} WHERE field_id = ? AND {self.name_column} = ?",
            (self.field_id, name.strip()),
        )

    def id_exists(self, term_id: int) -> bool:
        return self.term_field(term_id) == self.field_id

    def create(self, name: str) -> int:
        raise NotImplementedError

    # lookups

    def term_field(self, term_id: int) -> Optional[int]:
        """Field a term belongs to, or None if there is no such term."""
        return self._db.query_value(
            f"SELECT field_id FROM {self.table} WHERE {self.id_column} = ?",
            (term_id,),
        )

    def names(self, term_ids: Optional[Iterable[int]] = None) -> dict[int, str]:
        """Map term id -> name for the given terms (or all terms), ordered by name."""
        if term_ids is None:
            rows = self._db.query_rows(
                f"SELECT {self.id_column}, {self.name_column} FROM {self.table} "
                f"WHERE field_id = ? ORDER BY {self.name_column}",
                (self.field_id,),
            )
        else:
            rows = []
            for batch in self._db.chunked(list(term_ids)):
                rows.extend(
                    self._db.query_rows(
                        f"SELECT {self.id_column}, {self.name_column} FROM {self.table} "
                        f"WHERE {self.id_column} IN ({self._db.placeholders(len(batch))})",
                        batch,
                    )
                )
            rows.sort(key=lambda r: r[1].lower())
        return {row[0]: row[1] for row in rows}

    def count(self) -> int:
        return self._db.query_value(
            f"SELECT COUNT(*) FROM {self.table} WHERE field_id = ?", (self.field_id,), default=0
        )

    def qualifier(self, term_id: int) -> Optional[int]:
        return self._db.query_value(
            f"SELECT qualifier_id FROM {self.table} WHERE {self.id_column} = ?", (term_id,)
        )

    def set_qualifier(self, term_id: int, qualifier_id: Optional[int]) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE {self.table} SET qualifier_id = ? WHERE {self.id_column} = ?",
                (qualifier_id, term_id),
            )

    def touch_last_assigned(self, term_ids: Sequence[int]) -> None:
        stamp = now_string()
        with self._db.transaction() as conn:
            for batch in self._db.chunked(list(term_ids)):
                conn.execute(
                    f"UPDATE {self.table} SET last_assigned = ? "
                    f"WHERE {self.id_column} IN ({self._db.placeholders(len(batch))})",
                    [stamp, *batch],
                )

    # record associations

    def record_term_ids(self, record_id: int) -> list[int]:
        return self._db.query_column(
            f"SELECT i.{self.id_column} FROM {self.ints_table} i "
            f"JOIN {self.table} t ON t.{self.id_column} = i.{self.id_column} "
            f"WHERE i.record_id = ? AND t.field_id = ?",
            (record_id, self.field_id),
        )

    def add_associations(self, record_id: int, term_ids: Iterable[int]) -> None:
        with self._db.transaction() as conn:
            conn.executemany(
                f"INSERT OR IGNORE INTO {self.ints_table} (record_id, {self.id_column}) VALUES (?, ?)",
                [(record_id, term_id) for term_id in term_ids],
            )

    def remove_associations(self, record_id: int, term_ids: Iterable[int]) -> None:
        with self._db.transaction() as conn:
            conn.executemany(
                f"DELETE FROM {self.ints_table} WHERE record_id = ? AND {self.id_column} = ?",
                [(record_id, term_id) for term_id in term_ids],
            )

    def records_with_term(self, term_id: int) -> list[int]:
        return self._db.query_column(
            f"SELECT record_id FROM {self.ints_table} WHERE {self.id_column} = ? ORDER BY record_id",
            (term_id,),
        )

    def associations(self) -> list[tuple[int, int]]:
        """All (record_id, term_id) pairs for the field."""
        rows = self._db.query_rows(
            f"SELECT i.record_id, i.{self.id_column} FROM {self.ints_table} i "
            f"JOIN {self.table} t ON t.{self.id_column} = i.{self.id_column} "
            f"WHERE t.field_id = ?",
            (self.field_id,),
        )
        return [(row[0], row[1]) for row in rows]

    # deletion

    def delete(self, term_id: int) -> None:
        self._delete_ids([term_id])

    def delete_all(self) -> int:
        """Delete every term of the field with its associations."""
        ids = list(self.names().keys())
        self._delete_ids(ids)
        return len(ids)

    def _delete_ids(self, term_ids: Sequence[int]) -> None:
        with self._db.transaction() as conn:
            for batch in self._db.chunked(list(term_ids)):
                marks = self._db.placeholders(len(batch))
                conn.execute(f"DELETE FROM {self.ints_table} WHERE {self.id_column} IN ({marks})", batch)
                conn.execute(f"DELETE FROM {self.table} WHERE {self.id_column} IN ({marks})", batch)
                conn.execute(
                    f"DELETE FROM visible_record_counts WHERE field_id = ? AND value_id IN ({marks})",
                    [self.field_id, *batch],
                )
                self._after_delete(conn, batch)

    def _after_delete(self, conn, term_ids: Sequence[int]) -> None:
        pass


class ControlledNameFactory(_TermFactory):
    """Terms for ControlledName and Option fields."""

    table = "controlled_names"
    id_column = "cname_id"
    name_column = "name"
    ints_table = "record_name_ints"

    def create(self, name: str, qualifier_id: Optional[int] = None) -> int:
        name = name.strip()
        if not name:
            raise InvalidValueError("Term name cannot be empty", value=name)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO controlled_names (field_id, name, qualifier_id) VALUES (?, ?, ?)",
                (self.field_id, name, qualifier_id),
            )
            term_id = conn.execute(
                "SELECT cname_id FROM controlled_names WHERE field_id = ? AND name = ?",
                (self.field_id, name),
            ).fetchone()[0]
        return term_id

    def add_variant(self, term_id: int, variant: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO variant_names (cname_id, variant_name) VALUES (?, ?)",
                (term_id, variant.strip()),
            )

    def variants(self, term_id: int) -> list[str]:
        return self._db.query_column(
            "SELECT variant_name FROM variant_names WHERE cname_id = ? ORDER BY variant_name",
            (term_id,),
        )

    def resolve_name(self, name: str) -> Optional[int]:
        term_id = super().resolve_name(name)
        if term_id is not None:
            return term_id
        return self._db.query_value(
            "SELECT v.cname_id FROM variant_names v JOIN controlled_names c ON c.cname_id = v.cname_id "
            "WHERE c.field_id = ? AND v.variant_name = ?",
            (self.field_id, name.strip()),
        )

    def _after_delete(self, conn, term_ids: Sequence[int]) -> None:
        conn.execute(
            f"DELETE FROM variant_names WHERE cname_id IN ({self._db.placeholders(len(term_ids))})",
            list(term_ids),
        )


class ClassificationFactory(_TermFactory):
    """Hierarchical terms for Tree fields."""

    table = "classifications"
    id_column = "classification_id"
    name_column = "full_name"
    ints_table = "record_class_ints"

    def create(self, name: str, qualifier_id: Optional[int] = None) -> int:
        """Create a classification by full name, creating missing ancestors."""
        segments = [s.strip() for s in name.split(TREE_SEPARATOR.strip())]
        if not segments or any(not s for s in segments):
            raise InvalidValueError(f"Malformed classification name: {name!r}", value=name)

        parent_id = None
        term_id = None
        with self._db.transaction() as conn:
            for depth in range(len(segments)):
                full_name = TREE_SEPARATOR.join(segments[: depth + 1])
                conn.execute(
                    "INSERT OR IGNORE INTO classifications "
                    "(field_id, parent_id, segment_name, full_name, depth, qualifier_id) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (self.field_id, parent_id, segments[depth], full_name, depth,
                     qualifier_id if depth == len(segments) - 1 else None),
                )
                term_id = conn.execute(
                    "SELECT classification_id FROM classifications WHERE field_id = ? AND full_name = ?",
                    (self.field_id, full_name),
                ).fetchone()[0]
                parent_id = term_id
        return term_id

    def resolve_name(self, name: str) -> Optional[int]:
        segments = [s.strip() for s in name.split(TREE_SEPARATOR.strip())]
        return super().resolve_name(TREE_SEPARATOR.join(segments))

    def parent(self, term_id: int) -> Optional[int]:
        return self._db.query_value(
            "SELECT parent_id FROM classifications WHERE classification_id = ?", (term_id,)
        )

    def children(self, term_id: int) -> list[int]:
        return self._db.query_column(
            "SELECT classification_id FROM classifications WHERE parent_id = ? ORDER BY full_name",
            (term_id,),
        )

    def ancestors(self, term_id: int) -> list[int]:
        found = []
        parent = self.parent(term_id)
        while parent is not None:
            found.append(parent)
            parent = self.parent(parent)
        return found

    def descendants(self, term_id: int) -> list[int]:
        found = []
        pending = [term_id]
        while pending:
            children = self.children(pending.pop())
            found.extend(children)
            pending.extend(children)
        return found

    def record_count(self, term_id: int) -> int:
        return self._db.query_value(
            "SELECT record_count FROM classifications WHERE classification_id = ?", (term_id,), default=0
        )

    def recalculate_record_counts(self, term_ids: Iterable[int]) -> None:
        """Recount permanent records under each term and its ancestors."""
        targets: set[int] = set()
        for term_id in term_ids:
            targets.add(term_id)
            targets.update(self.ancestors(term_id))

        with self._db.transaction() as conn:
            for term_id in targets:
                full_name = conn.execute(
                    "SELECT full_name FROM classifications WHERE classification_id = ?", (term_id,)
                ).fetchone()
                if full_name is None:
                    continue
                count = conn.execute(
                    "SELECT COUNT(DISTINCT i.record_id) FROM record_class_ints i "
                    "JOIN classifications c ON c.classification_id = i.classification_id "
                    "WHERE c.field_id = ? AND i.record_id > 0 "
                    "AND (c.full_name = ? OR c.full_name LIKE ?)",
                    (self.field_id, full_name[0], full_name[0] + TREE_SEPARATOR + "%"),
                ).fetchone()[0]
                conn.execute(
                    "UPDATE classifications SET record_count = ? WHERE classification_id = ?",
                    (count, term_id),
                )

    def delete(self, term_id: int) -> None:
        self._delete_ids([term_id, *self.descendants(term_id)])


def factory_for(db: MetadataDatabase, field_id: int, field_type: FieldType) -> _TermFactory:
    """Term factory for a vocabulary field.

    Raises:
        InvalidValueError: If the type does not use shared terms
    """
    if field_type is FieldType.TREE:
        return ClassificationFactory(db, field_id)
    if field_type in (FieldType.CONTROLLED_NAME, FieldType.OPTION):
        return ControlledNameFactory(db, field_id)
    raise InvalidValueError(f"{field_type.display_name} fields have no vocabulary", value=field_type)


def clear_visible_counts(db: MetadataDatabase, field_id: int, value_ids: Optional[Iterable[int]] = None) -> None:
    """Drop cached per-user-class visible record counts for terms of a field."""
    with db.transaction() as conn:
        if value_ids is None:
            conn.execute("DELETE FROM visible_record_counts WHERE field_id = ?", (field_id,))
            return
        for batch in db.chunked(list(value_ids)):
            conn.execute(
                f"DELETE FROM visible_record_counts WHERE field_id = ? "
                f"AND value_id IN ({db.placeholders(len(batch))})",
                [field_id, *batch],
            )
