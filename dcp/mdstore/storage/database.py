"""
SQLite database for the metadata store.

A single database file holds the schema catalogue, term vocabularies,
record values and the two persisted caches (permission rows and visible
term counts) that processes share.

Invariants:
    - One connection per MetadataDatabase, autocommit by default
    - Writes happen inside transaction(); nested calls join the outer one
    - BEGIN IMMEDIATE takes the write lock up front, so "read max id,
      write new row" sequences are serialized across processes
    - Record value columns are added and removed at runtime; every other
      table is created by initialize()

How to change safely:
    - New tables go in _create_schema() with CREATE TABLE IF NOT EXISTS
    - Never issue COMMIT outside transaction(); it would end the caller's
      unit of work early
    - Keep batched statements under max_statement_bytes

Table schema:
    schemas:
        - schema_id INTEGER PRIMARY KEY
        - name TEXT UNIQUE
        - privileges (viewing/authoring/editing) as JSON
    metadata_fields:
        - field_id INTEGER PRIMARY KEY (negative = temporary)
        - schema_id, name, storage_name, field_type
        - flags, default value JSON, attributes JSON, privileges JSON
    records:
        - record_id INTEGER PRIMARY KEY (negative = temporary)
        - schema_id INTEGER
        - one or more columns per scalar-shaped field
    controlled_names / classifications:
        - vocabulary terms per field
    record_name_ints / record_class_ints / record_user_ints / reference_ints:
        - record <-> value associations
    user_perms_cache:
        - (record_id, user_class) -> can_view, expiration_date
    task_queue:
        - deferred housekeeping units, unique_key enforces one per record
    temporary_ids:
        - lowest temporary id issued per table
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from ..errors import SchemaConflictError

logger = logging.getLogger(__name__)

# SQLite's default host-parameter limit on older builds
MAX_BOUND_PARAMETERS = 999


class MetadataDatabase:
    """SQLite access layer shared by every store component.

    Thread safety:
        The connection is not shared across threads. One unit of work
        runs to completion before the next; cross-process coordination
        relies on SQLite locking.

    Example:
        >>> db = MetadataDatabase("/var/lib/mdstore/metadata.db")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("UPDATE records SET schema_id = 0 WHERE record_id = ?", (5,))
    """

    # Database schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        max_statement_bytes: int = 1024 * 1024,
    ) -> None:
        """Initialize the database wrapper.

        Args:
            path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            max_statement_bytes: Upper bound for batched statements
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.max_statement_bytes = max_statement_bytes
        self._conn: Optional[sqlite3.Connection] = None

    @classmethod
    def from_settings(cls, settings: Any) -> MetadataDatabase:
        """Build a database wrapper from StoreSettings."""
        return cls(
            settings.database_path,
            wal_mode=settings.wal_mode,
            busy_timeout_ms=settings.busy_timeout_ms,
            cache_size_pages=settings.cache_size_pages,
            max_statement_bytes=settings.max_statement_bytes,
        )

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield the open connection, opening it on first use."""
        if self._conn is None:
            self._conn = self._connect()
        yield self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a write transaction.

        If a transaction is already open on the connection the block joins
        it, and commit/rollback is left to the outermost caller.

        Yields:
            SQLite connection
        """
        with self.connection() as conn:
            if conn.in_transaction:
                yield conn
                return

            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def close(self) -> None:
        """Close the connection if open."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- query helpers -----------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self.connection() as conn:
            return conn.execute(sql, tuple(params))

    def query_rows(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self.connection() as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    def query_row(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self.connection() as conn:
            return conn.execute(sql, tuple(params)).fetchone()

    def query_value(self, sql: str, params: Sequence[Any] = (), default: Any = None) -> Any:
        row = self.query_row(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    def query_column(self, sql: str, params: Sequence[Any] = ()) -> list[Any]:
        return [row[0] for row in self.query_rows(sql, params)]

    # -- batching ----------------------------------------------------------

    def chunked(self, values: Sequence[Any], overhead: int = 128) -> Iterator[list[Any]]:
        """Split values into batches that keep one statement under the limits.

        Each batch respects both max_statement_bytes (estimated from the
        rendered length of each value plus a separator) and SQLite's bound
        parameter limit.

        Args:
            values: Values destined for an IN (...) list or VALUES rows
            overhead: Bytes reserved for the fixed part of the statement
        """
        budget = max(self.max_statement_bytes - overhead, 1)
        batch: list[Any] = []
        used = 0
        for value in values:
            width = len(str(value)) + 1
            if batch and (used + width > budget or len(batch) >= MAX_BOUND_PARAMETERS // 4):
                yield batch
                batch = []
                used = 0
            batch.append(value)
            used += width
        if batch:
            yield batch

    @staticmethod
    def placeholders(count: int) -> str:
        return ",".join("?" * count)

    # -- identifiers -------------------------------------------------------

    def allocate_id(self, conn: sqlite3.Connection, table: str, id_column: str, temporary: bool) -> int:
        """Allocate the next permanent or temporary id for a table.

        Must be called inside transaction() so the read of the current
        extreme and the insert of the new row happen under one lock.
        Temporary ids are never handed out twice, so a held Record or
        FieldDescriptor for a deleted temporary row cannot address a
        newer one.

        Args:
            conn: Connection with an open write transaction
            table: Table holding the ids
            id_column: Id column name
            temporary: Allocate a negative (temporary) id

        Returns:
            The new id
        """
        if not conn.in_transaction:
            raise RuntimeError("allocate_id() requires an open transaction")
        if temporary:
            lowest = conn.execute(f"SELECT MIN({id_column}) FROM {table}").fetchone()[0]
            issued = conn.execute("SELECT lowest_id FROM temporary_ids WHERE table_name = ?", (table,)).fetchone()
            candidates = [v for v in (lowest, issued[0] if issued else None) if v is not None and v < 0]
            new_id = min(candidates) - 1 if candidates else -1
            conn.execute(
                "INSERT OR REPLACE INTO temporary_ids (table_name, lowest_id) VALUES (?, ?)",
                (table, new_id),
            )
            return new_id
        highest = conn.execute(f"SELECT MAX({id_column}) FROM {table}").fetchone()[0]
        return 1 if highest is None or highest < 1 else highest + 1

    # -- runtime columns on the records table ------------------------------

    def column_types(self, table: str = "records") -> dict[str, str]:
        """Map column name -> declared type for a table."""
        rows = self.query_rows(f"PRAGMA table_info({table})")
        return {row["name"]: (row["type"] or "").upper() for row in rows}

    def ensure_column(self, column: str, declared_type: str, table: str = "records") -> bool:
        """Add a column unless an identical one already exists.

        Returns:
            True if the column was added

        Raises:
            SchemaConflictError: If the column exists with another type
        """
        existing = self.column_types(table)
        for name, existing_type in existing.items():
            if name.lower() != column.lower():
                continue
            if name != column or existing_type != declared_type.upper():
                raise SchemaConflictError(
                    f"Column '{name}' already exists as {existing_type or 'untyped'}, "
                    f"cannot use it as {declared_type} column '{column}'",
                    column=column,
                    existing_type=existing_type,
                    required_type=declared_type,
                )
            return False

        self.execute(f'ALTER TABLE {table} ADD COLUMN "{column}" {declared_type}')
        logger.debug(f"Added column {table}.{column} {declared_type}")
        return True

    def drop_column(self, column: str, table: str = "records") -> None:
        if column in self.column_types(table):
            self.execute(f'ALTER TABLE {table} DROP COLUMN "{column}"')
            logger.debug(f"Dropped column {table}.{column}")

    def rename_column(self, old: str, new: str, table: str = "records") -> None:
        if old == new:
            return
        existing = self.column_types(table)
        if new in existing:
            raise SchemaConflictError(
                f"Cannot rename column '{old}' to '{new}': column already exists",
                column=new,
                existing_type=existing[new],
            )
        self.execute(f'ALTER TABLE {table} RENAME COLUMN "{old}" TO "{new}"')
        logger.debug(f"Renamed column {table}.{old} to {new}")

    # -- schema ------------------------------------------------------------

    def initialize(self) -> None:
        """Create the database schema if it does not exist."""
        with self.connection() as conn:
            self._create_schema(conn)
        logger.info(f"Initialized metadata database: {self.path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS schemas (
                schema_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                item_name TEXT,
                default_sort_field_id INTEGER,
                view_page TEXT,
                edit_page TEXT,
                viewing_privileges TEXT,
                authoring_privileges TEXT,
                editing_privileges TEXT
            );

            CREATE TABLE IF NOT EXISTS metadata_fields (
                field_id INTEGER PRIMARY KEY,
                schema_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                storage_name TEXT NOT NULL,
                field_type INTEGER NOT NULL,
                label TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                editable INTEGER NOT NULL DEFAULT 1,
                optional INTEGER NOT NULL DEFAULT 1,
                owner TEXT,
                default_value TEXT,
                uses_qualifiers INTEGER NOT NULL DEFAULT 0,
                has_item_level_qualifiers INTEGER NOT NULL DEFAULT 0,
                default_qualifier_id INTEGER,
                viewing_privileges TEXT,
                authoring_privileges TEXT,
                editing_privileges TEXT,
                attributes TEXT NOT NULL DEFAULT '{}',
                creation_seq INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_fields_schema ON metadata_fields(schema_id);

            CREATE TABLE IF NOT EXISTS field_orders (
                schema_id INTEGER NOT NULL,
                order_type INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (schema_id, order_type, field_id)
            );

            CREATE TABLE IF NOT EXISTS standard_field_mappings (
                schema_id INTEGER NOT NULL,
                standard_name TEXT NOT NULL,
                field_id INTEGER NOT NULL,
                PRIMARY KEY (schema_id, standard_name)
            );

            CREATE TABLE IF NOT EXISTS records (
                record_id INTEGER PRIMARY KEY,
                schema_id INTEGER NOT NULL,
                cumulative_rating INTEGER NOT NULL DEFAULT 0,
                date_last_modified TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_records_schema ON records(schema_id);

            CREATE TABLE IF NOT EXISTS qualifiers (
                qualifier_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                namespace TEXT,
                url TEXT
            );

            CREATE TABLE IF NOT EXISTS field_qualifier_ints (
                field_id INTEGER NOT NULL,
                qualifier_id INTEGER NOT NULL,
                PRIMARY KEY (field_id, qualifier_id)
            );

            CREATE TABLE IF NOT EXISTS controlled_names (
                cname_id INTEGER PRIMARY KEY AUTOINCREMENT,
                field_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                qualifier_id INTEGER,
                last_assigned TEXT,
                UNIQUE (field_id, name)
            );

            CREATE TABLE IF NOT EXISTS variant_names (
                cname_id INTEGER NOT NULL,
                variant_name TEXT NOT NULL,
                PRIMARY KEY (cname_id, variant_name)
            );

            CREATE TABLE IF NOT EXISTS record_name_ints (
                record_id INTEGER NOT NULL,
                cname_id INTEGER NOT NULL,
                PRIMARY KEY (record_id, cname_id)
            );

            CREATE INDEX IF NOT EXISTS idx_name_ints_term ON record_name_ints(cname_id);

            CREATE TABLE IF NOT EXISTS classifications (
                classification_id INTEGER PRIMARY KEY AUTOINCREMENT,
                field_id INTEGER NOT NULL,
                parent_id INTEGER,
                segment_name TEXT NOT NULL,
                full_name TEXT NOT NULL,
                depth INTEGER NOT NULL DEFAULT 0,
                record_count INTEGER NOT NULL DEFAULT 0,
                qualifier_id INTEGER,
                last_assigned TEXT,
                UNIQUE (field_id, full_name)
            );

            CREATE TABLE IF NOT EXISTS record_class_ints (
                record_id INTEGER NOT NULL,
                classification_id INTEGER NOT NULL,
                PRIMARY KEY (record_id, classification_id)
            );

            CREATE INDEX IF NOT EXISTS idx_class_ints_term ON record_class_ints(classification_id);

            CREATE TABLE IF NOT EXISTS record_user_ints (
                record_id INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                PRIMARY KEY (record_id, field_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS reference_ints (
                field_id INTEGER NOT NULL,
                src_record_id INTEGER NOT NULL,
                dst_record_id INTEGER NOT NULL,
                PRIMARY KEY (field_id, src_record_id, dst_record_id)
            );

            CREATE INDEX IF NOT EXISTS idx_reference_dst ON reference_ints(dst_record_id);

            CREATE TABLE IF NOT EXISTS attachments (
                attachment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                content_type TEXT,
                record_id INTEGER,
                field_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_attachments_owner ON attachments(record_id, field_id);

            CREATE TABLE IF NOT EXISTS record_field_timestamps (
                record_id INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                modified_by INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                PRIMARY KEY (record_id, field_id)
            );

            CREATE TABLE IF NOT EXISTS record_ratings (
                record_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                rating INTEGER NOT NULL,
                PRIMARY KEY (record_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS record_comments (
                comment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id INTEGER NOT NULL,
                user_id INTEGER,
                body TEXT NOT NULL,
                posted_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_perms_cache (
                record_id INTEGER NOT NULL,
                user_class TEXT NOT NULL,
                can_view INTEGER NOT NULL,
                expiration_date TEXT,
                PRIMARY KEY (record_id, user_class)
            );

            CREATE TABLE IF NOT EXISTS visible_record_counts (
                value_id INTEGER NOT NULL,
                field_id INTEGER NOT NULL,
                user_class TEXT NOT NULL,
                record_count INTEGER NOT NULL,
                PRIMARY KEY (value_id, field_id, user_class)
            );

            CREATE TABLE IF NOT EXISTS temporary_ids (
                table_name TEXT PRIMARY KEY,
                lowest_id INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS task_queue (
                task_id INTEGER PRIMARY KEY AUTOINCREMENT,
                unique_key TEXT NOT NULL UNIQUE,
                callback TEXT NOT NULL,
                params TEXT NOT NULL DEFAULT '{}',
                priority INTEGER NOT NULL DEFAULT 0,
                description TEXT,
                queued_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                claimed_at TEXT,
                requeue INTEGER NOT NULL DEFAULT 0
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, datetime('now'));
        """)
