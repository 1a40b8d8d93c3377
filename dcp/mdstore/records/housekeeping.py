"""
Deferred housekeeping for records.

Writes to a record do the minimum inline and queue one coalesced unit of
work per record; the unit re-runs auto-update fields, refreshes
permission and term-count caches and asks the indexer to re-index.

Components:
- DeferredTaskQueue: task_queue table with unique keys, callbacks looked
  up by name, attempts and last error kept on failure
- HousekeepingWorker: asyncio loop draining the queue on an interval or
  when woken
- run_record_housekeeping: the record unit itself

Invariants:
    - At most one pending unit per unique key; enqueueing again merges
      parameters into the pending unit under BEGIN IMMEDIATE
    - A unit is claimed (marked, not removed) before it runs and deleted
      only once it completes; a failed unit is unclaimed with attempts
      incremented, and a claim older than the claim timeout is taken to
      belong to a dead process and may be claimed again
    - A request merged into a running unit keeps the row queued after
      the run, with the merged parameters
    - Units are idempotent and may be re-run wholesale

How to change safely:
    - Parameters must stay JSON-serializable
    - New callbacks are registered by name; queued rows outlive the process

Example:
    >>> queue = DeferredTaskQueue(db)
    >>> queue.register("record_housekeeping", handler)
    >>> queue.enqueue_unique("record-housekeeping:5", "record_housekeeping", {"record_id": 5})
    True
    >>> queue.run_pending()
    1
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from ..contracts import User
from ..schema.types import FieldType, UpdateMethod
from ..storage.database import MetadataDatabase
from .values import TIMESTAMP_FORMAT, now_string

if TYPE_CHECKING:
    from ..store import MetadataStore

logger = logging.getLogger(__name__)

HOUSEKEEPING_CALLBACK = "record_housekeeping"
PRIORITY_HIGH = 10
PRIORITY_NORMAL = 0

TaskCallback = Callable[[dict[str, Any]], None]
MergeFn = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


def housekeeping_key(record_id: int) -> str:
    return f"record-housekeeping:{record_id}"


def merge_housekeeping_params(pending: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Combine a new housekeeping request with the pending one.

    The pending unit's was_public is kept because it was captured before
    the earliest write; auto-update and temporary flags accumulate.
    """
    merged = dict(incoming)
    merged["was_public"] = pending.get("was_public", incoming.get("was_public", False))
    merged["run_auto_updates"] = bool(pending.get("run_auto_updates")) or bool(incoming.get("run_auto_updates"))
    merged["was_temporary"] = bool(pending.get("was_temporary")) or bool(incoming.get("was_temporary"))
    return merged


class DeferredTaskQueue:
    """Persistent queue of named, uniquely keyed units of work.

    Thread-safety:
        Safe across processes sharing the database file; check-and-merge
        runs inside one BEGIN IMMEDIATE transaction.
    """

    def __init__(self, db: MetadataDatabase, max_attempts: int = 5, claim_timeout_seconds: float = 600.0) -> None:
        self._db = db
        self._max_attempts = max_attempts
        self._claim_timeout = claim_timeout_seconds
        self._callbacks: dict[str, TaskCallback] = {}

    def register(self, name: str, callback: TaskCallback) -> None:
        self._callbacks[name] = callback

    def enqueue_unique(
        self,
        key: str,
        callback: str,
        params: Mapping[str, Any],
        merge: Optional[MergeFn] = None,
        priority: int = PRIORITY_NORMAL,
        description: str = "",
    ) -> bool:
        """Queue a unit unless one with the same key is pending.

        Args:
            key: Coalescing key
            callback: Registered callback name
            params: JSON-serializable parameters
            merge: Combines pending and incoming params; incoming wins if None
            priority: Higher runs first
            description: Human-readable description

        Returns:
            True if a new unit was queued, False if merged into a pending one
        """
        params = dict(params)
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT task_id, params, priority FROM task_queue WHERE unique_key = ?", (key,)
            ).fetchone()
            if row is not None:
                pending = json.loads(row["params"])
                merged = merge(pending, params) if merge else params
                conn.execute(
                    "UPDATE task_queue SET callback = ?, params = ?, priority = ?, description = ?, "
                    "requeue = claimed_at IS NOT NULL WHERE task_id = ?",
                    (callback, json.dumps(merged), max(priority, row["priority"]), description, row["task_id"]),
                )
                logger.debug(f"Merged queued task {key}")
                return False

            conn.execute(
                "INSERT INTO task_queue (unique_key, callback, params, priority, description, queued_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (key, callback, json.dumps(params), priority, description, now_string()),
            )
        logger.debug(f"Queued task {key}", extra={"callback": callback})
        return True

    def cancel(self, key: str) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM task_queue WHERE unique_key = ?", (key,))
        return cursor.rowcount > 0

    def pending(self) -> list[dict[str, Any]]:
        rows = self._db.query_rows(
            "SELECT * FROM task_queue ORDER BY priority DESC, task_id"
        )
        return [
            {
                "task_id": row["task_id"],
                "key": row["unique_key"],
                "callback": row["callback"],
                "params": json.loads(row["params"]),
                "priority": row["priority"],
                "description": row["description"],
                "attempts": row["attempts"],
                "last_error": row["last_error"],
            }
            for row in rows
        ]

    def pending_count(self) -> int:
        return self._db.query_value(
            "SELECT COUNT(*) FROM task_queue WHERE attempts < ?", (self._max_attempts,), default=0
        )

    def run_pending(self, limit: Optional[int] = None) -> int:
        """Run queued units, highest priority first.

        Args:
            limit: Maximum number of units to run (None for all)

        Returns:
            Number of units that completed successfully
        """
        completed = 0
        attempted = 0
        while limit is None or attempted < limit:
            task = self._claim_next()
            if task is None:
                break
            attempted += 1
            if self._run(task):
                completed += 1
        return completed

    def _claim_next(self) -> Optional[dict[str, Any]]:
        stale = (datetime.now() - timedelta(seconds=self._claim_timeout)).strftime(TIMESTAMP_FORMAT)
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM task_queue WHERE attempts < ? AND (claimed_at IS NULL OR claimed_at < ?) "
                "ORDER BY priority DESC, task_id LIMIT 1",
                (self._max_attempts, stale),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE task_queue SET claimed_at = ?, requeue = 0 WHERE task_id = ?",
                (now_string(), row["task_id"]),
            )
        return {key: row[key] for key in row.keys()}

    def _run(self, task: dict[str, Any]) -> bool:
        params = json.loads(task["params"])
        callback = self._callbacks.get(task["callback"])
        try:
            if callback is None:
                raise LookupError(f"No callback registered for {task['callback']!r}")
            callback(params)
        except Exception as e:
            logger.exception(
                f"Deferred task {task['unique_key']} failed",
                extra={"attempts": task["attempts"] + 1},
            )
            self._release(task, error=e)
            return False
        self._release(task)
        logger.debug(f"Completed task {task['unique_key']}")
        return True

    def _release(self, task: dict[str, Any], error: Optional[Exception] = None) -> None:
        """Finish a claimed unit.

        A unit merged into while it ran stays queued with the merged
        parameters; otherwise success deletes the row and failure unclaims
        it with attempts incremented.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT requeue FROM task_queue WHERE task_id = ?", (task["task_id"],)
            ).fetchone()
            if row is None:
                return
            if error is None and not row["requeue"]:
                conn.execute("DELETE FROM task_queue WHERE task_id = ?", (task["task_id"],))
            elif error is None:
                conn.execute(
                    "UPDATE task_queue SET claimed_at = NULL, requeue = 0 WHERE task_id = ?",
                    (task["task_id"],),
                )
            else:
                conn.execute(
                    "UPDATE task_queue SET claimed_at = NULL, requeue = 0, attempts = attempts + 1, "
                    "last_error = ? WHERE task_id = ?",
                    (str(error), task["task_id"]),
                )


class HousekeepingWorker:
    """Drains a DeferredTaskQueue from an asyncio task.

    run_pending() is synchronous SQLite work; it runs between awaits,
    one batch per wake-up or interval.
    """

    def __init__(
        self,
        queue: DeferredTaskQueue,
        interval_seconds: float = 5.0,
        batch_size: int = 50,
    ) -> None:
        self._queue = queue
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._running = False
        self._task: asyncio.Task | None = None
        self._wake_event = asyncio.Event()
        self.units_run = 0

    @property
    def running(self) -> bool:
        return self._running

    def wake(self) -> None:
        """Ask the loop to drain now instead of waiting for the interval."""
        self._wake_event.set()

    async def start(self) -> None:
        """Start the background drain loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._drain_loop())
        logger.info("HousekeepingWorker started")

    async def stop(self) -> None:
        """Stop the loop and run whatever is still queued."""
        if not self._running:
            return
        self._running = False
        self._wake_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._drain()
        logger.info("HousekeepingWorker stopped")

    async def _drain_loop(self) -> None:
        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._wake_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass

                self._wake_event.clear()
                await self._drain()
        except asyncio.CancelledError:
            pass

    async def _drain(self) -> None:
        while True:
            done = self._queue.run_pending(limit=self._batch_size)
            self.units_run += done
            if self._queue.pending_count() == 0 or done == 0:
                break
            await asyncio.sleep(0)


def run_record_housekeeping(store: MetadataStore, params: dict[str, Any]) -> None:
    """Deferred work after changes to one record.

    Steps:
        1. Run ON_RECORD_CHANGE auto-updates if requested
        2. Publish a record SET event
        3. Clear the record's permission cache rows
        4. Recalculate tree term counts if the record was temporary or its
           public visibility changed
        5. Run ON_RECORD_RELEASE auto-updates if it just became public
        6. Queue a search re-index
    """
    record_id = int(params["record_id"])
    if not store.records.exists(record_id):
        logger.debug(f"Skipping housekeeping for missing record {record_id}")
        return

    user = _acting_user(store, params.get("user_id"))
    record = store.records.load(record_id, acting_user=user)
    record.suppress_housekeeping = True

    if params.get("run_auto_updates"):
        record.update_autoupdate_fields(UpdateMethod.ON_RECORD_CHANGE, user)

    record.notify_modified()
    store.evaluator.clear_record(record_id)

    was_public = bool(params.get("was_public"))
    is_public = record.user_can_view(User.anonymous())
    if params.get("was_temporary") or was_public != is_public:
        _recalculate_tree_counts(store, record)

    if not was_public and is_public:
        record.update_autoupdate_fields(UpdateMethod.ON_RECORD_RELEASE, user)

    store.indexer.queue_reindex(record_id)


def _acting_user(store: MetadataStore, user_id: Any) -> User:
    if user_id is None or int(user_id) < 0:
        return User.anonymous()
    user_id = int(user_id)
    found = getattr(store.users, "get", None)
    if callable(found):
        user = found(user_id)
        if user is not None:
            return user
    return User(user_id=user_id, name=store.users.user_name(user_id) or "")


def _recalculate_tree_counts(store: MetadataStore, record: Any) -> None:
    for field in store.registry.get_fields(record.schema_id, type_filter=FieldType.TREE, include_disabled=True):
        term_ids = list(record.get(field).keys())
        if term_ids:
            field.factory.recalculate_record_counts(term_ids)
