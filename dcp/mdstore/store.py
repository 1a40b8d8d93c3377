"""
The metadata store: one object wiring every component together.

MetadataStore owns the database, the cache, the event bus and the
collaborators (indexer, user directory) and exposes them as attributes
so records, fields and strategies reach each other through one place:

    store.db          MetadataDatabase
    store.cache       CacheService
    store.events      EventBus
    store.registry    SchemaRegistry
    store.records     RecordFactory
    store.queue       DeferredTaskQueue
    store.evaluator   PermissionEvaluator
    store.indexer     SearchIndexer
    store.users       UserDirectory

Invariants:
    - One store per database per process
    - The record housekeeping callback is registered before any write
    - Converting a field's type queues every affected record for
      re-indexing and drops its cached view results
    - Changing viewing rules or dropping a field drops every persisted
      view result of the schema

Example:
    >>> store = MetadataStore.from_settings(StoreSettings(data_dir="/tmp/md"))
    >>> store.initialize()
    >>> title = store.registry.add_field(0, "Text", "Title")
    >>> record = store.records.create(0)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .cache import CacheService
from .config import StoreSettings
from .contracts import SearchIndexer, UserDirectory
from .events import WILDCARD, Event, EventBus, EventKind
from .memory import InMemoryIndexer, InMemoryUserDirectory
from .records.acl import PermissionEvaluator
from .records.factory import RecordFactory
from .records.housekeeping import (
    HOUSEKEEPING_CALLBACK,
    DeferredTaskQueue,
    HousekeepingWorker,
    run_record_housekeeping,
)
from .schema.interchange import export_fields
from .schema.registry import SchemaRegistry
from .storage.database import MetadataDatabase

logger = logging.getLogger(__name__)


class MetadataStore:
    """Typed-metadata value store."""

    def __init__(
        self,
        db: MetadataDatabase,
        settings: Optional[StoreSettings] = None,
        cache: Optional[CacheService] = None,
        events: Optional[EventBus] = None,
        indexer: Optional[SearchIndexer] = None,
        users: Optional[UserDirectory] = None,
    ) -> None:
        self.settings = settings or StoreSettings()
        self.db = db
        self.cache = cache or CacheService()
        self.events = events or EventBus()
        self.indexer = indexer or InMemoryIndexer()
        self.users = users or InMemoryUserDirectory()

        self.registry = SchemaRegistry(db, self.cache, self.events)
        self.queue = DeferredTaskQueue(
            db,
            max_attempts=self.settings.housekeeping_max_attempts,
            claim_timeout_seconds=self.settings.housekeeping_claim_timeout_seconds,
        )
        self.records = RecordFactory(self, stale_minutes=self.settings.stale_temp_record_minutes)
        self.evaluator = PermissionEvaluator(self)

        self.queue.register(HOUSEKEEPING_CALLBACK, self._run_housekeeping)
        self.events.subscribe(WILDCARD, self._on_event)

    @classmethod
    def from_settings(cls, settings: Optional[StoreSettings] = None, **collaborators: Any) -> MetadataStore:
        """Build a store (not yet initialized) from settings."""
        settings = settings or StoreSettings()
        return cls(MetadataDatabase.from_settings(settings), settings=settings, **collaborators)

    def initialize(self) -> None:
        """Create tables and the default schema."""
        self.db.initialize()
        self.registry.ensure_default_schema()
        logger.info(f"Metadata store ready at {self.db.path}")

    def close(self) -> None:
        self.events.unsubscribe(WILDCARD, self._on_event)
        self.db.close()

    def __enter__(self) -> MetadataStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- housekeeping ------------------------------------------------------

    def _run_housekeeping(self, params: dict[str, Any]) -> None:
        run_record_housekeeping(self, params)

    def run_housekeeping(self, limit: Optional[int] = None) -> int:
        """Run queued housekeeping units now.

        Returns:
            Number of units that completed
        """
        return self.queue.run_pending(limit)

    def create_worker(self) -> HousekeepingWorker:
        """Background worker draining the queue with the configured cadence."""
        return HousekeepingWorker(
            self.queue,
            interval_seconds=self.settings.housekeeping_interval_seconds,
            batch_size=self.settings.housekeeping_batch_size,
        )

    # -- schema-level reactions --------------------------------------------

    def _on_event(self, event: Event) -> None:
        if not event.scope.startswith("schema:"):
            return
        schema_id = int(event.scope.split(":", 1)[1])
        if event.kind is EventKind.REMOVE and "field_id" in event.payload:
            self.evaluator.clear_schema(schema_id)
            return
        if event.kind is not EventKind.SET:
            return
        if event.payload.get("privileges") == "viewing":
            self.evaluator.clear_schema(schema_id)
            return
        if "converted_to" not in event.payload:
            return
        record_ids = event.payload.get("record_ids", ())
        for record_id in record_ids:
            self.evaluator.clear_record(record_id)
            if record_id > 0:
                self.indexer.queue_reindex(record_id)
        logger.debug(f"Queued {len(record_ids)} records for re-indexing after type conversion")

    def export_fields(self, schema_id: int) -> str:
        """Interchange document for a schema's fields."""
        return export_fields(self.registry, schema_id)

    def __repr__(self) -> str:
        return f"MetadataStore(path={str(self.db.path)!r})"
