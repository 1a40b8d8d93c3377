"""
Record lookup and bulk record operations.

Invariants:
    - Temporary records untouched for longer than the stale age are
      destroyed the next time any record is created
    - load() never returns a record that does not exist
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from ..contracts import User
from ..errors import UnknownRecordError
from .record import Record
from .values import TIMESTAMP_FORMAT

if TYPE_CHECKING:
    from ..store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 3 * 24 * 60


class RecordFactory:
    """Creates, loads and enumerates records.

    Example:
        >>> record = store.records.create(0, user)
        >>> store.records.load(record.id).schema_id
        0
    """

    def __init__(self, store: MetadataStore, stale_minutes: int = DEFAULT_STALE_MINUTES) -> None:
        self._store = store
        self.stale_minutes = stale_minutes

    def create(self, schema_id: int, user: Optional[User] = None) -> Record:
        return Record.create(self._store, schema_id, user)

    def load(self, record_id: int, acting_user: Optional[User] = None) -> Record:
        """Load a record.

        Raises:
            UnknownRecordError: If no record has this id
        """
        return Record(self._store, record_id, acting_user=acting_user)

    def exists(self, record_id: int) -> bool:
        try:
            record_id = int(record_id)
        except (TypeError, ValueError):
            return False
        return self._store.db.query_value(
            "SELECT COUNT(*) FROM records WHERE record_id = ?", (record_id,), default=0
        ) > 0

    def record_ids(self, schema_id: Optional[int] = None, include_temporary: bool = False) -> list[int]:
        """Record ids, optionally restricted to one schema."""
        clauses = []
        params: list[int] = []
        if schema_id is not None:
            clauses.append("schema_id = ?")
            params.append(schema_id)
        if not include_temporary:
            clauses.append("record_id > 0")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._store.db.query_column(f"SELECT record_id FROM records{where} ORDER BY record_id", params)

    def count(self, schema_id: Optional[int] = None, include_temporary: bool = False) -> int:
        return len(self.record_ids(schema_id, include_temporary))

    def duplicate(self, record_id: int, user: Optional[User] = None, mark_as_duplicate: bool = True) -> Record:
        return self.load(record_id, acting_user=user).duplicate(mark_as_duplicate=mark_as_duplicate)

    def clean_out_stale_temp_records(self, minutes: Optional[int] = None) -> int:
        """Destroy temporary records not modified within the given age.

        Returns:
            Number of records destroyed
        """
        age = self.stale_minutes if minutes is None else minutes
        cutoff = (datetime.now() - timedelta(minutes=age)).strftime(TIMESTAMP_FORMAT)
        stale = self._store.db.query_column(
            "SELECT record_id FROM records WHERE record_id < 0 AND COALESCE(date_last_modified, created_at) < ?",
            (cutoff,),
        )
        for record_id in stale:
            try:
                self.load(record_id).destroy()
            except UnknownRecordError:
                continue
        if stale:
            logger.info(f"Removed {len(stale)} stale temporary records", extra={"cutoff": cutoff})
        return len(stale)
