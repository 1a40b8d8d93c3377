"""
File and image attachment rows.

The bytes behind an attachment live elsewhere; the store only tracks
which record and field own each attachment so File and Image values can
be read, copied and removed with their record.

Invariants:
    - An attachment is owned by at most one (record, field)
    - Unowned attachments are waiting to be assigned and may be
      assigned to any record
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import InvalidValueError
from ..records.values import now_string
from .database import MetadataDatabase

logger = logging.getLogger(__name__)

KIND_FILE = "file"
KIND_IMAGE = "image"


@dataclass(frozen=True)
class Attachment:
    """Attachment row.

    Attributes:
        attachment_id: Attachment identifier
        kind: "file" or "image"
        name: Original file name
        content_type: MIME type if known
        record_id: Owning record, None if unassigned
        field_id: Owning field, None if unassigned
    """

    attachment_id: int
    kind: str
    name: str
    content_type: Optional[str] = None
    record_id: Optional[int] = None
    field_id: Optional[int] = None


class AttachmentStore:
    """Attachment bookkeeping for File and Image fields."""

    def __init__(self, db: MetadataDatabase) -> None:
        self._db = db

    def create(self, kind: str, name: str, content_type: Optional[str] = None) -> Attachment:
        if kind not in (KIND_FILE, KIND_IMAGE):
            raise InvalidValueError(f"Unknown attachment kind: {kind!r}", value=kind)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO attachments (kind, name, content_type, created_at) VALUES (?, ?, ?, ?)",
                (kind, name, content_type, now_string()),
            )
        return Attachment(cursor.lastrowid, kind, name, content_type)

    def get(self, attachment_id: int) -> Optional[Attachment]:
        row = self._db.query_row("SELECT * FROM attachments WHERE attachment_id = ?", (attachment_id,))
        if row is None:
            return None
        return Attachment(
            row["attachment_id"],
            row["kind"],
            row["name"],
            row["content_type"],
            row["record_id"],
            row["field_id"],
        )

    def exists(self, attachment_id: int) -> bool:
        return self.get(attachment_id) is not None

    def for_record(self, record_id: int, field_id: int) -> list[int]:
        return self._db.query_column(
            "SELECT attachment_id FROM attachments WHERE record_id = ? AND field_id = ? ORDER BY attachment_id",
            (record_id, field_id),
        )

    def assign(self, attachment_id: int, record_id: int, field_id: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE attachments SET record_id = ?, field_id = ? WHERE attachment_id = ?",
                (record_id, field_id, attachment_id),
            )

    def duplicate(self, attachment_id: int) -> Attachment:
        """Copy an attachment row; the copy is unassigned."""
        original = self.get(attachment_id)
        if original is None:
            raise InvalidValueError(f"No attachment with id {attachment_id}", value=attachment_id)
        return self.create(original.kind, original.name, original.content_type)

    def destroy(self, attachment_id: int) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM attachments WHERE attachment_id = ?", (attachment_id,))
        logger.debug(f"Destroyed attachment {attachment_id}")
