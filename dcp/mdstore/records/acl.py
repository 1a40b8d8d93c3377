"""
Permission evaluation for records and fields.

This module decides whether a user may view, edit, author or modify a
record or one of its fields:
- User classes: users holding the same schema-relevant privilege flags
  share one class, so view results can be cached per class
- Persisted view cache (user_perms_cache), shared across processes
- Visible record counts per vocabulary term and user class

Invariants:
    - The anonymous user cannot view temporary records
    - "modify" means author for temporary records and edit otherwise
    - Class-keyed results are only persisted when they hold for every
      member of the class; records whose rules compare against the
      acting user are evaluated per user and cached for one batch only
    - A class-keyed result past its expiration date is ignored

How to change safely:
    - Anything that changes a record's view outcome must end in
      clear_record(), or clear_schema() when it touches every record
    - New checks must map onto one of the three privilege levels

Example:
    >>> evaluator = PermissionEvaluator(store)
    >>> evaluator.filter_viewable(User.anonymous(), [3, 4, 5])
    [3, 5]
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from ..contracts import User
from ..errors import InvalidValueError
from ..schema.types import FieldType
from .privileges import PrivilegeSet
from .values import TIMESTAMP_FORMAT, now_string

if TYPE_CHECKING:
    from ..schema.field import FieldDescriptor
    from ..store import MetadataStore
    from .record import Record

logger = logging.getLogger(__name__)

CHECK_VIEW = "view"
CHECK_EDIT = "edit"
CHECK_AUTHOR = "author"
CHECK_MODIFY = "modify"

_LEVELS = {CHECK_VIEW: "viewing", CHECK_EDIT: "editing", CHECK_AUTHOR: "authoring"}


class PermissionEvaluator:
    """Cascading schema and field permission checks with caching.

    Thread-safety:
        Not thread-safe. The persisted cache tolerates concurrent
        writers; rows are replaced, never merged.
    """

    def __init__(self, store: MetadataStore) -> None:
        self._store = store

    # -- user classes ------------------------------------------------------

    def compute_user_class(self, user: User, schema_id: int) -> str:
        """Cache key shared by users holding the same relevant privilege flags.

        Only the flags any viewing rule of the schema looks at contribute;
        the anonymous user always has a class of its own.
        """
        registry = self._store.registry

        def compute() -> str:
            relevant = registry.relevant_privilege_flags(schema_id)
            held = sorted(flag for flag in relevant if user.has_privilege(flag))
            key = "-".join(str(flag) for flag in held)
            if user.is_anonymous:
                key = "anon" + key
            return hashlib.md5(key.encode("utf-8")).hexdigest()

        return registry.cache.memoize(
            f"schema:{schema_id}:userclass",
            (user.user_id, user.privileges),
            compute,
        )

    def _user_comparison_fields(self, schema_id: int) -> frozenset[int]:
        registry = self._store.registry

        def compute() -> frozenset[int]:
            fields = set(registry.get_schema(schema_id).viewing_privileges.fields_with_user_comparisons())
            for descriptor in registry.get_fields(schema_id, include_disabled=True):
                fields |= descriptor.viewing_privileges.fields_with_user_comparisons()
            return frozenset(fields)

        return registry.cache.memoize(f"schema:{schema_id}:comparisons", "viewing", compute)

    # -- record and field checks -------------------------------------------

    def _privileges_for(self, record: Record, check: str) -> PrivilegeSet:
        schema = self._store.registry.get_schema(record.schema_id)
        if check == CHECK_MODIFY:
            check = CHECK_AUTHOR if record.is_temporary else CHECK_EDIT
        return schema.privileges.get(_LEVELS[check]) or PrivilegeSet()

    @staticmethod
    def _check_name(check: str) -> str:
        check = str(check).lower()
        if check not in (CHECK_VIEW, CHECK_EDIT, CHECK_AUTHOR, CHECK_MODIFY):
            raise InvalidValueError(f"Unknown permission check {check!r}", value=check)
        return check

    def check_schema_permissions(self, user: User, record: Record, check: str) -> bool:
        """Whether the user passes the schema-level rules for a record.

        Results are cached on the record until its next change.

        Args:
            user: Acting user
            record: Record being checked
            check: "view", "edit", "author" or "modify"

        Raises:
            InvalidValueError: If the check name is unknown
        """
        check = self._check_name(check)
        key = ((user.user_id, user.privileges), check)
        if key in record.permission_cache:
            return record.permission_cache[key]

        if check == CHECK_VIEW and record.is_temporary and user.is_anonymous:
            result = False
        else:
            privset = self._privileges_for(record, check)
            result = privset.meets_requirements(user, record)
            if check == CHECK_VIEW:
                record.view_expiration = privset.get_result_expiration_date()

        record.permission_cache[key] = result
        return result

    def check_field_permissions(self, user: User, record: Record, field: FieldDescriptor, check: str) -> bool:
        """Whether the user passes the schema rules and the field's own rules.

        Disabled fields fail every check; fields that are not editable
        fail every check except view.
        """
        check = self._check_name(check)
        if not field.enabled:
            return False
        if check != CHECK_VIEW and not field.editable:
            return False
        if not self.check_schema_permissions(user, record, check):
            return False
        if check == CHECK_MODIFY:
            check = CHECK_AUTHOR if record.is_temporary else CHECK_EDIT
        return field.privileges(_LEVELS[check]).meets_requirements(user, record)

    # -- bulk visibility ---------------------------------------------------

    def filter_viewable(self, user: User, record_ids: Iterable[int]) -> list[int]:
        """Ids the user may view, in the order given.

        Unknown ids are dropped. Class-keyed results come from, and go
        to, user_perms_cache.
        """
        ids = [int(i) for i in record_ids]
        if not ids:
            return []
        db = self._store.db
        self.purge_expired()

        schema_of: dict[int, int] = {}
        for batch in db.chunked(ids):
            for row in db.query_rows(
                f"SELECT record_id, schema_id FROM records WHERE record_id IN ({db.placeholders(len(batch))})",
                batch,
            ):
                schema_of[row["record_id"]] = row["schema_id"]

        by_schema: dict[int, list[int]] = defaultdict(list)
        for record_id in ids:
            if record_id in schema_of:
                by_schema[schema_of[record_id]].append(record_id)

        viewable: dict[int, bool] = {}
        per_user: dict[tuple[Optional[int], int], bool] = {}
        for schema_id, schema_ids in by_schema.items():
            viewable.update(self._filter_schema(user, schema_id, schema_ids, per_user))

        return [record_id for record_id in ids if viewable.get(record_id)]

    def _filter_schema(
        self,
        user: User,
        schema_id: int,
        record_ids: list[int],
        per_user: dict[tuple[Optional[int], int], bool],
    ) -> dict[int, bool]:
        db = self._store.db
        user_class = self.compute_user_class(user, schema_id)
        personal = self._records_compared_with_user(user, schema_id, record_ids)

        cached: dict[int, bool] = {}
        now = now_string()
        shared_ids = [i for i in record_ids if i not in personal]
        for batch in db.chunked(shared_ids):
            for row in db.query_rows(
                "SELECT record_id, can_view, expiration_date FROM user_perms_cache "
                f"WHERE user_class = ? AND record_id IN ({db.placeholders(len(batch))})",
                [user_class, *batch],
            ):
                if row["expiration_date"] is not None and row["expiration_date"] < now:
                    continue
                cached[row["record_id"]] = bool(row["can_view"])

        results: dict[int, bool] = {}
        to_save: list[tuple[int, str, int, Optional[str]]] = []
        for record_id in record_ids:
            if record_id in personal:
                key = (user.user_id, record_id)
                if key not in per_user:
                    per_user[key] = self._evaluate_view(user, record_id)[0]
                results[record_id] = per_user[key]
            elif record_id in cached:
                results[record_id] = cached[record_id]
            else:
                can_view, expires = self._evaluate_view(user, record_id)
                results[record_id] = can_view
                to_save.append((
                    record_id,
                    user_class,
                    int(can_view),
                    None if expires is None else expires.strftime(TIMESTAMP_FORMAT),
                ))

        if to_save:
            with db.transaction() as conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO user_perms_cache (record_id, user_class, can_view, expiration_date) "
                    "VALUES (?, ?, ?, ?)",
                    to_save,
                )
            logger.debug(f"Cached {len(to_save)} view results", extra={"user_class": user_class})
        return results

    def _records_compared_with_user(self, user: User, schema_id: int, record_ids: list[int]) -> set[int]:
        """Records whose view outcome for this user may differ from the class outcome."""
        fields = self._user_comparison_fields(schema_id)
        if not fields or user.is_anonymous:
            return set()

        registry = self._store.registry
        user_fields = []
        for field_id in fields:
            if not registry.field_exists(field_id, schema_id):
                continue
            if registry.get_field(field_id).type is not FieldType.USER:
                return set(record_ids)
            user_fields.append(field_id)
        if not user_fields:
            return set()

        db = self._store.db
        found: set[int] = set()
        for batch in db.chunked(record_ids):
            found.update(db.query_column(
                "SELECT DISTINCT record_id FROM record_user_ints WHERE user_id = ? "
                f"AND field_id IN ({db.placeholders(len(user_fields))}) "
                f"AND record_id IN ({db.placeholders(len(batch))})",
                [user.user_id, *user_fields, *batch],
            ))
        return found

    def _evaluate_view(self, user: User, record_id: int) -> tuple[bool, Optional[datetime]]:
        record = self._store.records.load(record_id, acting_user=user)
        can_view = self.check_schema_permissions(user, record, CHECK_VIEW)
        return can_view, record.view_expiration

    # -- invalidation ------------------------------------------------------

    def clear_record(self, record_id: int) -> None:
        """Drop cached view results and term counts involving one record."""
        db = self._store.db
        term_rows = db.query_rows(
            "SELECT cn.field_id, cn.cname_id AS value_id FROM record_name_ints ri "
            "JOIN controlled_names cn ON cn.cname_id = ri.cname_id WHERE ri.record_id = ? "
            "UNION SELECT c.field_id, c.classification_id FROM record_class_ints rc "
            "JOIN classifications c ON c.classification_id = rc.classification_id WHERE rc.record_id = ?",
            (record_id, record_id),
        )
        with db.transaction() as conn:
            conn.execute("DELETE FROM user_perms_cache WHERE record_id = ?", (record_id,))
            conn.executemany(
                "DELETE FROM visible_record_counts WHERE field_id = ? AND value_id = ?",
                [(row["field_id"], row["value_id"]) for row in term_rows],
            )
        logger.debug(f"Cleared permission cache for record {record_id}")

    def clear_schema(self, schema_id: int) -> None:
        """Drop every persisted view result and term count of a schema.

        Used when a change can alter view outcomes without changing the
        user classes, such as new viewing rules over the same flags.
        """
        with self._store.db.transaction() as conn:
            conn.execute(
                "DELETE FROM user_perms_cache WHERE record_id IN (SELECT record_id FROM records WHERE schema_id = ?)",
                (schema_id,),
            )
            conn.execute(
                "DELETE FROM visible_record_counts "
                "WHERE field_id IN (SELECT field_id FROM metadata_fields WHERE schema_id = ?)",
                (schema_id,),
            )
        logger.info(f"Cleared permission cache for schema {schema_id}")

    def purge_expired(self) -> int:
        """Delete class-keyed results past their expiration date."""
        with self._store.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM user_perms_cache WHERE expiration_date IS NOT NULL AND expiration_date < ?",
                (now_string(),),
            )
        return cursor.rowcount

    # -- term counts -------------------------------------------------------

    def visible_record_count(self, user: User, field: FieldDescriptor, value_id: int) -> int:
        """Number of permanent records holding a term that the user can view."""
        db = self._store.db
        user_class = self.compute_user_class(user, field.schema_id)
        cached = db.query_value(
            "SELECT record_count FROM visible_record_counts WHERE value_id = ? AND field_id = ? AND user_class = ?",
            (value_id, field.id, user_class),
        )
        if cached is not None:
            return int(cached)

        record_ids = [i for i in field.factory.records_with_term(value_id) if i > 0]
        count = len(self.filter_viewable(user, record_ids))
        if not self._user_comparison_fields(field.schema_id):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO visible_record_counts (value_id, field_id, user_class, record_count) "
                    "VALUES (?, ?, ?, ?)",
                    (value_id, field.id, user_class, count),
                )
        return count
