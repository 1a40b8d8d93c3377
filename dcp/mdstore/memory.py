"""
In-memory collaborators for tests and standalone use.

- InMemoryIndexer: records reindex/removal requests
- InMemoryUserDirectory: fixed set of users

Invariants:
    - All data is lost on process exit
    - Behaviour matches the contracts in contracts.py
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from .contracts import User

logger = logging.getLogger(__name__)


class InMemoryIndexer:
    """SearchIndexer that remembers what it was asked to do."""

    def __init__(self) -> None:
        self.pending: Set[int] = set()
        self.removed: List[int] = []

    def queue_reindex(self, record_id: int) -> None:
        self.pending.add(record_id)
        logger.debug(f"Queued reindex for record {record_id}")

    def remove_from_index(self, record_id: int) -> None:
        self.pending.discard(record_id)
        self.removed.append(record_id)


class InMemoryUserDirectory:
    """UserDirectory over a fixed collection of users.

    Example:
        >>> users = InMemoryUserDirectory([User(7, "alice")])
        >>> users.resolve_user("alice")
        7
    """

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._by_id: Dict[int, User] = {}
        for user in users:
            self.add(user)

    def add(self, user: User) -> None:
        if user.user_id is None:
            raise ValueError("Anonymous user cannot be added to a directory")
        self._by_id[user.user_id] = user

    def get(self, user_id: int) -> Optional[User]:
        return self._by_id.get(user_id)

    def user_name(self, user_id: int) -> Optional[str]:
        user = self._by_id.get(user_id)
        return user.name if user else None

    def resolve_user(self, name: str) -> Optional[int]:
        for user in self._by_id.values():
            if user.name == name:
                return user.user_id
        return None

    def user_exists(self, user_id: int) -> bool:
        return user_id in self._by_id
