"""
Contracts for collaborators outside the metadata store.

The store depends on these behaviours but not on any implementation:
- PrivilegeEvaluator: decides whether a user meets a rule set
- TermFactory: resolves and creates vocabulary terms for one field
- TaskQueue: accepts deferred units of work keyed for coalescing
- SearchIndexer: keeps a search/recommender index in step with records
- UserDirectory: maps user ids to names and back

Invariants:
    - The store only calls the methods declared here
    - Implementations may be swapped without touching store code

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    FrozenSet,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from .records.record import Record


@dataclass(frozen=True)
class User:
    """The acting user as the store sees it.

    Attributes:
        user_id: User identifier, None for the anonymous user
        name: Login name
        email: Email address
        privileges: Privilege flags the user holds
    """

    user_id: Optional[int] = None
    name: str = ""
    email: str = ""
    privileges: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def anonymous(cls) -> User:
        return cls()

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    def has_privilege(self, privilege: int) -> bool:
        return privilege in self.privileges


@runtime_checkable
class PrivilegeEvaluator(Protocol):
    """Rule set deciding access for a user, optionally against a record."""

    @abstractmethod
    def meets_requirements(self, user: User, record: Optional[Record] = None) -> bool:
        """Whether the user satisfies the rules (for the record, if given)."""
        ...

    @abstractmethod
    def checks_field(self, field_id: int) -> bool:
        """Whether any rule references the field."""
        ...

    @abstractmethod
    def fields_with_user_comparisons(self, operator: Optional[str] = None) -> set[int]:
        """Fields whose rules compare values against the acting user."""
        ...

    @abstractmethod
    def privilege_flags_checked(self) -> set[int]:
        """Privilege flags the rules look at."""
        ...


@runtime_checkable
class TermFactory(Protocol):
    """Vocabulary for one field."""

    @abstractmethod
    def resolve_name(self, name: str) -> Optional[int]:
        """Id of the term with this name, or None."""
        ...

    @abstractmethod
    def id_exists(self, term_id: int) -> bool:
        ...

    @abstractmethod
    def create(self, name: str) -> int:
        """Create the term (or return the existing one) and return its id."""
        ...


@runtime_checkable
class TaskQueue(Protocol):
    """Deferred work with at most one pending unit per key."""

    @abstractmethod
    def enqueue_unique(
        self,
        key: str,
        callback: str,
        params: Mapping[str, Any],
        merge: Optional[Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]] = None,
        priority: int = 0,
        description: str = "",
    ) -> bool:
        """Queue work unless an equivalent unit is pending.

        Returns:
            True if a new unit was queued, False if an existing one was
            kept (after merging parameters)
        """
        ...

    @abstractmethod
    def cancel(self, key: str) -> bool:
        ...


@runtime_checkable
class SearchIndexer(Protocol):
    """Search and recommender index maintenance."""

    @abstractmethod
    def queue_reindex(self, record_id: int) -> None:
        ...

    @abstractmethod
    def remove_from_index(self, record_id: int) -> None:
        ...


@runtime_checkable
class UserDirectory(Protocol):
    """Lookup of users referenced by User fields."""

    @abstractmethod
    def user_name(self, user_id: int) -> Optional[str]:
        ...

    @abstractmethod
    def resolve_user(self, name: str) -> Optional[int]:
        ...

    @abstractmethod
    def user_exists(self, user_id: int) -> bool:
        ...
