"""
Process-local memo cache with a single invalidation entry point.

Components memoize derived data (field lists, name lookups, user classes,
"does a viewing rule reference field F") under a scope string. Every
mutator calls invalidate() with the narrowest scope it affected, or with
no scope to drop everything.

Scopes are hierarchical on ":" boundaries: invalidating "schema:3" also
drops "schema:3:fields" and "schema:3:names", but not "schema:31".

Invariants:
    - No caller observes a memoized value computed before an
      invalidate() of an enclosing scope
    - The cache is never shared across processes
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheService:
    """Scoped memoization.

    Example:
        >>> cache = CacheService()
        >>> cache.memoize("schema:0:fields", "all", lambda: [1, 2])
        [1, 2]
        >>> cache.invalidate("schema:0")
        >>> cache.get("schema:0:fields", "all") is None
        True
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[Hashable, Any]] = {}
        self._hits = 0
        self._misses = 0

    @property
    def stats(self) -> dict[str, int]:
        return {"hits": self._hits, "misses": self._misses, "scopes": len(self._entries)}

    def get(self, scope: str, key: Hashable, default: Any = None) -> Any:
        entries = self._entries.get(scope)
        if entries is None or key not in entries:
            return default
        return entries[key]

    def put(self, scope: str, key: Hashable, value: Any) -> None:
        self._entries.setdefault(scope, {})[key] = value

    def memoize(self, scope: str, key: Hashable, compute: Callable[[], T]) -> T:
        """Return the cached value, computing and storing it on a miss."""
        entries = self._entries.setdefault(scope, {})
        if key in entries:
            self._hits += 1
            return entries[key]
        self._misses += 1
        value = compute()
        entries[key] = value
        return value

    def invalidate(self, scope: str | None = None) -> None:
        """Drop cached values for a scope and every scope nested under it.

        Args:
            scope: Scope to drop, or None to drop everything
        """
        if scope is None:
            self._entries.clear()
            logger.debug("Invalidated all cached values")
            return
        prefix = scope + ":"
        for name in [s for s in self._entries if s == scope or s.startswith(prefix)]:
            del self._entries[name]
        logger.debug(f"Invalidated cache scope {scope}")
