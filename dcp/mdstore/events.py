"""
Change notification for the metadata store.

A single EventBus carries every change event. Publishers name a kind
(SET, CLEAR, ADD, REMOVE) and a scope string; subscribers register a
handler for a scope, or for WILDCARD to see everything.

Scopes in use:
    record              record lifecycle (ADD on create, REMOVE on destroy,
                        SET once deferred housekeeping has run)
    field:<field_id>    value changes for one field on any record
    schema:<schema_id>  fields added to or removed from a schema

Invariants:
    - Handlers run synchronously, in subscription order
    - A failing handler is logged and does not stop later handlers or the
      write that triggered it
    - Payloads are plain dicts; handlers must not mutate them
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

WILDCARD = "*"
RECORD_SCOPE = "record"


class EventKind(enum.Enum):
    """What happened to a value or entity."""

    SET = "set"
    CLEAR = "clear"
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class Event:
    """A published change.

    Attributes:
        kind: Kind of change
        scope: Scope the event was published to
        payload: Event details (record_id, field_id, value, ...)
        occurred_at: UTC time of publication
    """

    kind: EventKind
    scope: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Event], None]


def field_scope(field_id: int) -> str:
    return f"field:{field_id}"


def schema_scope(schema_id: int) -> str:
    return f"schema:{schema_id}"


class EventBus:
    """In-process publish/subscribe bus.

    Example:
        >>> bus = EventBus()
        >>> seen = []
        >>> bus.subscribe(field_scope(12), seen.append)
        >>> bus.publish(EventKind.SET, field_scope(12), {"record_id": 5})
        >>> seen[0].payload["record_id"]
        5
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._published = 0

    @property
    def published_count(self) -> int:
        """Number of events published since creation."""
        return self._published

    def subscribe(self, scope: str, handler: Handler) -> None:
        self._subs.setdefault(scope, []).append(handler)

    def unsubscribe(self, scope: str, handler: Handler) -> bool:
        handlers = self._subs.get(scope)
        if not handlers:
            return False
        try:
            handlers.remove(handler)
            if not handlers:
                del self._subs[scope]
            return True
        except ValueError:
            return False

    def publish(self, kind: EventKind, scope: str, payload: Dict[str, Any] | None = None) -> Event:
        """Publish an event to subscribers of its scope and of WILDCARD.

        Args:
            kind: Kind of change
            scope: Scope string
            payload: Event details

        Returns:
            The published event
        """
        event = Event(kind=kind, scope=scope, payload=dict(payload or {}))
        self._published += 1

        handlers = list(self._subs.get(scope, []))
        if scope != WILDCARD:
            handlers.extend(self._subs.get(WILDCARD, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    f"Event handler failed for {kind.value} on {scope}",
                    extra={"scope": scope, "kind": kind.value},
                )
        return event
