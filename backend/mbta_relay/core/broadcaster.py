"""Listener registry for cache events."""

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from mbta_relay.core.projections import Projection

logger = logging.getLogger(__name__)

EventName = Literal["reset", "add", "update", "remove"]


@dataclass(frozen=True)
class Entry:
    """Last emitted projection of one resource: view model plus linkage."""

    kind: str
    id: str
    view: dict
    route_ids: frozenset[str] = frozenset()
    stop_id: str | None = None

    @classmethod
    def from_projection(cls, kind: str, id: str, projection: Projection) -> "Entry":
        return cls(
            kind=kind,
            id=id,
            view=projection.view,
            route_ids=projection.route_ids,
            stop_id=projection.stop_id,
        )


@dataclass(frozen=True)
class CacheEvent:
    event: EventName
    kind: str
    entries: tuple[Entry, ...] = ()
    entry: Entry | None = None
    previous: Entry | None = None


Listener = Callable[[CacheEvent], None]


class Broadcaster:
    """Fans cache events out to registered listeners, one per connection."""

    def __init__(self) -> None:
        self._listeners: dict[int, Listener] = {}
        self._handles = itertools.count(1)

    def subscribe(self, listener: Listener) -> int:
        handle = next(self._handles)
        self._listeners[handle] = listener
        return handle

    def unsubscribe(self, handle: int) -> None:
        self._listeners.pop(handle, None)

    def publish(self, event: CacheEvent) -> None:
        """Deliver synchronously; a failing listener never affects the others."""
        for handle, listener in list(self._listeners.items()):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %d failed on %s %s", handle, event.event, event.kind)

    def __len__(self) -> int:
        return len(self._listeners)
