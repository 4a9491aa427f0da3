"""Per-connection filters and the diffing that keeps each client in sync."""

import asyncio
import logging
from dataclasses import dataclass

import orjson
from pydantic import ValidationError

from mbta_relay.core.broadcaster import CacheEvent, Entry
from mbta_relay.core.cache import ResourceCache
from mbta_relay.core.indexes import SecondaryIndexes
from mbta_relay.schemas.messages import FilterMessage, OutboundMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Filter:
    """What one connection wants to see.

    ``None`` route ids / route types leave that dimension unconstrained; an
    empty ``stop_ids`` means no stop constraint.
    """

    kinds: frozenset[str]
    route_ids: frozenset[str] | None = None
    route_types: frozenset[int] | None = None
    stop_ids: frozenset[str] = frozenset()

    @classmethod
    def from_message(cls, message: FilterMessage) -> "Filter":
        return cls(
            kinds=frozenset(message.kinds),
            route_ids=frozenset(message.routeIds) if message.routeIds is not None else None,
            route_types=frozenset(message.routeTypes) if message.routeTypes is not None else None,
            stop_ids=frozenset(message.stopIds or ()),
        )


def route_allowed(flt: Filter, route_id: str, indexes: SecondaryIndexes) -> bool:
    if flt.route_ids is not None and route_id not in flt.route_ids:
        return False
    route_type = indexes.route_type_of(route_id)
    if route_type is None:
        return False
    return flt.route_types is None or route_type in flt.route_types


def matches(flt: Filter, entry: Entry, indexes: SecondaryIndexes) -> bool:
    if entry.kind not in flt.kinds:
        return False
    if entry.route_ids and not any(route_allowed(flt, r, indexes) for r in entry.route_ids):
        return False
    if entry.stop_id is not None and flt.stop_ids and entry.stop_id not in flt.stop_ids:
        return False
    return True


def allowed_routes(flt: Filter, indexes: SecondaryIndexes) -> frozenset[str]:
    """Route ids for which ``route_allowed`` holds, resolved through the indexes."""
    if flt.route_types is None:
        routes = set(indexes.typed_route_ids())
    else:
        routes = set()
        for route_type in flt.route_types:
            routes |= indexes.route_type_index(route_type)
    if flt.route_ids is not None:
        routes &= flt.route_ids
    return frozenset(routes)


def visible_entries(flt: Filter, kind: str, cache: ResourceCache) -> list[Entry]:
    if kind not in flt.kinds:
        return []
    return [e for e in cache.entries(kind) if matches(flt, e, cache.indexes)]


def _candidates(old: Filter, new: Filter, kind: str, indexes: SecondaryIndexes) -> set[str]:
    """Ids of ``kind`` whose visibility may differ between the two filters."""
    candidates: set[str] = set()
    for route_id in allowed_routes(old, indexes) ^ allowed_routes(new, indexes):
        candidates |= indexes.route_index(kind, route_id)
    if bool(old.stop_ids) != bool(new.stop_ids):
        candidates |= indexes.stopped_ids(kind)
    else:
        for stop_id in old.stop_ids ^ new.stop_ids:
            candidates |= indexes.stop_index(kind, stop_id)
    return candidates


def filter_diff(
    old: Filter, new: Filter, cache: ResourceCache
) -> dict[str, tuple[list[Entry], list[Entry]]]:
    """Per kind, the entries that become visible and those that become hidden."""
    diff: dict[str, tuple[list[Entry], list[Entry]]] = {}
    for kind in sorted(old.kinds | new.kinds):
        if not cache.registry.is_projected(kind):
            continue
        if kind not in old.kinds:
            shown, hidden = visible_entries(new, kind, cache), []
        elif kind not in new.kinds:
            shown, hidden = [], visible_entries(old, kind, cache)
        else:
            shown, hidden = [], []
            for id in sorted(_candidates(old, new, kind, cache.indexes)):
                entry = cache.entry(kind, id)
                if entry is None:
                    continue
                was = matches(old, entry, cache.indexes)
                now = matches(new, entry, cache.indexes)
                if now and not was:
                    shown.append(entry)
                elif was and not now:
                    hidden.append(entry)
        if shown or hidden:
            diff[kind] = (shown, hidden)
    return diff


class Subscription:
    """One connection's view of the cache.

    Outbound messages are queued as dicts; the connection handler drains
    ``queue``. Nothing is sent until the first filter arrives. The ids the
    client currently holds are tracked per kind, so removals reach the
    client even when the index no longer says the entry was visible.
    """

    def __init__(self, cache: ResourceCache, queue_size: int = 1000) -> None:
        self.cache = cache
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.filter: Filter | None = None
        # kind -> ids delivered to the client and not removed since
        self.delivered: dict[str, set[str]] = {}
        self._handle: int | None = cache.subscribe(self.handle)

    def close(self) -> None:
        if self._handle is not None:
            self.cache.unsubscribe(self._handle)
            self._handle = None

    @property
    def closed(self) -> bool:
        return self._handle is None

    def receive(self, raw: str | bytes) -> bool:
        """Handle one inbound message; invalid ones leave the filter unchanged."""
        try:
            message = FilterMessage.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring invalid filter message: %s", e)
            return False
        self.set_filter(Filter.from_message(message))
        return True

    def set_filter(self, new: Filter) -> None:
        old, self.filter = self.filter, new
        if old is None:
            self._send_resets()
            return
        for kind, (shown, hidden) in filter_diff(old, new, self.cache).items():
            for entry in hidden:
                if entry.id in self.delivered.get(kind, ()):
                    if not self._send_remove(kind, entry.id):
                        return
            for entry in shown:
                if entry.id not in self.delivered.get(kind, ()):
                    if not self._send_add(kind, entry):
                        return
        for kind in set(self.delivered) - new.kinds:
            del self.delivered[kind]

    def handle(self, event: CacheEvent) -> None:
        flt = self.filter
        if flt is None or event.kind not in flt.kinds:
            return
        indexes = self.cache.indexes
        if event.event == "reset":
            visible = [e for e in event.entries if matches(flt, e, indexes)]
            if self._send("reset", event.kind, [e.view for e in visible]):
                self.delivered[event.kind] = {e.id for e in visible}
            return

        entry = event.entry
        held = entry.id in self.delivered.get(event.kind, ())
        if event.event == "remove":
            if held:
                self._send_remove(event.kind, entry.id)
            return
        now = matches(flt, entry, indexes)
        if now and held:
            self._send("update", event.kind, entry.view)
        elif now:
            self._send_add(event.kind, entry)
        elif held:
            self._send_remove(event.kind, entry.id)

    def _send_add(self, kind: str, entry: Entry) -> bool:
        if not self._send("add", kind, entry.view):
            return False
        self.delivered.setdefault(kind, set()).add(entry.id)
        return True

    def _send_remove(self, kind: str, id: str) -> bool:
        if not self._send("remove", kind, {"id": id}):
            return False
        self.delivered.get(kind, set()).discard(id)
        return True

    def _send_resets(self) -> None:
        self.delivered = {}
        for kind in sorted(self.filter.kinds):
            if not self.cache.registry.is_projected(kind):
                continue
            visible = visible_entries(self.filter, kind, self.cache)
            message = OutboundMessage(event="reset", kind=kind, data=[e.view for e in visible])
            try:
                self.queue.put_nowait(message.model_dump())
            except asyncio.QueueFull:
                logger.error("Connection queue too small for a snapshot of %s", kind)
                return
            self.delivered[kind] = {e.id for e in visible}

    def _send(self, event: str, kind: str, data) -> bool:
        """Queue one message.

        Returns False when the queue was full and got replaced by a fresh
        snapshot; the caller must not queue the rest of its messages.
        """
        message = OutboundMessage(event=event, kind=kind, data=data).model_dump()
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Connection queue full, resending snapshot")
            self._resync()
            return False
        return True

    def _resync(self) -> None:
        """Replace a backed-up queue with a fresh snapshot of every tracked kind."""
        while not self.queue.empty():
            self.queue.get_nowait()
        self._send_resets()
