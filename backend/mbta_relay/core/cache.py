"""Incremental resource cache: store, indexes, projections and change events."""

import logging
from collections.abc import Iterable
from contextlib import contextmanager
from typing import Any

from mbta_relay.core.broadcaster import Broadcaster, CacheEvent, Entry, Listener
from mbta_relay.core.indexes import SecondaryIndexes
from mbta_relay.core.projections import ProjectionRegistry, default_registry
from mbta_relay.core.store import ResourceStore
from mbta_relay.schemas.resource import (
    Resource,
    ResourceIdentifier,
    document_errors,
    flatten_document,
)

logger = logging.getLogger(__name__)


def _route_type(route: Resource) -> int | None:
    value = route.attributes.get("type")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _stop_name(stop: Resource) -> str | None:
    return stop.attributes.get("name") or None


class ResourceCache:
    """Owns the store and indexes and keeps them consistent with every mutation.

    All mutations run to completion synchronously; events for a mutation are
    published only after its store and index writes are applied. Every
    other component reads through the accessors below.
    """

    def __init__(
        self,
        registry: ProjectionRegistry | None = None,
        *,
        dedupe_stop_names: bool = True,
    ) -> None:
        self.registry = registry if registry is not None else default_registry()
        self.store = ResourceStore()
        self.indexes = SecondaryIndexes()
        self.broadcaster = Broadcaster()
        self.dedupe_stop_names = dedupe_stop_names

        # kind -> resource id -> last emitted entry
        self._entries: dict[str, dict[str, Entry]] = {}
        # stop name -> id of the stop that claimed it
        self._stop_names: dict[str, str] = {}

        self._batch_depth = 0
        self._changed_kinds: set[str] = set()
        # route id -> its type when the current batch started
        self._route_types_before: dict[str, int | None] = {}
        # bumped on every route type change; entries published since the
        # last bump were matched against the current route types
        self._type_epoch = 0
        self._published: dict[tuple[str, str], int] = {}

    # -- readers ---------------------------------------------------------

    def entries(self, kind: str) -> list[Entry]:
        return list(self._entries.get(kind, {}).values())

    def entry(self, kind: str, id: str) -> Entry | None:
        return self._entries.get(kind, {}).get(id)

    def subscribe(self, listener: Listener) -> int:
        return self.broadcaster.subscribe(listener)

    def unsubscribe(self, handle: int) -> None:
        self.broadcaster.unsubscribe(handle)

    # -- mutations -------------------------------------------------------

    def reset(self, resources: Iterable[Resource], kinds: Iterable[str] = ()) -> None:
        """Replace every kind present in ``resources`` (and in ``kinds``) wholesale."""
        by_kind: dict[str, list[Resource]] = {kind: [] for kind in kinds}
        for resource in resources:
            by_kind.setdefault(resource.kind, []).append(resource)

        with self._batch():
            for kind, batch in by_kind.items():
                self._clear_kind(kind)
                claimed: set[str] = set()
                for resource in batch:
                    if kind == "stop" and self.dedupe_stop_names:
                        name = _stop_name(resource)
                        if name is not None:
                            if name in claimed:
                                logger.debug("Dropping stop %s: duplicate name %r", resource.id, name)
                                continue
                            claimed.add(name)
                    self._store_put(resource)

            for kind, batch in by_kind.items():
                logger.debug("Reset %s with %d resources", kind, len(batch))
                if not self.registry.is_projected(kind):
                    continue
                bucket: dict[str, Entry] = {}
                for resource, projection in self.registry.map_many(kind, self.store):
                    entry = Entry.from_projection(kind, resource.id, projection)
                    bucket[resource.id] = entry
                    self._index(entry)
                self._entries[kind] = bucket
                self._publish(CacheEvent("reset", kind, entries=tuple(bucket.values())))
            self._changed_kinds.update(by_kind)

    def add(self, resource: Resource) -> None:
        if resource.identifier in self.store:
            self.update(resource)
            return
        if self._is_duplicate_stop(resource):
            logger.debug("Dropping stop %s: duplicate name %r", resource.id, _stop_name(resource))
            return
        with self._batch():
            self._store_put(resource)
            self._emit(resource, always=True)
            self._changed_kinds.add(resource.kind)

    def update(self, resource: Resource) -> None:
        """Replace a snapshot and emit, whether or not its content changed."""
        if resource.identifier not in self.store:
            self.add(resource)
            return
        with self._batch():
            self._store_put(resource)
            self._emit(resource, always=True)
            self._changed_kinds.add(resource.kind)

    def remove(self, identifier: ResourceIdentifier) -> None:
        if identifier not in self.store:
            logger.debug("Ignoring remove of unknown %s %s", identifier.kind, identifier.id)
            return
        with self._batch():
            self._store_delete(identifier.kind, identifier.id)
            previous = self._entries.get(identifier.kind, {}).pop(identifier.id, None)
            if previous is not None:
                self._unindex(previous)
                self._publish(CacheEvent("remove", identifier.kind, entry=previous))
            self._changed_kinds.add(identifier.kind)

    def apply(self, kind: str, event_name: str, payload: Any) -> None:
        """Apply one event from an upstream stream of ``kind`` resources."""
        if event_name == "reset":
            self.reset([Resource.from_json(item) for item in payload or []], kinds=(kind,))
        elif event_name == "add":
            self.add(Resource.from_json(payload))
        elif event_name == "update":
            self.update(Resource.from_json(payload))
        elif event_name == "remove":
            self.remove(ResourceIdentifier.from_json(payload))
        else:
            logger.warning("Ignoring unknown %s stream event %r", kind, event_name)

    def reconcile(
        self,
        document: dict,
        kinds: Iterable[str] = (),
        scope: Iterable[ResourceIdentifier] | None = None,
    ) -> set[ResourceIdentifier] | None:
        """Diff a fetched document against the store.

        Absent resources are added, changed ones updated, identical ones left
        alone. Identifiers in ``scope`` that the document no longer contains
        are removed; by default the scope is every stored resource of the
        kinds the document touches plus ``kinds``. Returns the identifiers
        seen, or ``None`` for an error document (the cache is left as is).
        """
        errors = document_errors(document)
        if errors is not None:
            logger.error("Upstream returned an error document: %s", errors)
            return None

        seen: dict[ResourceIdentifier, Resource] = {}
        for resource in flatten_document(document):
            seen[resource.identifier] = resource

        if scope is None:
            touched = set(kinds) | {i.kind for i in seen}
            scope = [r.identifier for kind in touched for r in self.store.get_all(kind)]

        added = updated = removed = 0
        with self._batch():
            for identifier, resource in seen.items():
                current = self.store.get(identifier.kind, identifier.id)
                if current is None:
                    self.add(resource)
                    added += 1
                elif current != resource:
                    self.update(resource)
                    updated += 1
            for identifier in sorted(set(scope)):
                if identifier not in seen and identifier in self.store:
                    self.remove(identifier)
                    removed += 1

        logger.debug(
            "Reconciled %d resources: %d added, %d updated, %d removed",
            len(seen), added, updated, removed,
        )
        return set(seen)

    # -- internals -------------------------------------------------------

    @contextmanager
    def _batch(self):
        """Defer dependent recomputation until the outermost mutation finishes."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                if self._changed_kinds:
                    changed, self._changed_kinds = self._changed_kinds, set()
                    self._refresh(changed)
                self._republish_retyped()

    def _refresh(self, changed_kinds: set[str]) -> None:
        """Recompute projections that read one of ``changed_kinds``."""
        for kind in self.registry.dependents(changed_kinds):
            for resource in self.store.get_all(kind):
                self._emit(resource, always=False)

    def _republish_retyped(self) -> None:
        """Publish an update for entries linked to a route whose type changed.

        Route types decide filter visibility, so listeners re-evaluate these
        entries. Entries already published after the last type change are
        skipped.
        """
        before, self._route_types_before = self._route_types_before, {}
        published, self._published = self._published, {}
        pending: dict[tuple[str, str], Entry] = {}
        for route_id, previous_type in before.items():
            if self.indexes.route_type_of(route_id) == previous_type:
                continue
            logger.debug(
                "Route %s type changed from %s to %s",
                route_id, previous_type, self.indexes.route_type_of(route_id),
            )
            for kind in self.registry.kinds():
                for id in self.indexes.route_index(kind, route_id):
                    if kind == "route" and id == route_id:
                        continue
                    if published.get((kind, id)) == self._type_epoch:
                        continue
                    entry = self.entry(kind, id)
                    if entry is not None:
                        pending[(kind, id)] = entry
        for (kind, id), entry in sorted(pending.items()):
            self.broadcaster.publish(CacheEvent("update", kind, entry=entry, previous=entry))

    def _emit(self, resource: Resource, *, always: bool) -> None:
        """Re-project one stored resource and publish the resulting change.

        With ``always`` unset nothing is published when the entry is
        unchanged.
        """
        kind = resource.kind
        if not self.registry.is_projected(kind):
            return
        bucket = self._entries.setdefault(kind, {})
        previous = bucket.get(resource.id)
        projection = self.registry.map(resource, self.store)

        if projection is None:
            if previous is not None:
                del bucket[resource.id]
                self._unindex(previous)
                self._publish(CacheEvent("remove", kind, entry=previous))
            return

        entry = Entry.from_projection(kind, resource.id, projection)
        if not always and entry == previous:
            return
        if previous is not None:
            self._unindex(previous)
        self._index(entry)
        bucket[resource.id] = entry
        if previous is None:
            self._publish(CacheEvent("add", kind, entry=entry))
        else:
            self._publish(CacheEvent("update", kind, entry=entry, previous=previous))

    def _is_duplicate_stop(self, resource: Resource) -> bool:
        if resource.kind != "stop" or not self.dedupe_stop_names:
            return False
        name = _stop_name(resource)
        if name is None:
            return False
        owner = self._stop_names.get(name)
        return owner is not None and owner != resource.id

    def _store_put(self, resource: Resource) -> None:
        previous = self.store.put(resource)
        if resource.kind == "route":
            self._retype(resource.id, _route_type(resource))
        elif resource.kind == "stop":
            if previous is not None:
                self._release_stop_name(previous)
            name = _stop_name(resource)
            if name is not None:
                self._stop_names.setdefault(name, resource.id)

    def _store_delete(self, kind: str, id: str) -> Resource | None:
        resource = self.store.delete(kind, id)
        if resource is None:
            return None
        if kind == "route":
            self._retype(id, None)
        elif kind == "stop":
            self._release_stop_name(resource)
        return resource

    def _retype(self, route_id: str, route_type: int | None) -> None:
        current = self.indexes.route_type_of(route_id)
        if current == route_type:
            return
        self._route_types_before.setdefault(route_id, current)
        self._type_epoch += 1
        self.indexes.set_route_type(route_id, route_type)

    def _release_stop_name(self, stop: Resource) -> None:
        name = _stop_name(stop)
        if name is not None and self._stop_names.get(name) == stop.id:
            del self._stop_names[name]

    def _clear_kind(self, kind: str) -> None:
        self.store.clear(kind)
        self.indexes.clear(kind)
        self._entries.pop(kind, None)
        if kind == "route":
            for route_id in sorted(self.indexes.typed_route_ids()):
                self._retype(route_id, None)
        elif kind == "stop":
            self._stop_names.clear()

    def _index(self, entry: Entry) -> None:
        self.indexes.index_add(entry.kind, entry.id, entry.route_ids, entry.stop_id)

    def _unindex(self, entry: Entry) -> None:
        self.indexes.index_remove(entry.kind, entry.id, entry.route_ids, entry.stop_id)

    def _publish(self, event: CacheEvent) -> None:
        for entry in (*event.entries, event.entry):
            if entry is not None:
                self._published[(entry.kind, entry.id)] = self._type_epoch
        self.broadcaster.publish(event)

    def get_diagnostics(self) -> dict:
        kinds = sorted(set(self.store.kinds()) | set(self._entries))
        return {
            "resources_total": len(self.store),
            "kinds": {
                kind: {
                    "stored": self.store.count(kind),
                    "projected": len(self._entries.get(kind, {})),
                }
                for kind in kinds
            },
            "listeners": len(self.broadcaster),
            "typed_routes": len(self.indexes.typed_route_ids()),
        }
