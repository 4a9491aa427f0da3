"""Reverse indexes from routes, stops and route types to resource ids."""

from collections.abc import Iterable


class SecondaryIndexes:
    """Route/stop/route-type buckets, maintained by the cache on every mutation.

    Invariant: a resource id sits in a route (stop) bucket exactly when the
    linkage of its current projection names that route (stop). Empty
    buckets are dropped.
    """

    def __init__(self) -> None:
        self._by_route: dict[str, dict[str, set[str]]] = {}
        self._by_stop: dict[str, dict[str, set[str]]] = {}
        self._route_types: dict[str, int] = {}
        self._by_route_type: dict[int, set[str]] = {}

    def index_add(
        self, kind: str, resource_id: str, route_ids: Iterable[str], stop_id: str | None
    ) -> None:
        for route_id in route_ids:
            self._by_route.setdefault(kind, {}).setdefault(route_id, set()).add(resource_id)
        if stop_id is not None:
            self._by_stop.setdefault(kind, {}).setdefault(stop_id, set()).add(resource_id)

    def index_remove(
        self, kind: str, resource_id: str, route_ids: Iterable[str], stop_id: str | None
    ) -> None:
        _discard(self._by_route, kind, route_ids, resource_id)
        if stop_id is not None:
            _discard(self._by_stop, kind, (stop_id,), resource_id)

    def route_index(self, kind: str, route_id: str) -> frozenset[str]:
        return frozenset(self._by_route.get(kind, {}).get(route_id, ()))

    def stop_index(self, kind: str, stop_id: str) -> frozenset[str]:
        return frozenset(self._by_stop.get(kind, {}).get(stop_id, ()))

    def stopped_ids(self, kind: str) -> frozenset[str]:
        """Every id of ``kind`` that has a stop linkage."""
        ids: set[str] = set()
        for bucket in self._by_stop.get(kind, {}).values():
            ids |= bucket
        return frozenset(ids)

    def set_route_type(self, route_id: str, route_type: int | None) -> None:
        self.drop_route_type(route_id)
        if route_type is None:
            return
        self._route_types[route_id] = route_type
        self._by_route_type.setdefault(route_type, set()).add(route_id)

    def drop_route_type(self, route_id: str) -> None:
        previous = self._route_types.pop(route_id, None)
        if previous is None:
            return
        bucket = self._by_route_type.get(previous)
        if bucket is not None:
            bucket.discard(route_id)
            if not bucket:
                del self._by_route_type[previous]

    def route_type_of(self, route_id: str) -> int | None:
        return self._route_types.get(route_id)

    def route_type_index(self, route_type: int) -> frozenset[str]:
        return frozenset(self._by_route_type.get(route_type, ()))

    def typed_route_ids(self) -> frozenset[str]:
        return frozenset(self._route_types)

    def clear(self, kind: str) -> None:
        self._by_route.pop(kind, None)
        self._by_stop.pop(kind, None)

    def as_dict(self) -> dict:
        return {
            "routes": {
                kind: {r: sorted(ids) for r, ids in buckets.items()}
                for kind, buckets in self._by_route.items() if buckets
            },
            "stops": {
                kind: {s: sorted(ids) for s, ids in buckets.items()}
                for kind, buckets in self._by_stop.items() if buckets
            },
            "route_types": {t: sorted(ids) for t, ids in self._by_route_type.items()},
        }


def _discard(
    index: dict[str, dict[str, set[str]]], kind: str, keys: Iterable[str], resource_id: str
) -> None:
    buckets = index.get(kind)
    if not buckets:
        return
    for key in keys:
        bucket = buckets.get(key)
        if bucket is None:
            continue
        bucket.discard(resource_id)
        if not bucket:
            del buckets[key]
    if not buckets:
        del index[kind]
