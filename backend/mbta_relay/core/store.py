"""In-memory multi-map of the latest snapshot of every tracked resource."""

import logging

from mbta_relay.schemas.resource import Resource, ResourceIdentifier

logger = logging.getLogger(__name__)


class ResourceStore:
    """Resources keyed by (kind, id), one keyspace per kind.

    Alongside the snapshots the store keeps a reverse relationship index
    (referrer kind -> relationship -> target id -> referrer ids) so that
    joins such as "trips of a route" are lookups instead of full scans.
    """

    def __init__(self) -> None:
        self._resources: dict[str, dict[str, Resource]] = {}
        self._referrers: dict[str, dict[str, dict[str, dict[str, None]]]] = {}

    def get(self, kind: str, id: str) -> Resource | None:
        return self._resources.get(kind, {}).get(id)

    def get_all(self, kind: str) -> list[Resource]:
        return list(self._resources.get(kind, {}).values())

    def kinds(self) -> list[str]:
        return [k for k, bucket in self._resources.items() if bucket]

    def count(self, kind: str) -> int:
        return len(self._resources.get(kind, {}))

    def put(self, resource: Resource) -> Resource | None:
        """Store a snapshot, returning the one it replaced."""
        bucket = self._resources.setdefault(resource.kind, {})
        previous = bucket.get(resource.id)
        if previous is not None:
            self._unlink(previous)
        bucket[resource.id] = resource
        self._link(resource)
        return previous

    def delete(self, kind: str, id: str) -> Resource | None:
        bucket = self._resources.get(kind)
        if not bucket or id not in bucket:
            return None
        resource = bucket.pop(id)
        self._unlink(resource)
        return resource

    def clear(self, kind: str) -> list[Resource]:
        """Drop a whole kind partition."""
        removed = list(self._resources.pop(kind, {}).values())
        self._referrers.pop(kind, None)
        if removed:
            logger.debug("Cleared %d %s resources", len(removed), kind)
        return removed

    def referencing(self, kind: str, relationship: str, target_id: str) -> list[Resource]:
        """Resources of ``kind`` whose ``relationship`` points at ``target_id``."""
        ids = self._referrers.get(kind, {}).get(relationship, {}).get(target_id, {})
        bucket = self._resources.get(kind, {})
        return [bucket[i] for i in ids if i in bucket]

    def __contains__(self, identifier: ResourceIdentifier) -> bool:
        return identifier.id in self._resources.get(identifier.kind, {})

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._resources.values())

    def _link(self, resource: Resource) -> None:
        by_rel = self._referrers.setdefault(resource.kind, {})
        for name in resource.relationships:
            for target in resource.related_all(name):
                by_rel.setdefault(name, {}).setdefault(target.id, {})[resource.id] = None

    def _unlink(self, resource: Resource) -> None:
        by_rel = self._referrers.get(resource.kind)
        if not by_rel:
            return
        for name in resource.relationships:
            targets = by_rel.get(name)
            if targets is None:
                continue
            for target in resource.related_all(name):
                ids = targets.get(target.id)
                if ids is None:
                    continue
                ids.pop(resource.id, None)
                if not ids:
                    del targets[target.id]
            if not targets:
                del by_rel[name]
