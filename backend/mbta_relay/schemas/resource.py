"""JSON:API resource snapshots as received from the MBTA v3 API."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, NamedTuple


class RouteType(IntEnum):
    LIGHT_RAIL = 0
    HEAVY_RAIL = 1
    COMMUTER_RAIL = 2
    BUS = 3
    FERRY = 4


class ResourceIdentifier(NamedTuple):
    kind: str
    id: str

    @classmethod
    def from_json(cls, payload: dict) -> "ResourceIdentifier":
        return cls(kind=str(payload["type"]), id=str(payload["id"]))

    def to_json(self) -> dict:
        return {"type": self.kind, "id": self.id}


Linkage = ResourceIdentifier | tuple[ResourceIdentifier, ...] | None


def _parse_linkage(relationship: Any) -> Linkage:
    """Extract the ``data`` member of a JSON:API relationship object."""
    if not isinstance(relationship, dict):
        return None
    data = relationship.get("data")
    if data is None:
        return None
    if isinstance(data, list):
        return tuple(ResourceIdentifier.from_json(d) for d in data)
    return ResourceIdentifier.from_json(data)


@dataclass(frozen=True)
class Resource:
    """Immutable snapshot of one upstream resource.

    Every mutation replaces the whole object; equality is deep equality of
    kind, id, attributes and relationships.
    """

    kind: str
    id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    relationships: dict[str, Linkage] = field(default_factory=dict)

    @property
    def identifier(self) -> ResourceIdentifier:
        return ResourceIdentifier(self.kind, self.id)

    def related(self, name: str) -> ResourceIdentifier | None:
        linkage = self.relationships.get(name)
        if linkage is None or isinstance(linkage, ResourceIdentifier):
            return linkage
        return linkage[0] if linkage else None

    def related_all(self, name: str) -> tuple[ResourceIdentifier, ...]:
        linkage = self.relationships.get(name)
        if linkage is None:
            return ()
        if isinstance(linkage, ResourceIdentifier):
            return (linkage,)
        return linkage

    @classmethod
    def from_json(cls, payload: dict) -> "Resource":
        relationships = {
            name: _parse_linkage(rel)
            for name, rel in (payload.get("relationships") or {}).items()
        }
        return cls(
            kind=str(payload["type"]),
            id=str(payload["id"]),
            attributes=dict(payload.get("attributes") or {}),
            relationships=relationships,
        )

    def to_json(self) -> dict:
        relationships = {}
        for name, linkage in self.relationships.items():
            if linkage is None:
                data = None
            elif isinstance(linkage, ResourceIdentifier):
                data = linkage.to_json()
            else:
                data = [i.to_json() for i in linkage]
            relationships[name] = {"data": data}
        return {
            "type": self.kind,
            "id": self.id,
            "attributes": self.attributes,
            "relationships": relationships,
        }


def document_errors(document: dict) -> list | None:
    """Return the ``errors`` member of an error document, if any."""
    errors = document.get("errors")
    if errors is None:
        return None
    return errors if isinstance(errors, list) else [errors]


def flatten_document(document: dict) -> list[Resource]:
    """Primary data followed by included resources."""
    data = document.get("data")
    if data is None:
        items = []
    elif isinstance(data, list):
        items = list(data)
    else:
        items = [data]
    items.extend(document.get("included") or [])
    return [Resource.from_json(item) for item in items]
