"""Per-kind mapping from raw resources to view models plus filter linkage.

Each mapping function receives the resource and read access to the whole
store, and rebuilds the view model from scratch. Kinds without a
registered function are stored only to resolve relationships (trips,
shapes, facilities, ...) and never reach clients.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from mbta_relay.core.store import ResourceStore
from mbta_relay.schemas.resource import Resource, ResourceIdentifier

logger = logging.getLogger(__name__)


class MissingRelationship(LookupError):
    """A resource lacks a relationship its projection requires."""

    def __init__(self, resource: Resource, name: str) -> None:
        super().__init__(f"{resource.kind} {resource.id} has no {name!r} relationship")
        self.resource = resource
        self.name = name


@dataclass(frozen=True)
class Projection:
    view: dict
    route_ids: frozenset[str] = frozenset()
    stop_id: str | None = None


ProjectionFn = Callable[[Resource, ResourceStore], Projection]


@dataclass(frozen=True)
class _Registration:
    fn: ProjectionFn
    depends_on: frozenset[str] = field(default_factory=frozenset)


class ProjectionRegistry:
    def __init__(self) -> None:
        self._registrations: dict[str, _Registration] = {}

    def register(self, kind: str, fn: ProjectionFn, depends_on: Iterable[str] = ()) -> None:
        """Register the mapping for ``kind``.

        ``depends_on`` lists the other kinds ``fn`` reads from the store; a
        change to any of them triggers a recomputation of every ``kind``
        projection.
        """
        self._registrations[kind] = _Registration(fn, frozenset(depends_on))

    def is_projected(self, kind: str) -> bool:
        return kind in self._registrations

    def kinds(self) -> list[str]:
        return list(self._registrations)

    def dependents(self, changed_kinds: Iterable[str]) -> list[str]:
        changed = set(changed_kinds)
        return [k for k, reg in self._registrations.items() if reg.depends_on & changed]

    def map(self, resource: Resource, store: ResourceStore) -> Projection | None:
        registration = self._registrations.get(resource.kind)
        if registration is None:
            return None
        try:
            return registration.fn(resource, store)
        except MissingRelationship as e:
            logger.warning("Skipping %s %s: %s", resource.kind, resource.id, e)
        except Exception:
            logger.exception("Failed to project %s %s", resource.kind, resource.id)
        return None

    def map_many(self, kind: str, store: ResourceStore) -> list[tuple[Resource, Projection]]:
        results = []
        for resource in store.get_all(kind):
            projection = self.map(resource, store)
            if projection is not None:
                results.append((resource, projection))
        return results


def _require(resource: Resource, name: str) -> ResourceIdentifier:
    linkage = resource.related(name)
    if linkage is None:
        raise MissingRelationship(resource, name)
    return linkage


def _id_of(linkage: ResourceIdentifier | None) -> str | None:
    return linkage.id if linkage is not None else None


def _routes_serving_stop(stop_id: str, store: ResourceStore) -> set[str]:
    route_ids = set()
    for trip in store.referencing("trip", "stops", stop_id):
        route = trip.related("route")
        if route is not None:
            route_ids.add(route.id)
    return route_ids


def project_route(route: Resource, store: ResourceStore) -> Projection:
    shapes: dict[str, dict] = {}
    for trip in store.referencing("trip", "route", route.id):
        shape_ref = trip.related("shape")
        if shape_ref is None or shape_ref.id in shapes:
            continue
        shape = store.get("shape", shape_ref.id)
        if shape is not None:
            shapes[shape.id] = {"id": shape.id, "polyline": shape.attributes.get("polyline")}
    view = {"id": route.id, **route.attributes, "shapes": list(shapes.values())}
    return Projection(view=view, route_ids=frozenset({route.id}))


def project_stop(stop: Resource, store: ResourceStore) -> Projection:
    """A stop is linked to every route serving it or one of its child stops."""
    children = store.referencing("stop", "parent_station", stop.id)
    route_ids = _routes_serving_stop(stop.id, store)
    for child in children:
        route_ids |= _routes_serving_stop(child.id, store)
    view = {
        "id": stop.id,
        **stop.attributes,
        "parent_station_id": _id_of(stop.related("parent_station")),
        "child_stop_ids": [c.id for c in children],
        "route_ids": sorted(route_ids),
    }
    return Projection(view=view, route_ids=frozenset(route_ids))


def project_vehicle(vehicle: Resource, store: ResourceStore) -> Projection:
    route = _require(vehicle, "route")
    view = {
        "id": vehicle.id,
        **vehicle.attributes,
        "route_id": route.id,
        "trip_id": _id_of(vehicle.related("trip")),
        "stop_id": _id_of(vehicle.related("stop")),
    }
    return Projection(view=view, route_ids=frozenset({route.id}))


def project_stop_time(resource: Resource, store: ResourceStore) -> Projection:
    """Schedules and predictions: linked to their stop and their own route."""
    stop = _require(resource, "stop")
    route = resource.related("route")
    view = {
        "id": resource.id,
        **resource.attributes,
        "route_id": _id_of(route),
        "trip_id": _id_of(resource.related("trip")),
        "stop_id": stop.id,
    }
    if resource.kind == "prediction":
        view["vehicle_id"] = _id_of(resource.related("vehicle"))
    route_ids = frozenset({route.id}) if route is not None else frozenset()
    return Projection(view=view, route_ids=route_ids, stop_id=stop.id)


def _entity_routes(entity: dict, store: ResourceStore) -> set[str] | None:
    """Routes an informed entity refers to; ``None`` when it can't be resolved.

    The first populated field that resolves wins: trip, route, facility,
    stop, route_type.
    """
    trip_id = entity.get("trip")
    if trip_id is not None:
        trip = store.get("trip", str(trip_id))
        route = trip.related("route") if trip is not None else None
        if route is not None:
            return {route.id}

    route_id = entity.get("route")
    if route_id is not None:
        return {str(route_id)}

    facility_id = entity.get("facility")
    if facility_id is not None:
        facility = store.get("facility", str(facility_id))
        stop = facility.related("stop") if facility is not None else None
        if stop is not None:
            return _routes_serving_stop(stop.id, store)

    stop_id = entity.get("stop")
    if stop_id is not None:
        return _routes_serving_stop(str(stop_id), store)

    route_type = entity.get("route_type")
    if route_type is not None:
        return {r.id for r in store.get_all("route") if r.attributes.get("type") == route_type}

    return None


def project_alert(alert: Resource, store: ResourceStore) -> Projection:
    route_ids: set[str] = set()
    for entity in alert.attributes.get("informed_entity") or []:
        resolved = _entity_routes(entity, store)
        if resolved:
            route_ids |= resolved
    view = {"id": alert.id, **alert.attributes, "route_ids": sorted(route_ids)}
    return Projection(view=view, route_ids=frozenset(route_ids))


def default_registry() -> ProjectionRegistry:
    registry = ProjectionRegistry()
    registry.register("route", project_route, depends_on=("trip", "shape"))
    registry.register("stop", project_stop, depends_on=("trip", "stop"))
    registry.register("vehicle", project_vehicle)
    registry.register("schedule", project_stop_time)
    registry.register("prediction", project_stop_time)
    registry.register("alert", project_alert, depends_on=("trip", "route", "facility"))
    return registry
