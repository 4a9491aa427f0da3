"""Tests for the change propagation engine (ResourceCache)."""

import logging

from mbta_relay.core.broadcaster import CacheEvent
from mbta_relay.core.cache import ResourceCache
from mbta_relay.schemas.resource import Resource, ResourceIdentifier


def ref(kind: str, id: str) -> ResourceIdentifier:
    return ResourceIdentifier(kind, id)


def route(id: str, type: int = 1, **attrs) -> Resource:
    return Resource("route", id, {"type": type, "long_name": f"{id} Line", **attrs})


def vehicle(id: str, route_id: str | None, **attrs) -> Resource:
    relationships = {"route": ref("route", route_id) if route_id else None}
    return Resource("vehicle", id, {"label": id, **attrs}, relationships)


def stop(id: str, name: str) -> Resource:
    return Resource("stop", id, {"name": name})


def prediction(id: str, stop_id: str, route_id: str) -> Resource:
    return Resource("prediction", id, {"status": None}, {
        "stop": ref("stop", stop_id),
        "route": ref("route", route_id),
    })


class Recorder:
    def __init__(self, cache: ResourceCache) -> None:
        self.events: list[CacheEvent] = []
        cache.subscribe(self.events.append)

    def names(self) -> list[tuple[str, str]]:
        return [(e.event, e.kind) for e in self.events]

    def clear(self) -> None:
        self.events.clear()


def assert_indexes_consistent(cache: ResourceCache) -> None:
    """Index buckets hold exactly the linkage of the current entries."""
    expected_routes: dict = {}
    expected_stops: dict = {}
    for kind in cache.registry.kinds():
        for resource in cache.store.get_all(kind):
            entry = cache.entry(kind, resource.id)
            if entry is None:
                continue
            for route_id in entry.route_ids:
                expected_routes.setdefault(kind, {}).setdefault(route_id, []).append(entry.id)
            if entry.stop_id is not None:
                expected_stops.setdefault(kind, {}).setdefault(entry.stop_id, []).append(entry.id)
        for id in [e.id for e in cache.entries(kind)]:
            assert cache.store.get(kind, id) is not None, f"entry for deleted {kind} {id}"
    actual = cache.indexes.as_dict()
    sort = lambda d: {k: {b: sorted(ids) for b, ids in v.items()} for k, v in d.items()}
    assert actual["routes"] == sort(expected_routes)
    assert actual["stops"] == sort(expected_stops)


def test_add_emits_and_indexes():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.add(route("Red"))
    cache.add(vehicle("y1", "Red"))
    assert rec.names() == [("add", "route"), ("add", "vehicle")]
    assert rec.events[1].entry.view["route_id"] == "Red"
    assert cache.indexes.route_index("vehicle", "Red") == {"y1"}
    assert cache.indexes.route_type_index(1) == {"Red"}
    assert_indexes_consistent(cache)


def test_unprojected_kind_is_stored_silently():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.add(Resource("shape", "s1", {"polyline": "xyz"}))
    assert rec.events == []
    assert cache.store.get("shape", "s1") is not None
    assert cache.entries("shape") == []


def test_update_always_emits():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(vehicle("y1", "Red"))
    rec = Recorder(cache)
    cache.update(vehicle("y1", "Red"))
    assert rec.names() == [("update", "vehicle")]
    assert rec.events[0].previous == rec.events[0].entry


def test_update_moves_index_entries():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(route("Orange"))
    cache.add(vehicle("y1", "Red"))
    cache.update(vehicle("y1", "Orange"))
    assert cache.indexes.route_index("vehicle", "Red") == frozenset()
    assert cache.indexes.route_index("vehicle", "Orange") == {"y1"}
    assert_indexes_consistent(cache)


def test_add_of_existing_resource_is_an_update():
    cache = ResourceCache()
    cache.add(route("Red"))
    rec = Recorder(cache)
    cache.add(route("Red", color="DA291C"))
    assert rec.names() == [("update", "route")]


def test_update_of_unknown_resource_is_an_add():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.update(route("Red"))
    assert rec.names() == [("add", "route")]


def test_remove_cleans_indexes():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(prediction("p1", "70061", "Red"))
    rec = Recorder(cache)
    cache.remove(ref("prediction", "p1"))
    assert rec.names() == [("remove", "prediction")]
    assert rec.events[0].entry.id == "p1"
    assert cache.indexes.route_index("prediction", "Red") == frozenset()
    assert cache.indexes.stop_index("prediction", "70061") == frozenset()
    assert cache.entry("prediction", "p1") is None
    assert_indexes_consistent(cache)


def test_remove_route_drops_route_type():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.remove(ref("route", "Red"))
    assert cache.indexes.route_type_index(1) == frozenset()


def test_remove_unknown_is_noop():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.remove(ref("vehicle", "ghost"))
    assert rec.events == []


def test_reset_replaces_kind():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.reset([route("A"), route("B")])
    cache.reset([route("B"), route("C")])
    assert sorted(r.id for r in cache.store.get_all("route")) == ["B", "C"]
    assert cache.indexes.typed_route_ids() == {"B", "C"}
    assert cache.indexes.route_index("route", "A") == frozenset()
    last = rec.events[-1]
    assert (last.event, last.kind) == ("reset", "route")
    assert {e.id for e in last.entries} == {"B", "C"}
    assert_indexes_consistent(cache)


def test_reset_is_idempotent():
    batch = [route("Red"), route("Orange"), vehicle("y1", "Red"), vehicle("y2", "Orange")]
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.reset(batch)
    first_indexes = cache.indexes.as_dict()
    first_events = list(rec.events)
    rec.clear()

    cache.reset(batch)
    assert cache.indexes.as_dict() == first_indexes
    assert rec.events == first_events
    assert cache.store.get_all("vehicle") == [batch[2], batch[3]]


def test_reset_with_explicit_kind_clears_on_empty_payload():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(vehicle("y1", "Red"))
    rec = Recorder(cache)
    cache.reset([], kinds=("vehicle",))
    assert rec.names() == [("reset", "vehicle")]
    assert rec.events[0].entries == ()
    assert cache.store.get_all("vehicle") == []
    assert cache.indexes.route_index("vehicle", "Red") == frozenset()


def test_reset_skips_malformed_resources(caplog):
    cache = ResourceCache()
    with caplog.at_level(logging.WARNING):
        cache.reset([route("Red"), vehicle("good", "Red"), vehicle("bad", None)])
    assert [e.id for e in cache.entries("vehicle")] == ["good"]
    # stored, just never projected
    assert cache.store.get("vehicle", "bad") is not None
    assert "bad" in caplog.text


def test_reset_drops_duplicate_stop_names():
    cache = ResourceCache()
    cache.reset([stop("70061", "Alewife"), stop("70062", "Alewife"), stop("70063", "Davis")])
    assert [s.id for s in cache.store.get_all("stop")] == ["70061", "70063"]


def test_add_drops_duplicate_stop_names():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.add(stop("70061", "Alewife"))
    cache.add(stop("70062", "Alewife"))
    assert rec.names() == [("add", "stop")]
    # the claimed name frees up once the owner goes away
    cache.remove(ref("stop", "70061"))
    cache.add(stop("70062", "Alewife"))
    assert [s.id for s in cache.store.get_all("stop")] == ["70062"]


def test_stop_dedupe_can_be_disabled():
    cache = ResourceCache(dedupe_stop_names=False)
    cache.reset([stop("70061", "Alewife"), stop("70062", "Alewife")])
    assert cache.store.count("stop") == 2


def test_dependent_projections_follow_related_changes():
    cache = ResourceCache()
    cache.add(route("Red"))
    rec = Recorder(cache)
    cache.add(Resource("shape", "931_0009", {"polyline": "abc"}))
    # the shape is not referenced yet, so the route view is unchanged
    assert rec.events == []

    cache.add(Resource("trip", "t1", {}, {
        "route": ref("route", "Red"),
        "shape": ref("shape", "931_0009"),
    }))
    assert rec.names() == [("update", "route")]
    assert rec.events[0].entry.view["shapes"] == [{"id": "931_0009", "polyline": "abc"}]

    rec.clear()
    cache.remove(ref("trip", "t1"))
    assert rec.names() == [("update", "route")]
    assert rec.events[0].entry.view["shapes"] == []


def test_alert_follows_route_types():
    cache = ResourceCache()
    cache.add(route("Red", 1))
    cache.add(Resource("alert", "a1", {"informed_entity": [{"route_type": 1}]}))
    assert cache.entry("alert", "a1").route_ids == {"Red"}
    cache.add(route("Orange", 1))
    assert cache.entry("alert", "a1").route_ids == {"Red", "Orange"}
    assert cache.indexes.route_index("alert", "Orange") == {"a1"}
    assert_indexes_consistent(cache)


def test_update_that_breaks_projection_removes_entry():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(vehicle("y1", "Red"))
    rec = Recorder(cache)
    cache.update(vehicle("y1", None))
    assert rec.names() == [("remove", "vehicle")]
    assert cache.indexes.route_index("vehicle", "Red") == frozenset()
    cache.update(vehicle("y1", "Red"))
    assert rec.names()[-1] == ("add", "vehicle")


def test_apply_stream_events():
    cache = ResourceCache()
    cache.add(route("Red"))
    rec = Recorder(cache)
    payload = vehicle("y1", "Red").to_json()
    cache.apply("vehicle", "reset", [payload])
    cache.apply("vehicle", "update", {**payload, "attributes": {"label": "y1", "speed": 12}})
    cache.apply("vehicle", "remove", {"type": "vehicle", "id": "y1"})
    cache.apply("vehicle", "heartbeat", {})
    assert rec.names() == [("reset", "vehicle"), ("update", "vehicle"), ("remove", "vehicle")]
    assert rec.events[1].entry.view["speed"] == 12


def document(*resources: Resource, included=()) -> dict:
    return {
        "data": [r.to_json() for r in resources],
        "included": [r.to_json() for r in included],
    }


def test_reconcile_identical_document_is_silent():
    cache = ResourceCache()
    doc = document(route("Red"), route("Orange"), included=[Resource("shape", "s1", {"polyline": "x"})])
    rec = Recorder(cache)
    cache.reconcile(doc)
    assert rec.names() == [("add", "route"), ("add", "route")]
    rec.clear()
    cache.reconcile(doc)
    assert rec.events == []


def test_reconcile_adds_updates_and_removes():
    cache = ResourceCache()
    cache.reconcile(document(route("Red"), route("Orange")))
    rec = Recorder(cache)
    seen = cache.reconcile(document(route("Red", color="DA291C"), route("Blue")))
    assert seen == {ref("route", "Red"), ref("route", "Blue")}
    assert sorted(rec.names()) == [("add", "route"), ("remove", "route"), ("update", "route")]
    assert sorted(r.id for r in cache.store.get_all("route")) == ["Blue", "Red"]
    assert_indexes_consistent(cache)


def test_reconcile_empty_document_removes_declared_kind():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(vehicle("y1", "Red"))
    cache.reconcile({"data": []}, kinds=("vehicle",))
    assert cache.store.get_all("vehicle") == []
    assert cache.store.count("route") == 1


def test_reconcile_respects_scope():
    cache = ResourceCache()
    cache.add(route("Red"))
    cache.add(route("Orange"))
    cache.reconcile(document(route("Red")), scope=[])
    assert cache.store.count("route") == 2
    cache.reconcile(document(route("Red")), scope=[ref("route", "Orange")])
    assert cache.store.count("route") == 1


def test_reconcile_error_document_keeps_state(caplog):
    cache = ResourceCache()
    cache.add(route("Red"))
    rec = Recorder(cache)
    with caplog.at_level(logging.ERROR):
        result = cache.reconcile({"errors": [{"status": "429", "code": "rate_limited"}]})
    assert result is None
    assert rec.events == []
    assert cache.store.count("route") == 1
    assert "rate_limited" in caplog.text


def test_failing_listener_does_not_break_others():
    cache = ResourceCache()

    def broken(event):
        raise RuntimeError("socket gone")

    cache.subscribe(broken)
    rec = Recorder(cache)
    cache.add(route("Red"))
    assert rec.names() == [("add", "route")]
    assert cache.entry("route", "Red") is not None


def test_unsubscribe_stops_delivery():
    cache = ResourceCache()
    events = []
    handle = cache.subscribe(events.append)
    cache.unsubscribe(handle)
    cache.add(route("Red"))
    assert events == []


def test_indexes_stay_consistent_through_mixed_history():
    cache = ResourceCache()
    cache.reset([route("Red"), route("Orange"), route("Mattapan", 0)])
    cache.add(vehicle("y1", "Red"))
    cache.add(vehicle("y2", "Orange"))
    cache.add(prediction("p1", "70061", "Red"))
    cache.add(prediction("p2", "70036", "Orange"))
    cache.update(vehicle("y1", "Mattapan"))
    cache.update(prediction("p1", "70063", "Red"))
    cache.remove(ref("vehicle", "y2"))
    cache.reset([prediction("p3", "70061", "Red")])
    cache.add(Resource("alert", "a1", {"informed_entity": [{"route": "Orange"}, {"route_type": 0}]}))
    cache.remove(ref("route", "Orange"))
    assert_indexes_consistent(cache)
    assert cache.indexes.route_index("vehicle", "Orange") == frozenset()
    assert cache.indexes.stop_index("prediction", "70036") == frozenset()
    assert cache.entry("alert", "a1").route_ids == {"Orange", "Mattapan"}


def test_route_arrival_republishes_linked_entries():
    cache = ResourceCache()
    cache.add(vehicle("y1", "Red"))
    cache.add(prediction("p1", "70061", "Red"))
    rec = Recorder(cache)
    cache.add(route("Red"))
    assert rec.names() == [("add", "route"), ("update", "prediction"), ("update", "vehicle")]
    assert rec.events[2].entry == cache.entry("vehicle", "y1")

    rec.clear()
    # same type: nothing to re-evaluate
    cache.update(route("Red", color="DA291C"))
    assert rec.names() == [("update", "route")]

    rec.clear()
    cache.remove(ref("route", "Red"))
    assert rec.names() == [("remove", "route"), ("update", "prediction"), ("update", "vehicle")]


def test_route_type_change_published_once_per_batch():
    cache = ResourceCache()
    rec = Recorder(cache)
    cache.reset([route("Red"), vehicle("y1", "Red")])
    # the reset already went out with the new route types
    assert rec.names() == [("reset", "route"), ("reset", "vehicle")]

    rec.clear()
    cache.reconcile({
        "data": [vehicle("y2", "Orange").to_json()],
        "included": [route("Orange").to_json()],
    })
    assert rec.names() == [("add", "vehicle"), ("add", "route"), ("update", "vehicle")]
    assert rec.events[2].entry.id == "y2"
