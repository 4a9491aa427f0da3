"""Default set of upstream feeds the relay keeps in its cache."""

import logging
from collections.abc import Callable

from mbta_relay.config import Settings
from mbta_relay.core.cache import ResourceCache
from mbta_relay.core.mbta_client import MbtaClient
from mbta_relay.core.tracker import Tracker

logger = logging.getLogger(__name__)

# Polled in this order on startup: later feeds filter on earlier results
FEED_ORDER = ["routes", "stops", "trips", "alerts", "schedules", "vehicles", "predictions"]
# Feeds that can use the streaming endpoint instead of polling
STREAMABLE = {"vehicles", "predictions"}


def build_tracker(client: MbtaClient, cache: ResourceCache, settings: Settings) -> Tracker:
    tracker = Tracker(
        client,
        cache,
        interval_seconds=settings.poll_interval_seconds,
        stream_retry_seconds=settings.stream_retry_seconds,
    )
    route_types = settings.route_types

    def by_stored_routes(**extra) -> Callable[[], dict | None]:
        def params() -> dict | None:
            route_ids = sorted(r.id for r in cache.store.get_all("route"))
            if not route_ids:
                return None
            return {"filter[route]": ",".join(route_ids), **extra}
        return params

    feeds = {
        "routes": ("route", {"filter[type]": route_types}),
        "stops": ("stop", {"filter[route_type]": route_types, "include": "parent_station"}),
        "trips": ("trip", by_stored_routes(include="shape")),
        "alerts": ("alert", {"filter[route_type]": route_types, "include": "facilities"}),
        "schedules": ("schedule", by_stored_routes()),
        "vehicles": ("vehicle", {"filter[route_type]": route_types}),
        "predictions": ("prediction", by_stored_routes()),
    }

    enabled = set(settings.feed_names)
    for name in sorted(enabled - set(feeds)):
        logger.warning("Unknown feed %r ignored", name)

    for name in FEED_ORDER:
        if name not in enabled:
            continue
        kind, params = feeds[name]
        if settings.use_streams and name in STREAMABLE:
            tracker.add_stream(name, kind, params)
        else:
            tracker.add_poll(name, kind, params)
    return tracker
