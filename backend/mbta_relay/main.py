"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mbta_relay.api import diagnostics, resources, ws
from mbta_relay.config import settings
from mbta_relay.core.cache import ResourceCache
from mbta_relay.core.feeds import build_tracker
from mbta_relay.core.mbta_client import MbtaClient
from mbta_relay.core.tracker import Tracker

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(cache: ResourceCache | None = None, tracker: Tracker | None = None) -> FastAPI:
    """Build the app.

    With no arguments the lifespan creates the cache, the MBTA client and the
    tracker; tests inject their own cache and leave the tracker out.
    """
    injected = cache is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if injected:
            app.state.cache = cache
            app.state.tracker = tracker
        else:
            client = MbtaClient()
            app.state.cache = ResourceCache(dedupe_stop_names=settings.dedupe_stop_names)
            app.state.tracker = build_tracker(client, app.state.cache, settings)

        if app.state.tracker is not None:
            await app.state.tracker.start()
        logger.info("MBTA relay started")

        yield

        if app.state.tracker is not None:
            await app.state.tracker.stop()
        if client is not None:
            await client.close()
        logger.info("MBTA relay shut down")

    app = FastAPI(
        title="MBTA Live Relay",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    # diagnostics before the catch-all /api/{kind} routes
    app.include_router(diagnostics.router)
    app.include_router(resources.router)
    app.include_router(ws.router)
    return app


app = create_app()
