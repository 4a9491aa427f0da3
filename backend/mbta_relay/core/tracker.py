"""Keeps the resource cache in sync with the MBTA API via polls and streams."""

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mbta_relay.config import settings
from mbta_relay.core.cache import ResourceCache
from mbta_relay.core.mbta_client import MbtaClient, UpstreamError
from mbta_relay.core.scheduler import create_scheduler, schedule_once
from mbta_relay.schemas.resource import ResourceIdentifier

logger = logging.getLogger(__name__)

# Query parameters, or a callable producing them per run (None skips the run)
Params = dict | Callable[[], dict | None] | None


def _resolve(params: Params) -> tuple[bool, dict | None]:
    if callable(params):
        resolved = params()
        return resolved is not None, resolved
    return True, params


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class Poll:
    name: str
    kind: str
    params: Params = None
    # identifiers this poll's last document contained
    contributed: set[ResourceIdentifier] = field(default_factory=set)
    runs: int = 0
    last_success: datetime.datetime | None = None
    last_failure: datetime.datetime | None = None
    last_error: str | None = None


@dataclass
class Stream:
    name: str
    kind: str
    params: Params = None
    task: asyncio.Task | None = None
    connects: int = 0
    events: int = 0
    last_error: str | None = None


class Tracker:
    """Orchestrates reconciliation polls and live streams into one cache."""

    def __init__(
        self,
        client: MbtaClient,
        cache: ResourceCache,
        scheduler: AsyncIOScheduler | None = None,
        interval_seconds: float | None = None,
        stream_retry_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.scheduler = scheduler
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.poll_interval_seconds
        )
        self.stream_retry_seconds = (
            stream_retry_seconds if stream_retry_seconds is not None else settings.stream_retry_seconds
        )
        self._polls: dict[str, Poll] = {}
        self._streams: dict[str, Stream] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_poll(self, name: str, kind: str, params: Params = None) -> Poll:
        poll = Poll(name=name, kind=kind, params=params)
        self._polls[name] = poll
        return poll

    def add_stream(self, name: str, kind: str, params: Params = None) -> Stream:
        stream = Stream(name=name, kind=kind, params=params)
        self._streams[name] = stream
        return stream

    async def start(self) -> None:
        """Run every poll once, in registration order, then open the streams."""
        if self._running:
            return
        self._running = True
        if self.scheduler is None:
            self.scheduler = create_scheduler()
        if not self.scheduler.running:
            self.scheduler.start()
        for name in self._polls:
            await self.run_poll(name)
        for stream in self._streams.values():
            stream.task = asyncio.create_task(self._consume(stream), name=f"stream:{stream.name}")
        logger.info(
            "Tracker started: %d polls every %ss, %d streams",
            len(self._polls), self.interval_seconds, len(self._streams),
        )

    async def stop(self) -> None:
        self._running = False
        tasks = [s.task for s in self._streams.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for stream in self._streams.values():
            stream.task = None
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Tracker stopped")

    async def sync(self, name: str) -> bool:
        """One reconciliation run of poll ``name``.

        Only identifiers this poll contributed last time, and that no other
        poll still provides, can be removed. Transport errors propagate.
        """
        poll = self._polls[name]
        ready, params = _resolve(poll.params)
        if not ready:
            logger.info("Skipping %s: parameters not available yet", name)
            return False
        document = await self.client.get(poll.kind, params)
        scope = poll.contributed - self._provided_elsewhere(name)
        seen = self.cache.reconcile(document, kinds=(poll.kind,), scope=scope)
        if seen is None:
            poll.last_error = "upstream error document"
            return False
        poll.contributed = seen
        return True

    async def run_poll(self, name: str) -> None:
        """Scheduler entry point: sync, then always schedule the next run."""
        poll = self._polls[name]
        try:
            if await self.sync(name):
                poll.last_success = _now()
                poll.last_error = None
        except Exception as e:
            poll.last_failure = _now()
            poll.last_error = f"{type(e).__name__}: {e}"
            logger.exception("Reconciliation %s failed", name)
        finally:
            poll.runs += 1
            if self._running and self.scheduler is not None:
                schedule_once(self.scheduler, self.run_poll, self.interval_seconds, f"poll:{name}", [name])

    def _provided_elsewhere(self, name: str) -> set[ResourceIdentifier]:
        provided: set[ResourceIdentifier] = set()
        for other in self._polls.values():
            if other.name != name:
                provided |= other.contributed
        return provided

    async def _consume(self, stream: Stream) -> None:
        while self._running:
            ready, params = _resolve(stream.params)
            if ready:
                try:
                    stream.connects += 1
                    logger.info("Opening %s stream", stream.name)
                    async for event_name, payload in self.client.stream(stream.kind, params):
                        self._apply(stream, event_name, payload)
                    logger.warning("%s stream closed by upstream", stream.name)
                except (httpx.HTTPError, UpstreamError) as e:
                    stream.last_error = f"{type(e).__name__}: {e}"
                    logger.warning("%s stream failed: %s", stream.name, e)
                except Exception as e:
                    stream.last_error = f"{type(e).__name__}: {e}"
                    logger.exception("%s stream crashed", stream.name)
            await asyncio.sleep(self.stream_retry_seconds)

    def _apply(self, stream: Stream, event_name: str, payload) -> None:
        try:
            self.cache.apply(stream.kind, event_name, payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed %s %r event: %s", stream.name, event_name, e)
            return
        stream.events += 1

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "polls": {
                p.name: {
                    "kind": p.kind,
                    "runs": p.runs,
                    "resources": len(p.contributed),
                    "last_success": p.last_success.isoformat() if p.last_success else None,
                    "last_failure": p.last_failure.isoformat() if p.last_failure else None,
                    "last_error": p.last_error,
                }
                for p in self._polls.values()
            },
            "streams": {
                s.name: {
                    "kind": s.kind,
                    "connects": s.connects,
                    "events": s.events,
                    "last_error": s.last_error,
                }
                for s in self._streams.values()
            },
        }
