"""Async client for the MBTA v3 JSON:API (api-v3.mbta.com)."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import orjson

from mbta_relay.config import settings

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 4, 8]  # seconds between retries

COLLECTION_PATHS = {
    "alert": "/alerts",
    "facility": "/facilities",
    "line": "/lines",
    "live_facility": "/live_facilities",
    "prediction": "/predictions",
    "route": "/routes",
    "route_pattern": "/route_patterns",
    "schedule": "/schedules",
    "service": "/services",
    "shape": "/shapes",
    "stop": "/stops",
    "trip": "/trips",
    "vehicle": "/vehicles",
}


class UpstreamError(Exception):
    """The API could not be reached or answered with an unusable response."""


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Parse a text/event-stream body, one event per blank-line-terminated block."""
    event = ServerSentEvent()
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data:
                event.data = "\n".join(data)
                yield event
            event = ServerSentEvent()
            data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event.event = value
        elif name == "data":
            data.append(value)
        elif name == "id":
            event.id = value
    if data:
        event.data = "\n".join(data)
        yield event


class MbtaClient:
    """Fetches and streams JSON:API documents from the MBTA API."""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.mbta_base_url,
            timeout=30.0,
            headers={"Accept": "application/vnd.api+json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def request(self, path: str, params: dict | None = None) -> dict:
        """GET a document, retrying timeouts and 5xx with exponential backoff.

        Client errors that carry a JSON:API error document are returned as
        is; everything else that fails raises ``UpstreamError``.
        """
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await self._client.get(path, params=params)
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        path, attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise UpstreamError(f"{path} failed after {MAX_RETRIES + 1} attempts: {e}") from e

            if resp.status_code >= 500 and attempt < MAX_RETRIES:
                wait = RETRY_BACKOFF[attempt]
                logger.warning(
                    "%s attempt %d/%d got HTTP %d, retrying in %ds",
                    path, attempt + 1, MAX_RETRIES + 1, resp.status_code, wait,
                )
                await asyncio.sleep(wait)
                continue
            return self._decode(path, resp)
        raise UpstreamError(f"{path} failed after {MAX_RETRIES + 1} attempts")

    @staticmethod
    def _decode(path: str, resp: httpx.Response) -> dict:
        try:
            document = orjson.loads(resp.content)
        except orjson.JSONDecodeError as e:
            raise UpstreamError(f"{path} returned HTTP {resp.status_code} with invalid JSON") from e
        if not isinstance(document, dict):
            raise UpstreamError(f"{path} returned a {type(document).__name__}, not a document")
        if resp.is_success or "errors" in document:
            return document
        raise UpstreamError(f"{path} returned HTTP {resp.status_code}")

    async def get(self, kind: str, params: dict | None = None) -> dict:
        """Fetch the collection of ``kind`` resources."""
        return await self.request(COLLECTION_PATHS[kind], params)

    async def stream(
        self, kind: str, params: dict | None = None
    ) -> AsyncIterator[tuple[str, Any]]:
        """Yield ``(event, payload)`` pairs from the streaming endpoint of ``kind``.

        Transport errors propagate to the caller, which owns reconnecting.
        """
        async with self._client.stream(
            "GET",
            COLLECTION_PATHS[kind],
            params=params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(30.0, read=None),
        ) as resp:
            resp.raise_for_status()
            async for sse in iter_sse(resp.aiter_lines()):
                try:
                    payload = orjson.loads(sse.data)
                except orjson.JSONDecodeError:
                    logger.warning("Skipping undecodable %s %r event", kind, sse.event)
                    continue
                yield sse.event, payload
