from typing import Any, Literal

from pydantic import BaseModel


class FilterMessage(BaseModel):
    """Inbound message: replaces the connection's filter wholesale."""

    kinds: list[str]
    routeIds: list[str] | None = None
    routeTypes: list[int] | None = None
    stopIds: list[str] | None = None


class OutboundMessage(BaseModel):
    event: Literal["reset", "add", "update", "remove"]
    kind: str
    data: list[dict[str, Any]] | dict[str, Any]
