"""Read-only REST endpoints over the projected view models."""

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(prefix="/api", tags=["resources"])


def _cache(request: Request):
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache not initialized")
    return cache


@router.get("/{kind}")
async def list_resources(
    kind: str, request: Request, route: str | None = None, stop: str | None = None
) -> list[dict]:
    """Current view models of one kind, optionally narrowed to a route or stop."""
    cache = _cache(request)
    if not cache.registry.is_projected(kind):
        raise HTTPException(status_code=404, detail=f"Unknown kind {kind!r}")
    entries = cache.entries(kind)
    if route is not None:
        ids = cache.indexes.route_index(kind, route)
        entries = [e for e in entries if e.id in ids]
    if stop is not None:
        ids = cache.indexes.stop_index(kind, stop)
        entries = [e for e in entries if e.id in ids]
    return [e.view for e in entries]


@router.get("/{kind}/{resource_id}")
async def get_resource(kind: str, resource_id: str, request: Request) -> dict:
    entry = _cache(request).entry(kind, resource_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"{kind} {resource_id} not found")
    return entry.view
