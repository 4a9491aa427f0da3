"""Diagnostics API for the cache and its upstream feeds."""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])


@router.get("")
async def get_diagnostics(request: Request):
    """Store/projection counts per kind, listener count and feed status."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        return {"error": "Cache not initialized"}
    diag = cache.get_diagnostics()
    tracker = getattr(request.app.state, "tracker", None)
    diag["tracker"] = tracker.get_status() if tracker is not None else None
    return diag


@router.get("/indexes")
async def get_index_diagnostics(request: Request):
    """Full secondary index contents, for checking route/stop linkage."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        return {"error": "Cache not initialized"}
    return cache.indexes.as_dict()
