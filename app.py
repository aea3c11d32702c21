"""
STCP Transit Cache Service: shared data layer for the transit map client

Purpose
=======
Serve STCP stops, routes and arrivals to map/drawer/search front ends from
one process-wide cache, so concurrent views never duplicate a backend call,
and keep the derived stop -> routes index warm in the background.

Key features
------------
- Single-flight caching of stops, routes, per-stop arrivals, per-route stops
  and shapes (one backend call per resource generation).
- Background stop -> routes index: one stop listing per route, 3 at a time,
  retried until it succeeds, built once per process.
- Server-Sent Events (SSE) stream that refreshes a stop's realtime arrivals
  every 10 seconds while clients stay connected; all watchers of a stop share
  one refresh loop.
- Realtime and scheduled arrivals expire after a TTL; per-key caches are
  capped and evict the least recently used key.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- STCP_API_BASE_URL, STCP_API_KEY (required)
- INDEX_FETCH_CONCURRENCY, INDEX_RETRY_DELAY_MS, REALTIME_REFRESH_S,
  REALTIME_TTL_S, SCHEDULED_TTL_S, CACHE_MAX_KEYS (optional)
"""

from __future__ import annotations
from typing import Any, Dict, List
import asyncio, json, os, time

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from async_tasks import RETRY_FOREVER
from realtime_refresh import RealtimeRefreshHub
from stcp_client import STCPClient, TransportError
from transit_cache import TransitCache

# ---------------------------
# Config
# ---------------------------
INDEX_FETCH_CONCURRENCY = int(os.getenv("INDEX_FETCH_CONCURRENCY", "3"))
INDEX_RETRY_DELAY_S = float(os.getenv("INDEX_RETRY_DELAY_MS", "400")) / 1000.0
REALTIME_REFRESH_S = float(os.getenv("REALTIME_REFRESH_S", "10"))
REALTIME_TTL_S = float(os.getenv("REALTIME_TTL_S", str(REALTIME_REFRESH_S)))
SCHEDULED_TTL_S = float(os.getenv("SCHEDULED_TTL_S", "60"))
CACHE_MAX_KEYS = int(os.getenv("CACHE_MAX_KEYS", "500"))
SSE_QUEUE_SIZE = 10

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="STCP Transit Cache")
app.state.transit_cache = None
app.state.config_error = None
app.state.realtime_hub = None
_start_time = time.time()


def build_transit_cache(client: STCPClient) -> TransitCache:
    return TransitCache(
        client,
        index_concurrency=INDEX_FETCH_CONCURRENCY,
        index_retry_delay_s=INDEX_RETRY_DELAY_S,
        index_max_retries=RETRY_FOREVER,
        realtime_ttl_s=REALTIME_TTL_S,
        scheduled_ttl_s=SCHEDULED_TTL_S,
        max_keys=CACHE_MAX_KEYS,
    )


@app.on_event("startup")
async def init_transit_cache() -> None:
    # Tests install their own cache before startup.
    if app.state.transit_cache is None:
        try:
            app.state.transit_cache = build_transit_cache(STCPClient.from_env())
        except RuntimeError as exc:
            print(f"[stcp] client not configured: {exc}")
            app.state.config_error = str(exc)
            return
    app.state.realtime_hub = RealtimeRefreshHub(
        app.state.transit_cache, interval_s=REALTIME_REFRESH_S
    )
    app.state.transit_cache.start_route_stop_index()
    print("[startup] route stop index build started")


@app.on_event("shutdown")
async def shutdown_transit_cache() -> None:
    hub = app.state.realtime_hub
    if hub is not None:
        hub.stop_all()
    cache = app.state.transit_cache
    if cache is not None:
        await cache.aclose()


def _get_cache() -> TransitCache:
    cache = app.state.transit_cache
    if cache is None:
        detail = app.state.config_error or "transit cache unavailable"
        raise HTTPException(status_code=503, detail=detail)
    return cache


def _dump(items: List[Any]) -> List[Dict[str, Any]]:
    return [item.model_dump() for item in items]


# ---------------------------
# Health
# ---------------------------
@app.get("/health")
async def health():
    cache = app.state.transit_cache
    hub = app.state.realtime_hub
    return {
        "ok": cache is not None,
        "config_error": app.state.config_error,
        "uptime_seconds": round(time.time() - _start_time),
        "route_stop_index": cache.route_stop_index_status if cache is not None else None,
        "realtime_watched_stops": hub.watched_stops() if hub is not None else [],
    }


# ---------------------------
# REST: Stops
# ---------------------------
@app.get("/v1/stops")
async def list_stops():
    cache = _get_cache()
    try:
        stops = await cache.get_stops()
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch stops: {exc}") from exc
    return {"stops": _dump(stops)}


@app.get("/v1/stops/search")
async def search_stops(q: str = Query("", description="Stop name or id fragment")):
    cache = _get_cache()
    try:
        stops = await cache.search_stops(q)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch stops: {exc}") from exc
    return {"query": q, "stops": _dump(stops)}


@app.get("/v1/stops/{stop_id}/arrivals")
async def stop_arrivals(stop_id: str):
    cache = _get_cache()
    try:
        board = await cache.load_stop_arrivals(stop_id)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch scheduled arrivals: {exc}") from exc
    return board.to_dict()


@app.get("/v1/stops/{stop_id}/scheduled")
async def stop_scheduled(stop_id: str):
    cache = _get_cache()
    try:
        arrivals = await cache.get_scheduled_arrivals(stop_id)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch scheduled arrivals: {exc}") from exc
    return {"stop_id": stop_id, "arrivals": _dump(arrivals)}


@app.get("/v1/stops/{stop_id}/realtime")
async def stop_realtime(stop_id: str):
    cache = _get_cache()
    try:
        arrivals = await cache.get_realtime_arrivals(stop_id)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch realtime arrivals: {exc}") from exc
    return {"stop_id": stop_id, "arrivals": _dump(arrivals)}


@app.get("/v1/stops/{stop_id}/routes")
async def stop_routes(stop_id: str):
    cache = _get_cache()
    cache.start_route_stop_index()
    return {
        "stop_id": stop_id,
        "route_ids": sorted(cache.get_routes_for_stop(stop_id)),
        "loading": cache.route_stop_index_loading,
    }


# ---------------------------
# REST: Routes
# ---------------------------
@app.get("/v1/routes")
async def list_routes():
    cache = _get_cache()
    try:
        routes = await cache.get_routes()
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch routes: {exc}") from exc
    return {"routes": _dump(routes)}


@app.get("/v1/routes/{route_id}/stops")
async def route_stops(
    route_id: str,
    direction_id: int = Query(..., description="Direction (0 or 1)"),
    headsign: str = Query(..., description="Headsign of the direction"),
):
    cache = _get_cache()
    try:
        stops = await cache.get_route_direction_stops(route_id, direction_id, headsign)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch route stops: {exc}") from exc
    return {
        "route_id": route_id,
        "direction_id": direction_id,
        "headsign": headsign,
        "stops": _dump(stops),
    }


@app.get("/v1/routes/{route_id}/shapes")
async def route_shapes(route_id: str):
    cache = _get_cache()
    try:
        shapes = await cache.get_route_shapes(route_id)
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=f"failed to fetch route shapes: {exc}") from exc
    return {"route_id": route_id, "shapes": _dump(shapes)}


@app.get("/v1/route_stop_index")
async def route_stop_index(wait: int = 0):
    """Stop -> routes index. Returns immediately unless ``wait=1``."""
    cache = _get_cache()
    if wait:
        index = await cache.get_route_stop_index()
    else:
        cache.start_route_stop_index()
        index = cache.peek_route_stop_index() or {}
    return {
        "status": cache.route_stop_index_status,
        "loading": cache.route_stop_index_loading,
        "index": {stop_id: sorted(route_ids) for stop_id, route_ids in index.items()},
    }


# ---------------------------
# SSE: Realtime arrivals
# ---------------------------
def _encode_realtime(stop_id: str, arrivals: List[Any]) -> str:
    data = {"ts": int(time.time() * 1000), "stop_id": stop_id, "arrivals": _dump(arrivals)}
    return f"data: {json.dumps(data)}\n\n"


@app.get("/v1/stream/stops/{stop_id}/realtime")
async def stream_stop_realtime(stop_id: str, request: Request):
    """SSE stream of a stop's realtime arrivals, refreshed while connected.

    Refresh failures are not sent; the client keeps showing the last value.
    """
    cache = _get_cache()
    hub = app.state.realtime_hub
    if hub is None:
        raise HTTPException(status_code=503, detail="realtime refresh unavailable")

    async def gen():
        q: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)

        def push(arrivals: List[Any]) -> None:
            try:
                q.put_nowait(_encode_realtime(stop_id, arrivals))
            except asyncio.QueueFull:
                pass  # Drop update for slow clients

        token = None
        try:
            try:
                initial = await cache.get_realtime_arrivals(stop_id)
            except TransportError as exc:
                print(f"[realtime] initial fetch for stop {stop_id} failed: {exc}")
                initial = []
            yield _encode_realtime(stop_id, initial)
            token = hub.subscribe(stop_id, push)
            while not await request.is_disconnected():
                try:
                    encoded = await asyncio.wait_for(q.get(), timeout=REALTIME_REFRESH_S)
                except asyncio.TimeoutError:
                    continue
                yield encoded
        finally:
            if token is not None:
                hub.unsubscribe(stop_id, token)

    return StreamingResponse(gen(), media_type="text/event-stream")
