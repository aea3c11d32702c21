"""Stop -> routes index built from one stop listing per route.

The index is derived client-side: the backend only answers "which stops does
route R serve", so answering "which routes serve stop S" takes a fan-out over
every route. The fan-out runs once per ``RouteStopIndexCache``; the built
index is then shared by every consumer for the life of the cache.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set

from async_tasks import DEFAULT_RETRY_DELAY_S, RETRY_FOREVER, run_with_concurrency, with_retry
from transit_models import Route, RouteStops

INDEX_UNSTARTED = "unstarted"
INDEX_BUILDING = "building"
INDEX_BUILT = "built"

DEFAULT_INDEX_CONCURRENCY = 3

RouteStopIndex = Dict[str, Set[str]]


def merge_route_stops(index: RouteStopIndex, route_id: str, route_stops: RouteStops) -> None:
    """Add ``route_id`` to the entry of every stop listed in ``route_stops``."""
    for stop_id in route_stops.stop_ids():
        index.setdefault(stop_id, set()).add(route_id)


def copy_index(index: RouteStopIndex) -> RouteStopIndex:
    return {stop_id: set(route_ids) for stop_id, route_ids in index.items()}


class RouteStopIndexCache:
    """Builds the stop -> routes index at most once and hands out copies.

    State moves ``unstarted -> building -> built``. A build that dies (only
    possible through cancellation, or a failing route list when retries are
    bounded) falls back to ``unstarted`` so the next trigger starts over.
    There is no way back from ``built``.
    """

    def __init__(
        self,
        fetch_routes: Callable[[], Awaitable[List[Route]]],
        fetch_route_stops: Callable[[str], Awaitable[RouteStops]],
        *,
        concurrency: int = DEFAULT_INDEX_CONCURRENCY,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        max_retries: Optional[int] = RETRY_FOREVER,
    ) -> None:
        self._fetch_routes = fetch_routes
        self._fetch_route_stops = fetch_route_stops
        self._concurrency = concurrency
        self._retry_delay_s = retry_delay_s
        self._max_retries = max_retries
        self._index: Optional[RouteStopIndex] = None
        self._build_task: Optional[asyncio.Task] = None
        self.builds_started = 0

    @property
    def status(self) -> str:
        if self._index is not None:
            return INDEX_BUILT
        if self._build_task is not None:
            return INDEX_BUILDING
        return INDEX_UNSTARTED

    @property
    def loading(self) -> bool:
        return self.status == INDEX_BUILDING

    def start(self) -> Optional[asyncio.Task]:
        """Trigger the build in the background unless it ran or is running."""
        if self._index is not None:
            return None
        if self._build_task is None:
            self.builds_started += 1
            task = asyncio.ensure_future(self._build())
            self._build_task = task
            task.add_done_callback(self._on_build_done)
        return self._build_task

    def _on_build_done(self, task: asyncio.Task) -> None:
        if self._build_task is task:
            self._build_task = None
        if not task.cancelled() and task.exception() is not None:
            print(f"[route_index] build failed: {task.exception()}")

    async def get(self) -> RouteStopIndex:
        """Return a copy of the index, building it first if needed."""
        if self._index is None:
            task = self.start()
            if task is not None:
                await asyncio.shield(task)
        return copy_index(self._index or {})

    def peek(self) -> Optional[RouteStopIndex]:
        """Copy of the built index, or ``None`` while unbuilt. Never triggers a build."""
        if self._index is None:
            return None
        return copy_index(self._index)

    def routes_for_stop(self, stop_id: str) -> Set[str]:
        if self._index is None:
            return set()
        return set(self._index.get(stop_id, ()))

    def _route_task(self, route_id: str) -> Callable[[], Awaitable[RouteStops]]:
        async def fetch() -> RouteStops:
            return await with_retry(
                lambda: self._fetch_route_stops(route_id),
                self._max_retries,
                self._retry_delay_s,
                label=f"route_index:{route_id}",
            )

        return fetch

    async def _build(self) -> RouteStopIndex:
        routes = await with_retry(
            self._fetch_routes,
            self._max_retries,
            self._retry_delay_s,
            label="route_index:routes",
        )
        print(f"[route_index] fetching stops for {len(routes)} routes")

        listings = await run_with_concurrency(
            [self._route_task(route.id) for route in routes],
            self._concurrency,
        )

        # Each listing is merged whole, so a route adds all its stops or none.
        index: RouteStopIndex = {}
        missing = 0
        for route, listing in zip(routes, listings):
            if listing is None:
                missing += 1
                continue
            merge_route_stops(index, route.id, listing)

        if missing:
            print(f"[route_index] {missing} routes missing from index")
        print(f"[route_index] built index for {len(index)} stops")
        self._index = index
        return index


__all__ = [
    "INDEX_UNSTARTED",
    "INDEX_BUILDING",
    "INDEX_BUILT",
    "DEFAULT_INDEX_CONCURRENCY",
    "RouteStopIndex",
    "RouteStopIndexCache",
    "copy_index",
    "merge_route_stops",
]
