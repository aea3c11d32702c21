"""
Transit Cache

The process-wide entry point for STCP data. One ``TransitCache`` is created
by the application at startup and shared by every consumer; its lifetime is
the lifetime of the cached data.

Foreground reads (stops, routes, arrivals, route stops, shapes) are
single-flight and fail fast: a failure reaches every caller of that
generation and clears the slot so the next call retries. The stop -> routes
index is built in the background with unbounded retries and never surfaces
an error.

Example usage:
    cache = TransitCache(STCPClient.from_env())
    cache.start_route_stop_index()
    stops = await cache.get_stops()
    board = await cache.load_stop_arrivals(stops[0].id)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from async_tasks import DEFAULT_RETRY_DELAY_S, RETRY_FOREVER
from fetch_cache import KeyedSingleFlightCache, SingleFlightCache
from route_stop_index import DEFAULT_INDEX_CONCURRENCY, RouteStopIndex, RouteStopIndexCache
from stcp_client import STCPClient
from stop_search import filter_stops_by_query
from transit_models import (
    RealtimeArrival,
    Route,
    RouteShape,
    RouteStopItem,
    RouteStops,
    ScheduledArrival,
    Stop,
)

ARRIVAL_REALTIME = "realtime"
ARRIVAL_SCHEDULED = "scheduled"


@dataclass
class ArrivalRow:
    """One line of a stop's arrival board."""
    kind: str  # "realtime" or "scheduled"
    route_id: str
    trip_id: str
    headsign: str
    arrival_time: str
    stop_sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "route_id": self.route_id,
            "trip_id": self.trip_id,
            "headsign": self.headsign,
            "arrival_time": self.arrival_time,
            "stop_sequence": self.stop_sequence,
        }


@dataclass
class ArrivalBoard:
    stop_id: str
    arrivals: List[ArrivalRow] = field(default_factory=list)

    @property
    def route_ids(self) -> List[str]:
        return sorted({row.route_id for row in self.arrivals})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "route_ids": self.route_ids,
            "arrivals": [row.to_dict() for row in self.arrivals],
        }


def merge_arrivals(
    stop_id: str,
    scheduled: Sequence[ScheduledArrival],
    realtime: Sequence[RealtimeArrival],
) -> ArrivalBoard:
    """Realtime rows first, then scheduled rows for trips realtime doesn't cover."""
    realtime_trip_ids = {r.trip.id for r in realtime}
    rows = [
        ArrivalRow(
            kind=ARRIVAL_REALTIME,
            route_id=r.trip.route_id,
            trip_id=r.trip.id,
            headsign=r.trip.headsign or "",
            arrival_time=r.realtime_arrival_time,
            stop_sequence=r.stop.sequence,
        )
        for r in realtime
    ]
    rows.extend(
        ArrivalRow(
            kind=ARRIVAL_SCHEDULED,
            route_id=s.trip.route_id,
            trip_id=s.trip.id,
            headsign=s.trip.headsign or "",
            arrival_time=s.arrival_time,
            stop_sequence=s.stop.sequence,
        )
        for s in scheduled
        if s.trip.id not in realtime_trip_ids
    )
    return ArrivalBoard(stop_id=stop_id, arrivals=rows)


DirectionKey = Tuple[str, int, str]

# Realtime entries go stale no later than one refresh tick; "upcoming only"
# scheduled listings drift as the day goes on.
DEFAULT_REALTIME_TTL_S = 10.0
DEFAULT_SCHEDULED_TTL_S = 60.0
DEFAULT_MAX_KEYS = 500


class TransitCache:
    def __init__(
        self,
        client: STCPClient,
        *,
        index_concurrency: int = DEFAULT_INDEX_CONCURRENCY,
        index_retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        index_max_retries: Optional[int] = RETRY_FOREVER,
        realtime_ttl_s: Optional[float] = DEFAULT_REALTIME_TTL_S,
        scheduled_ttl_s: Optional[float] = DEFAULT_SCHEDULED_TTL_S,
        max_keys: Optional[int] = DEFAULT_MAX_KEYS,
    ) -> None:
        self.client = client
        self._stops = SingleFlightCache(client.fetch_stops, name="stops")
        self._routes = SingleFlightCache(client.fetch_routes, name="routes")
        self._scheduled = KeyedSingleFlightCache(
            client.fetch_scheduled_arrivals,
            name="scheduled_arrivals",
            ttl=scheduled_ttl_s,
            max_keys=max_keys,
        )
        self._realtime = KeyedSingleFlightCache(
            client.fetch_realtime_arrivals,
            name="realtime_arrivals",
            ttl=realtime_ttl_s,
            max_keys=max_keys,
        )
        # Route stop lists and shapes are static within a feed.
        self._direction_stops = KeyedSingleFlightCache(
            self._fetch_direction_stops, name="route_direction_stops", max_keys=max_keys
        )
        self._shapes = KeyedSingleFlightCache(
            self._fetch_shapes, name="route_shapes", max_keys=max_keys
        )
        self._index = RouteStopIndexCache(
            self.get_routes,
            client.fetch_route_stops,
            concurrency=index_concurrency,
            retry_delay_s=index_retry_delay_s,
            max_retries=index_max_retries,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    # ---- Shared collections ---------------------------------------------

    async def get_stops(self) -> List[Stop]:
        return await self._stops.get()

    async def get_routes(self) -> List[Route]:
        return await self._routes.get()

    async def search_stops(self, query: str) -> List[Stop]:
        if not query.strip():
            return []
        return filter_stops_by_query(await self.get_stops(), query)

    # ---- Per-stop arrivals ----------------------------------------------

    async def get_scheduled_arrivals(self, stop_id: str) -> List[ScheduledArrival]:
        return await self._scheduled.get(stop_id)

    async def get_realtime_arrivals(self, stop_id: str) -> List[RealtimeArrival]:
        return await self._realtime.get(stop_id)

    def invalidate_realtime_arrivals(self, stop_id: str) -> None:
        self._realtime.invalidate(stop_id)

    async def load_stop_arrivals(self, stop_id: str) -> ArrivalBoard:
        """Scheduled and realtime arrivals for a stop detail view.

        A scheduled failure propagates; a realtime failure only leaves the
        board without realtime rows.
        """

        async def realtime_or_empty() -> List[RealtimeArrival]:
            try:
                return await self.get_realtime_arrivals(stop_id)
            except Exception:
                return []

        scheduled, realtime = await asyncio.gather(
            self.get_scheduled_arrivals(stop_id),
            realtime_or_empty(),
        )
        return merge_arrivals(stop_id, scheduled, realtime)

    # ---- Per-route resources --------------------------------------------

    async def _fetch_direction_stops(self, key: DirectionKey) -> List[RouteStopItem]:
        route_id, direction_id, headsign = key
        data: RouteStops = await self.client.fetch_route_stops(route_id, direction_id, headsign)
        for direction in data.directions:
            if direction.direction_id == direction_id and direction.headsign == headsign:
                return direction.stops
        return []

    async def get_route_direction_stops(
        self, route_id: str, direction_id: int, headsign: str
    ) -> List[RouteStopItem]:
        return await self._direction_stops.get((route_id, direction_id, headsign))

    async def _fetch_shapes(self, route_id: str) -> List[RouteShape]:
        shapes = await self.client.fetch_route_shapes(route_id)
        for shape in shapes:
            shape.points.sort(key=lambda p: p.sequence)
        return shapes

    async def get_route_shapes(self, route_id: str) -> List[RouteShape]:
        return await self._shapes.get(route_id)

    # ---- Stop -> routes index -------------------------------------------

    def start_route_stop_index(self) -> Optional[asyncio.Task]:
        return self._index.start()

    async def get_route_stop_index(self) -> RouteStopIndex:
        return await self._index.get()

    def peek_route_stop_index(self) -> Optional[RouteStopIndex]:
        return self._index.peek()

    @property
    def route_stop_index_status(self) -> str:
        return self._index.status

    @property
    def route_stop_index_loading(self) -> bool:
        return self._index.loading

    @property
    def route_stop_index_builds(self) -> int:
        return self._index.builds_started

    def get_routes_for_stop(self, stop_id: str) -> Set[str]:
        return self._index.routes_for_stop(stop_id)


__all__ = [
    "ARRIVAL_REALTIME",
    "ARRIVAL_SCHEDULED",
    "ArrivalRow",
    "ArrivalBoard",
    "DEFAULT_MAX_KEYS",
    "DEFAULT_REALTIME_TTL_S",
    "DEFAULT_SCHEDULED_TTL_S",
    "TransitCache",
    "merge_arrivals",
]
