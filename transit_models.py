"""Result types for STCP API payloads.

Every payload is validated here before it reaches a cache, so a malformed
response fails the fetch instead of leaking a half-shaped dict to callers.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    # IDs arrive as strings or numbers depending on the endpoint.
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Coordinates(_Payload):
    latitude: float
    longitude: float


class Stop(_Payload):
    id: str
    name: str
    coordinates: Coordinates
    zone_id: Optional[str] = None


class RouteDirection(_Payload):
    direction_id: int
    headsign: str = ""
    service_days: List[str] = Field(default_factory=list)


class Route(_Payload):
    id: str
    short_name: str = ""
    long_name: str = ""
    route_color: str = ""
    route_text_color: str = ""
    directions: List[RouteDirection] = Field(default_factory=list)


class RouteStopItem(_Payload):
    sequence: int
    stop: Stop


class RouteStopsDirection(_Payload):
    direction_id: int
    headsign: str = ""
    stops: List[RouteStopItem] = Field(default_factory=list)


class RouteStops(_Payload):
    route_id: Optional[str] = None
    directions: List[RouteStopsDirection] = Field(default_factory=list)

    def stop_ids(self) -> List[str]:
        return [item.stop.id for direction in self.directions for item in direction.stops]


class TripRef(_Payload):
    id: str
    route_id: str
    headsign: Optional[str] = None


class StopRef(_Payload):
    sequence: int


class ScheduledArrival(_Payload):
    trip: TripRef
    stop: StopRef
    arrival_time: str


class RealtimeArrival(_Payload):
    trip: TripRef
    stop: StopRef
    realtime_arrival_time: str


class ShapePoint(_Payload):
    sequence: int
    coordinates: Coordinates


class RouteShape(_Payload):
    direction_id: Optional[int] = None
    points: List[ShapePoint] = Field(default_factory=list)


STOPS = TypeAdapter(List[Stop])
ROUTES = TypeAdapter(List[Route])
ROUTE_STOPS = TypeAdapter(RouteStops)
SCHEDULED_ARRIVALS = TypeAdapter(List[ScheduledArrival])
REALTIME_ARRIVALS = TypeAdapter(List[RealtimeArrival])
ROUTE_SHAPES = TypeAdapter(List[RouteShape])
