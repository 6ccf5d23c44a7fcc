"""Value types shared by the identity resolvers, processors and publisher."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import NamedTuple

# GTFS route_type values (basic and extended) that describe fixed-guideway service.
RAIL_ROUTE_TYPES = frozenset({0, 1, 2, 5, 7, 12})
RAIL_ROUTE_TYPE_RANGES = ((100, 199), (400, 499), (900, 999))


class Unmappable:
    """Tombstone stored in place of an identifier that could not be resolved."""

    _instance: Unmappable | None = None

    def __new__(cls) -> Unmappable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNMAPPABLE"

    def __reduce__(self) -> str:
        return "UNMAPPABLE"


UNMAPPABLE = Unmappable()


class AlertKind(str, Enum):
    BUS = "bus"
    RAIL = "rail"


class TripMapKey(NamedTuple):
    service_date: date
    trip_id: str


@dataclass(frozen=True)
class UpstreamVehicleObservation:
    vehicle_id: str
    route_code: str
    trip_id: str
    direction_text: str | None
    headsign: str | None
    latitude: float
    longitude: float
    deviation_minutes: float
    timestamp: datetime
    trip_start: datetime
    trip_end: datetime

    @property
    def service_date(self) -> date:
        return self.trip_start.date()

    @property
    def trip_key(self) -> TripMapKey:
        return TripMapKey(self.service_date, self.trip_id)


@dataclass(frozen=True)
class UpstreamStopTime:
    stop_id: str
    stop_name: str | None
    sequence: int
    time: datetime


@dataclass(frozen=True)
class UpstreamScheduleTrip:
    trip_id: str
    route_code: str
    direction_text: str | None
    headsign: str | None
    start_time: datetime | None
    end_time: datetime | None
    stop_times: tuple[UpstreamStopTime, ...] = ()


@dataclass(frozen=True)
class UpstreamAlert:
    guid: str
    title: str
    description: str | None
    published_at: datetime
    kind: AlertKind = AlertKind.BUS
    link: str | None = None


@dataclass(frozen=True)
class CanonicalRoute:
    route_id: str
    short_name: str | None
    agency_id: str | None
    route_type: int | None = None

    @property
    def is_rail(self) -> bool:
        if self.route_type is None:
            return False
        if self.route_type in RAIL_ROUTE_TYPES:
            return True
        return any(low <= self.route_type <= high for low, high in RAIL_ROUTE_TYPE_RANGES)


@dataclass(frozen=True)
class CanonicalStopTime:
    stop_id: str
    stop_code: str
    stop_name: str | None
    stop_sequence: int
    arrival_seconds: int | None
    departure_seconds: int | None

    @property
    def scheduled_seconds(self) -> int:
        """Midpoint of arrival and departure, in seconds after service-day midnight."""
        arrival = self.arrival_seconds
        departure = self.departure_seconds
        if arrival is None and departure is None:
            raise ValueError(f"Stop time {self.stop_id}#{self.stop_sequence} has no times")
        if arrival is None:
            return departure  # type: ignore[return-value]
        if departure is None:
            return arrival
        return (arrival + departure) // 2


@dataclass(frozen=True)
class CanonicalTrip:
    trip_id: str
    route_id: str
    service_id: str
    stop_times: tuple[CanonicalStopTime, ...] = field(default=(), compare=False)


@dataclass(frozen=True)
class AlertRecord:
    guid: str
    title: str
    description: str | None
    published_at: datetime
    route_ids: tuple[str, ...] = ()
