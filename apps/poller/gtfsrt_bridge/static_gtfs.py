"""Canonical schedule provider backed by a static GTFS zip bundle."""
from __future__ import annotations

import csv
import io
import logging
import zipfile
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Iterator, Protocol

import requests

from .models import CanonicalRoute, CanonicalStopTime, CanonicalTrip

LOGGER = logging.getLogger(__name__)

WEEKDAY_COLUMNS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class CanonicalScheduleProvider(Protocol):
    def routes_for_agency(self, agency_id: str) -> list[CanonicalRoute]: ...

    def trips_for_route(self, route_id: str) -> list[CanonicalTrip]: ...

    def stop_times_for_trip(self, trip_id: str) -> list[CanonicalStopTime]: ...

    def service_ids_active_on(self, service_date: date) -> set[str]: ...


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _to_int(value: str | None) -> int | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _time_to_seconds(value: str | None) -> int | None:
    value = _clean(value)
    if value is None:
        return None
    parts = value.split(":")
    if len(parts) < 2:
        return None
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
        seconds = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def _parse_gtfs_date(value: str | None) -> date | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


def _read_csv(zf: zipfile.ZipFile, name: str, required: bool = True) -> Iterator[dict[str, str]]:
    try:
        raw = zf.open(name)
    except KeyError as exc:
        if required:
            raise FileNotFoundError(f"File {name} not found inside {zf.filename}") from exc
        LOGGER.debug("Optional GTFS file %s missing from %s", name, zf.filename)
        return
    with raw:
        reader = csv.DictReader(io.TextIOWrapper(raw, encoding="utf-8-sig"))
        if reader.fieldnames:
            reader.fieldnames = [name.strip() if name else name for name in reader.fieldnames]
        yield from reader


def download_bundle(url: str, dest: Path, timeout: float = 60) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Downloading GTFS static bundle from %s", url)
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(dest, "wb") as fh:
            for chunk in response.iter_content(chunk_size=1 << 20):
                if chunk:
                    fh.write(chunk)
    LOGGER.info("Saved GTFS static bundle to %s (%s bytes)", dest, dest.stat().st_size)
    return dest


class StaticGtfs:
    """In-memory index of routes, trips, stop times and the service calendar."""

    def __init__(
        self,
        routes: Iterable[CanonicalRoute],
        trips: Iterable[CanonicalTrip],
        calendar: dict[str, tuple[date, date, tuple[bool, ...]]] | None = None,
        calendar_dates: dict[date, dict[str, int]] | None = None,
    ) -> None:
        self._routes = list(routes)
        self._trips: dict[str, CanonicalTrip] = {}
        self._trips_by_route: dict[str, list[CanonicalTrip]] = defaultdict(list)
        for trip in trips:
            self._trips[trip.trip_id] = trip
            self._trips_by_route[trip.route_id].append(trip)
        self._calendar = calendar or {}
        self._calendar_dates = calendar_dates or {}

    @classmethod
    def from_zip(cls, zip_path: Path) -> StaticGtfs:
        with zipfile.ZipFile(zip_path) as zf:
            agencies = [_clean(row.get("agency_id")) for row in _read_csv(zf, "agency.txt", required=False)]
            default_agency = agencies[0] if len(agencies) == 1 else None

            routes = []
            for row in _read_csv(zf, "routes.txt"):
                route_id = _clean(row.get("route_id"))
                if not route_id:
                    continue
                routes.append(
                    CanonicalRoute(
                        route_id=route_id,
                        short_name=_clean(row.get("route_short_name")),
                        agency_id=_clean(row.get("agency_id")) or default_agency,
                        route_type=_to_int(row.get("route_type")),
                    )
                )
            LOGGER.info("Loaded %d routes", len(routes))

            stops: dict[str, tuple[str, str | None]] = {}
            for row in _read_csv(zf, "stops.txt"):
                stop_id = _clean(row.get("stop_id"))
                if not stop_id:
                    continue
                stops[stop_id] = (_clean(row.get("stop_code")) or stop_id, _clean(row.get("stop_name")))
            LOGGER.info("Loaded %d stops", len(stops))

            stop_times: dict[str, list[CanonicalStopTime]] = defaultdict(list)
            count = 0
            LOGGER.info("Loading stop_times.txt (this may take a while)")
            for row in _read_csv(zf, "stop_times.txt"):
                trip_id = _clean(row.get("trip_id"))
                stop_id = _clean(row.get("stop_id"))
                stop_sequence = _to_int(row.get("stop_sequence"))
                if not trip_id or not stop_id or stop_sequence is None:
                    continue
                arrival = _time_to_seconds(row.get("arrival_time"))
                departure = _time_to_seconds(row.get("departure_time"))
                if arrival is None and departure is None:
                    continue
                stop_code, stop_name = stops.get(stop_id, (stop_id, None))
                stop_times[trip_id].append(
                    CanonicalStopTime(
                        stop_id=stop_id,
                        stop_code=stop_code,
                        stop_name=stop_name,
                        stop_sequence=stop_sequence,
                        arrival_seconds=arrival,
                        departure_seconds=departure,
                    )
                )
                count += 1
            LOGGER.info("Loaded %d stop_time rows", count)

            trips = []
            for row in _read_csv(zf, "trips.txt"):
                trip_id = _clean(row.get("trip_id"))
                route_id = _clean(row.get("route_id"))
                service_id = _clean(row.get("service_id"))
                if not trip_id or not route_id or not service_id:
                    continue
                profile = sorted(stop_times.get(trip_id, ()), key=lambda st: st.stop_sequence)
                trips.append(
                    CanonicalTrip(
                        trip_id=trip_id,
                        route_id=route_id,
                        service_id=service_id,
                        stop_times=tuple(profile),
                    )
                )
            LOGGER.info("Loaded %d trips", len(trips))

            calendar: dict[str, tuple[date, date, tuple[bool, ...]]] = {}
            for row in _read_csv(zf, "calendar.txt", required=False):
                service_id = _clean(row.get("service_id"))
                start = _parse_gtfs_date(row.get("start_date"))
                end = _parse_gtfs_date(row.get("end_date"))
                if not service_id or start is None or end is None:
                    continue
                days = tuple(_clean(row.get(column)) == "1" for column in WEEKDAY_COLUMNS)
                calendar[service_id] = (start, end, days)

            calendar_dates: dict[date, dict[str, int]] = defaultdict(dict)
            for row in _read_csv(zf, "calendar_dates.txt", required=False):
                service_id = _clean(row.get("service_id"))
                day = _parse_gtfs_date(row.get("date"))
                exception_type = _to_int(row.get("exception_type"))
                if not service_id or day is None or exception_type not in (1, 2):
                    continue
                calendar_dates[day][service_id] = exception_type

        return cls(routes, trips, calendar, dict(calendar_dates))

    def routes_for_agency(self, agency_id: str) -> list[CanonicalRoute]:
        return [route for route in self._routes if route.agency_id in (agency_id, None)]

    def trips_for_route(self, route_id: str) -> list[CanonicalTrip]:
        return list(self._trips_by_route.get(route_id, ()))

    def trip(self, trip_id: str) -> CanonicalTrip | None:
        return self._trips.get(trip_id)

    def stop_times_for_trip(self, trip_id: str) -> list[CanonicalStopTime]:
        trip = self._trips.get(trip_id)
        return list(trip.stop_times) if trip else []

    def service_ids_active_on(self, service_date: date) -> set[str]:
        weekday = service_date.weekday()
        active = {
            service_id
            for service_id, (start, end, days) in self._calendar.items()
            if start <= service_date <= end and days[weekday]
        }
        for service_id, exception_type in self._calendar_dates.get(service_date, {}).items():
            if exception_type == 1:
                active.add(service_id)
            else:
                active.discard(service_id)
        return active
