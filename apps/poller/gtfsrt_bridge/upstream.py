"""Rate-limited client for the agency's proprietary real-time API."""
from __future__ import annotations

import logging
import threading
import time
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

import requests

from .cache import SingleFlightCache
from .errors import UpstreamFetchError
from .models import (
    AlertKind,
    UpstreamAlert,
    UpstreamScheduleTrip,
    UpstreamStopTime,
    UpstreamVehicleObservation,
)

LOGGER = logging.getLogger(__name__)

API_KEY_HEADER = "api_key"
UPSTREAM_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
DOCUMENTED_RATE_LIMIT = 9.0

BUS_POSITIONS_PATH = "/Bus.svc/json/jBusPositions"
ROUTE_SCHEDULE_PATH = "/Bus.svc/json/jRouteSchedule"
ROUTES_PATH = "/Bus.svc/json/jRoutes"


class TokenBucket:
    """Blocking token-bucket limiter shared by every thread using the client."""

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("Rate limit must be greater than zero.")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Take one token, sleeping until one is available. Returns seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
                self._updated = now
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                delay = (1.0 - self._tokens) / self.rate
            self._sleep(delay)
            waited += delay


def parse_local_time(value: str | None, tz: ZoneInfo) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value.strip(), UPSTREAM_TIME_FORMAT).replace(tzinfo=tz)


def _require_time(value: str | None, tz: ZoneInfo, field: str) -> datetime:
    parsed = parse_local_time(value, tz)
    if parsed is None:
        raise ValueError(f"Missing {field}")
    return parsed


def parse_bus_positions(payload: dict[str, Any], tz: ZoneInfo) -> list[UpstreamVehicleObservation]:
    observations: list[UpstreamVehicleObservation] = []
    for raw in payload.get("BusPositions") or []:
        try:
            observations.append(
                UpstreamVehicleObservation(
                    vehicle_id=str(raw["VehicleID"]),
                    route_code=str(raw["RouteID"]),
                    trip_id=str(raw["TripID"]),
                    direction_text=raw.get("DirectionText"),
                    headsign=raw.get("TripHeadsign"),
                    latitude=float(raw["Lat"]),
                    longitude=float(raw["Lon"]),
                    deviation_minutes=float(raw.get("Deviation") or 0.0),
                    timestamp=_require_time(raw.get("DateTime"), tz, "DateTime"),
                    trip_start=_require_time(raw.get("TripStartTime"), tz, "TripStartTime"),
                    trip_end=_require_time(raw.get("TripEndTime"), tz, "TripEndTime"),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning(
                "Skipping malformed bus position for vehicle %s on route %s: %s",
                raw.get("VehicleID"),
                raw.get("RouteID"),
                exc,
            )
    return observations


def parse_route_schedule(payload: dict[str, Any], tz: ZoneInfo) -> list[UpstreamScheduleTrip]:
    trips: list[UpstreamScheduleTrip] = []
    for direction_key in ("Direction0", "Direction1"):
        for raw in payload.get(direction_key) or []:
            stop_times = tuple(
                UpstreamStopTime(
                    stop_id=str(st["StopID"]),
                    stop_name=st.get("StopName"),
                    sequence=int(st.get("StopSeq") or 0),
                    time=_require_time(st.get("Time"), tz, "Time"),
                )
                for st in raw.get("StopTimes") or []
            )
            trips.append(
                UpstreamScheduleTrip(
                    trip_id=str(raw.get("TripID")),
                    route_code=str(raw.get("RouteID")),
                    direction_text=raw.get("TripDirectionText"),
                    headsign=raw.get("TripHeadsign"),
                    start_time=parse_local_time(raw.get("StartTime"), tz),
                    end_time=parse_local_time(raw.get("EndTime"), tz),
                    stop_times=stop_times,
                )
            )
    return trips


def parse_alerts_rss(content: bytes, kind: AlertKind) -> list[UpstreamAlert]:
    root = ET.fromstring(content)
    alerts: list[UpstreamAlert] = []
    for item in root.iter("item"):
        guid = (item.findtext("guid") or "").strip()
        title = (item.findtext("title") or "").strip()
        pub_date = (item.findtext("pubDate") or "").strip()
        if not guid or not pub_date:
            LOGGER.warning("Skipping RSS item without guid or pubDate (title=%r)", title)
            continue
        try:
            published_at = parsedate_to_datetime(pub_date)
        except (TypeError, ValueError):
            LOGGER.warning("Skipping RSS item %s with unparseable pubDate %r", guid, pub_date)
            continue
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)
        alerts.append(
            UpstreamAlert(
                guid=guid,
                title=title,
                description=(item.findtext("description") or "").strip() or None,
                published_at=published_at,
                kind=kind,
                link=(item.findtext("link") or "").strip() or None,
            )
        )
    return alerts


class UpstreamClient:
    """Thin HTTP wrapper; every request passes through the shared limiter."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        rate_limit: float,
        timezone_name: str,
        timeout: float = 15.0,
        alert_urls: dict[AlertKind, str] | None = None,
        session: requests.Session | None = None,
        limiter: TokenBucket | None = None,
    ) -> None:
        if rate_limit > DOCUMENTED_RATE_LIMIT:
            LOGGER.warning(
                "API rate limit set to %s, greater than the documented limit of %s requests/second",
                rate_limit,
                DOCUMENTED_RATE_LIMIT,
            )
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.tz = ZoneInfo(timezone_name)
        self.alert_urls = dict(alert_urls or {})
        self.session = session or requests.Session()
        self.limiter = limiter or TokenBucket(rate_limit)
        self._schedules: SingleFlightCache[tuple[str, date], list[UpstreamScheduleTrip]] = (
            SingleFlightCache("route schedule")
        )

    def close(self) -> None:
        self.session.close()

    def _get(self, url: str, params: dict[str, str] | None = None, api: bool = True) -> requests.Response:
        headers = {API_KEY_HEADER: self.api_key} if api else {}
        waited = self.limiter.acquire()
        if waited:
            LOGGER.debug("Rate limiter delayed request to %s by %.2fs", url, waited)
        LOGGER.debug("Requesting %s %s", url, params or "")
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamFetchError(url, f"HTTP error: {exc}") from exc
        return response

    def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        response = self._get(url, params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFetchError(url, "Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise UpstreamFetchError(url, "Unexpected JSON payload type")
        return payload

    def fetch_vehicle_positions(self) -> list[UpstreamVehicleObservation]:
        payload = self._get_json(BUS_POSITIONS_PATH)
        return parse_bus_positions(payload, self.tz)

    def fetch_routes(self) -> list[str]:
        payload = self._get_json(ROUTES_PATH)
        return [str(raw["RouteID"]) for raw in payload.get("Routes") or [] if raw.get("RouteID")]

    def fetch_route_schedule(self, route_code: str, service_date: date) -> list[UpstreamScheduleTrip]:
        cutoff = service_date - timedelta(days=1)
        evicted = self._schedules.discard_where(lambda key: key[1] < cutoff)
        if evicted:
            LOGGER.debug("Dropped %d cached route schedules before %s", evicted, cutoff)
        return self._schedules.get_or_compute((route_code, service_date), self._download_schedule)

    def _download_schedule(self, key: tuple[str, date]) -> list[UpstreamScheduleTrip]:
        route_code, service_date = key
        payload = self._get_json(
            ROUTE_SCHEDULE_PATH,
            {
                "RouteID": route_code,
                "Date": service_date.isoformat(),
                "IncludingVariations": "false",
            },
        )
        try:
            return parse_route_schedule(payload, self.tz)
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamFetchError(
                f"{self.base_url}{ROUTE_SCHEDULE_PATH}",
                f"Malformed schedule for route {route_code} on {service_date}: {exc}",
            ) from exc

    def fetch_alerts(self, kind: AlertKind) -> list[UpstreamAlert]:
        url = self.alert_urls.get(kind)
        if not url:
            return []
        response = self._get(url, api=False)
        try:
            return parse_alerts_rss(response.content, kind)
        except ET.ParseError as exc:
            raise UpstreamFetchError(url, "Invalid RSS payload") from exc
