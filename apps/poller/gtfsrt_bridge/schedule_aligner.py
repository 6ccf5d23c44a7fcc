"""Map upstream trips onto canonical GTFS trips by aligning their stop times.

The upstream API identifies trips with its own ids, so each one is matched
against every canonical trip on the same (mapped) route that runs on the
service date. A candidate's score is a distance in minutes: every upstream
stop time either misses the candidate entirely, lands out of sequence, or
lands some number of minutes away from the candidate's scheduled time at the
same stop. The lowest score wins if it is within the configured threshold.
"""
from __future__ import annotations

import logging
import threading
from bisect import bisect_left
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from .cache import SingleFlightCache
from .models import (
    UNMAPPABLE,
    CanonicalStopTime,
    CanonicalTrip,
    TripMapKey,
    Unmappable,
    UpstreamScheduleTrip,
    UpstreamStopTime,
    UpstreamVehicleObservation,
)
from .route_mapper import RouteMapper
from .static_gtfs import CanonicalScheduleProvider

LOGGER = logging.getLogger(__name__)

MISS_PENALTY = 15.0
OUT_OF_ORDER_PENALTY = 15.0
ALL_MISS_SCORE = 4 * 60 * 60


@dataclass(frozen=True)
class _StopGroup:
    times: list[int]
    indices: list[int]

    def index_at_or_after(self, seconds: float) -> int:
        position = bisect_left(self.times, seconds)
        if position >= len(self.times):
            return -1
        return self.indices[position]


def service_midnight(service_date: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(service_date, time(0), tzinfo=tz)


def group_stop_times(stop_times: Sequence[CanonicalStopTime]) -> dict[str, _StopGroup]:
    grouped: dict[str, list[tuple[int, int]]] = defaultdict(list)
    for index, stop_time in enumerate(stop_times):
        grouped[stop_time.stop_code].append((stop_time.scheduled_seconds, index))
    groups = {}
    for stop_code, entries in grouped.items():
        entries.sort()
        groups[stop_code] = _StopGroup(
            times=[seconds for seconds, _ in entries],
            indices=[index for _, index in entries],
        )
    return groups


def score_alignment(
    upstream_stop_times: Iterable[UpstreamStopTime],
    candidate_stop_times: Sequence[CanonicalStopTime],
    midnight: datetime,
) -> float:
    """Score how well a candidate's stop times line up with the upstream trip. Lower is better."""
    groups = group_stop_times(candidate_stop_times)
    last_index = -1
    score = 0.0
    all_misses = True

    for stop_time in sorted(upstream_stop_times, key=lambda st: st.time):
        offset = (stop_time.time - midnight).total_seconds()
        group = groups.get(stop_time.stop_id)
        index = group.index_at_or_after(offset) if group else -1
        if index < 0:
            score += MISS_PENALTY
            continue

        all_misses = False
        if index < last_index:
            score += OUT_OF_ORDER_PENALTY
        score += abs(offset - candidate_stop_times[index].scheduled_seconds) / 60.0
        last_index = index

    if all_misses:
        return float(ALL_MISS_SCORE)
    return score


def best_candidate(
    upstream_stop_times: Sequence[UpstreamStopTime],
    candidates: Iterable[tuple[CanonicalTrip, Sequence[CanonicalStopTime]]],
    midnight: datetime,
) -> tuple[float, CanonicalTrip, Sequence[CanonicalStopTime]] | None:
    best = None
    for trip, stop_times in candidates:
        score = score_alignment(upstream_stop_times, stop_times, midnight)
        if best is None or score < best[0]:
            best = (score, trip, stop_times)
    return best


def describe_pairing(
    upstream_trip: UpstreamScheduleTrip,
    candidate_stop_times: Sequence[CanonicalStopTime],
    midnight: datetime,
) -> str:
    lines = []
    for stop_time in sorted(upstream_trip.stop_times, key=lambda st: st.time):
        lines.append(f"  {stop_time.stop_id} {stop_time.stop_name or ''} {stop_time.time.isoformat()}")
    lines.append("-----")
    for stop_time in candidate_stop_times:
        scheduled = midnight + timedelta(seconds=stop_time.scheduled_seconds)
        lines.append(f"  {stop_time.stop_code} {stop_time.stop_name or ''} {scheduled.isoformat()}")
    return "\n".join(lines)


class ScheduleAligner:
    """Resolves ``(service_date, upstream_trip_id)`` to a canonical trip id, once per key."""

    def __init__(
        self,
        route_mapper: RouteMapper,
        schedule: CanonicalScheduleProvider,
        upstream,
        score_threshold: float,
        timezone_name: str,
        store=None,
        max_workers: int = 4,
    ) -> None:
        self.route_mapper = route_mapper
        self.schedule = schedule
        self.upstream = upstream
        self.score_threshold = score_threshold
        self.tz = ZoneInfo(timezone_name)
        self.store = store
        self.max_workers = max(1, max_workers)
        self.cache: SingleFlightCache[TripMapKey, str | Unmappable] = SingleFlightCache("trip")
        self._executor: ThreadPoolExecutor | None = None
        self._failed_lock = threading.Lock()
        self._failed: set[TripMapKey] = set()

    def preload(self, service_dates: Iterable[date]) -> int:
        if self.store is None:
            return 0
        mappings = self.store.load_trip_mappings(service_dates)
        self.cache.update(mappings.items())
        return len(mappings)

    def resolve(
        self,
        service_date: date,
        trip_id: str,
        route_code: str,
        hint: UpstreamVehicleObservation | None = None,
    ) -> str | Unmappable:
        key = TripMapKey(service_date, trip_id)
        with self._failed_lock:
            failed = key in self._failed
        if failed:
            LOGGER.debug("Upstream trip %s on %s already failed this cycle", trip_id, service_date)
            return UNMAPPABLE
        return self.cache.get_or_compute(key, lambda k: self._resolve_and_record(k, route_code, hint))

    def resolve_many(
        self, observations: Iterable[UpstreamVehicleObservation]
    ) -> dict[TripMapKey, str | Unmappable]:
        """Resolve every uncached trip referenced by ``observations`` on the worker pool.

        Starts a new cycle: keys that failed in the previous cycle are tried
        again, and keys that fail now resolve to ``UNMAPPABLE`` (uncached)
        until the next call.
        """
        with self._failed_lock:
            self._failed.clear()
        pending = {}
        executor = self._ensure_executor()
        for observation in observations:
            key = observation.trip_key
            if key in pending or key in self.cache:
                continue
            if self.route_mapper.resolve(observation.route_code) is UNMAPPABLE:
                continue
            pending[key] = executor.submit(
                self.resolve, key.service_date, key.trip_id, observation.route_code, observation
            )

        results: dict[TripMapKey, str | Unmappable] = {}
        for key, future in pending.items():
            try:
                results[key] = future.result()
            except Exception:
                with self._failed_lock:
                    self._failed.add(key)
                LOGGER.warning(
                    "Resolution of upstream trip %s on %s failed; will retry next cycle",
                    key.trip_id,
                    key.service_date,
                    exc_info=True,
                )
        if pending:
            LOGGER.info(
                "Resolved %d of %d new trip mappings",
                sum(1 for value in results.values() if value is not UNMAPPABLE),
                len(pending),
            )
        return results

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="trip-resolver"
            )
        return self._executor

    def _resolve_and_record(
        self,
        key: TripMapKey,
        route_code: str,
        hint: UpstreamVehicleObservation | None,
    ) -> str | Unmappable:
        value = self._map(key, route_code, hint)
        if self.store is not None:
            self.store.record_trip_mapping(key, value)
        return value

    def _find_upstream_trip(
        self,
        key: TripMapKey,
        route_code: str,
        hint: UpstreamVehicleObservation | None,
    ) -> UpstreamScheduleTrip | None:
        trips = self.upstream.fetch_route_schedule(route_code, key.service_date)
        for trip in trips:
            if trip.trip_id == key.trip_id:
                return trip
        if hint is None:
            return None
        for trip in trips:
            if (
                trip.start_time == hint.trip_start
                and trip.end_time == hint.trip_end
                and trip.direction_text == hint.direction_text
            ):
                return trip
        return None

    def _map(
        self,
        key: TripMapKey,
        route_code: str,
        hint: UpstreamVehicleObservation | None,
    ) -> str | Unmappable:
        route_id = self.route_mapper.resolve(route_code)
        if route_id is UNMAPPABLE:
            LOGGER.warning(
                "Could not map upstream trip %s (could not map route %s)", key.trip_id, route_code
            )
            return UNMAPPABLE

        upstream_trip = self._find_upstream_trip(key, route_code, hint)
        if upstream_trip is None:
            LOGGER.warning(
                "Could not map upstream trip %s on route %s (not in upstream schedule for %s)",
                key.trip_id,
                route_code,
                key.service_date,
            )
            return UNMAPPABLE

        active_services = self.schedule.service_ids_active_on(key.service_date)
        candidates = [
            (trip, self.schedule.stop_times_for_trip(trip.trip_id))
            for trip in self.schedule.trips_for_route(route_id)
            if trip.service_id in active_services
        ]
        if not candidates:
            LOGGER.warning(
                "Could not map upstream trip %s on route %s (no candidates from canonical schedule)",
                key.trip_id,
                route_code,
            )
            return UNMAPPABLE

        midnight = service_midnight(key.service_date, self.tz)
        score, trip, stop_times = best_candidate(upstream_trip.stop_times, candidates, midnight)
        if score > self.score_threshold:
            LOGGER.warning(
                "Could not map upstream trip %s on route %s with score %d; no good match found:\n%s",
                key.trip_id,
                route_code,
                round(score),
                describe_pairing(upstream_trip, stop_times, midnight),
            )
            return UNMAPPABLE

        LOGGER.info(
            "Mapped upstream trip %s to canonical trip %s with score %d",
            key.trip_id,
            trip.trip_id,
            round(score),
        )
        return trip.trip_id
