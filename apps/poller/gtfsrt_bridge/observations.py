"""Convert upstream vehicle observations into GTFS-rt trip updates and vehicle positions."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from google.transit import gtfs_realtime_pb2

from .errors import PerItemProcessingError
from .models import UNMAPPABLE, UpstreamVehicleObservation
from .route_mapper import RouteMapper
from .schedule_aligner import ScheduleAligner
from .static_gtfs import CanonicalScheduleProvider

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedVehicle:
    vehicle_id: str
    trip_update: gtfs_realtime_pb2.FeedEntity | None
    vehicle_position: gtfs_realtime_pb2.FeedEntity


def delay_seconds(deviation_minutes: float, sign: int) -> int:
    return int(round(sign * deviation_minutes * 60))


def check_consistency(observation: UpstreamVehicleObservation) -> list[str]:
    problems = []
    if observation.trip_end <= observation.trip_start:
        problems.append("trip end time precedes trip start time")
    if not observation.trip_start <= observation.timestamp <= observation.trip_end:
        problems.append("update timestamp not between trip start and end times")
    return problems


class ObservationProcessor:
    """Builds entities for one observation at a time, never regressing a vehicle's timestamp."""

    def __init__(
        self,
        route_mapper: RouteMapper,
        aligner: ScheduleAligner,
        schedule: CanonicalScheduleProvider,
        delay_sign: int = -1,
    ) -> None:
        if delay_sign not in (-1, 1):
            raise ValueError("delay_sign must be 1 or -1")
        self.route_mapper = route_mapper
        self.aligner = aligner
        self.schedule = schedule
        self.delay_sign = delay_sign
        self._lock = threading.Lock()
        self._last_applied: dict[str, datetime] = {}
        self._emitted: dict[str, ProcessedVehicle] = {}
        self.skipped = 0

    def last_applied(self, vehicle_id: str) -> datetime | None:
        with self._lock:
            return self._last_applied.get(vehicle_id)

    def previous(self, vehicle_id: str) -> ProcessedVehicle | None:
        with self._lock:
            return self._emitted.get(vehicle_id)

    def process(self, observation: UpstreamVehicleObservation) -> ProcessedVehicle | None:
        """Return fresh entities, or ``None`` when the observation is not newer than the last one applied."""
        vehicle_id = observation.vehicle_id
        with self._lock:
            last = self._last_applied.get(vehicle_id)
        if last is not None and observation.timestamp <= last:
            LOGGER.debug(
                "Skipping observation for vehicle %s at %s (last applied %s)",
                vehicle_id,
                observation.timestamp.isoformat(),
                last.isoformat(),
            )
            with self._lock:
                self.skipped += 1
            return None

        try:
            processed = self._build(observation)
        except PerItemProcessingError:
            raise
        except Exception as exc:
            raise PerItemProcessingError(
                f"Error constructing update: {exc}",
                vehicle_id=vehicle_id,
                route_code=observation.route_code,
                headsign=observation.headsign,
            ) from exc

        with self._lock:
            current = self._last_applied.get(vehicle_id)
            if current is not None and observation.timestamp <= current:
                self.skipped += 1
                return None
            self._last_applied[vehicle_id] = observation.timestamp
            self._emitted[vehicle_id] = processed
        return processed

    def _build(self, observation: UpstreamVehicleObservation) -> ProcessedVehicle:
        problems = check_consistency(observation)
        if problems:
            LOGGER.debug(
                "Update for vehicle %s on route %s is inconsistent: %s",
                observation.vehicle_id,
                observation.route_code,
                "; ".join(problems),
            )

        route_id = self.route_mapper.resolve(observation.route_code)
        trip_id = UNMAPPABLE
        if route_id is not UNMAPPABLE:
            trip_id = self.aligner.resolve(
                observation.service_date,
                observation.trip_id,
                observation.route_code,
                hint=observation,
            )

        trip_descriptor = gtfs_realtime_pb2.TripDescriptor()
        if route_id is not UNMAPPABLE:
            trip_descriptor.route_id = route_id
        if trip_id is not UNMAPPABLE:
            trip_descriptor.trip_id = trip_id

        vehicle_descriptor = gtfs_realtime_pb2.VehicleDescriptor(id=observation.vehicle_id)

        trip_update_entity = None
        if trip_id is not UNMAPPABLE:
            stop_time_update = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate()
            stop_time_update.departure.delay = delay_seconds(
                observation.deviation_minutes, self.delay_sign
            )
            stop_times = self.schedule.stop_times_for_trip(trip_id)
            if stop_times:
                first = stop_times[0]
                stop_time_update.stop_id = first.stop_id
                stop_time_update.stop_sequence = first.stop_sequence

            trip_update_entity = gtfs_realtime_pb2.FeedEntity(id=observation.vehicle_id)
            trip_update = trip_update_entity.trip_update
            trip_update.trip.CopyFrom(trip_descriptor)
            trip_update.vehicle.CopyFrom(vehicle_descriptor)
            trip_update.stop_time_update.add().CopyFrom(stop_time_update)
            trip_update.timestamp = int(observation.timestamp.timestamp())

        position_entity = gtfs_realtime_pb2.FeedEntity(id=observation.vehicle_id)
        vehicle_position = position_entity.vehicle
        vehicle_position.trip.CopyFrom(trip_descriptor)
        vehicle_position.vehicle.CopyFrom(vehicle_descriptor)
        vehicle_position.position.latitude = observation.latitude
        vehicle_position.position.longitude = observation.longitude
        vehicle_position.timestamp = int(observation.timestamp.timestamp())

        return ProcessedVehicle(
            vehicle_id=observation.vehicle_id,
            trip_update=trip_update_entity,
            vehicle_position=position_entity,
        )
