"""Periodic vehicle and alert cycles, each on its own thread."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .alerts import AlertProcessor, ProcessedAlert
from .errors import PerItemProcessingError
from .models import AlertKind
from .notifications import FailureNotifier
from .observations import ObservationProcessor, ProcessedVehicle
from .publisher import PublishDiffEngine, Stream
from .schedule_aligner import ScheduleAligner

LOGGER = logging.getLogger(__name__)

VEHICLE_CYCLE = "vehicles"
ALERT_CYCLE = "alerts"


@dataclass
class CycleStats:
    name: str
    last_success: datetime | None = None
    consecutive_failures: int = 0
    runs: int = 0
    items: int = 0
    skipped: int = 0
    errors: int = 0

    def start(self) -> None:
        self.runs += 1
        self.items = 0
        self.skipped = 0
        self.errors = 0


class PollScheduler:
    """Runs the vehicle and alert cycles at fixed delays until stopped.

    A cycle that fails is logged and skipped; the next one starts after the
    usual delay. Per-item failures never fail the cycle.
    """

    def __init__(
        self,
        upstream,
        observation_processor: ObservationProcessor,
        alert_processor: AlertProcessor,
        aligner: ScheduleAligner,
        diff_engine: PublishDiffEngine,
        sink,
        config,
        notifier: FailureNotifier | None = None,
        store=None,
    ) -> None:
        self.upstream = upstream
        self.observation_processor = observation_processor
        self.alert_processor = alert_processor
        self.aligner = aligner
        self.diff_engine = diff_engine
        self.sink = sink
        self.config = config
        self.notifier = notifier
        self.store = store if store is not None else alert_processor.store
        self.stats = {
            VEHICLE_CYCLE: CycleStats(VEHICLE_CYCLE),
            ALERT_CYCLE: CycleStats(ALERT_CYCLE),
        }
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run_vehicle_cycle(self) -> bool:
        return self._run_cycle(VEHICLE_CYCLE, self._vehicle_cycle)

    def run_alert_cycle(self) -> bool:
        return self._run_cycle(ALERT_CYCLE, self._alert_cycle)

    def _run_cycle(self, name: str, body: Callable[[CycleStats], None]) -> bool:
        stats = self.stats[name]
        stats.start()
        try:
            body(stats)
        except Exception as exc:
            stats.consecutive_failures += 1
            LOGGER.exception(
                "%s cycle failed (%d consecutive failures); last success %s",
                name.capitalize(),
                stats.consecutive_failures,
                stats.last_success.isoformat() if stats.last_success else "never",
            )
            if self.notifier is not None:
                self.notifier.record_failure(name, stats.consecutive_failures, exc)
            return False

        stats.consecutive_failures = 0
        stats.last_success = datetime.now(timezone.utc)
        LOGGER.info(
            "%s cycle complete (items=%d, skipped=%d, errors=%d); last success %s",
            name.capitalize(),
            stats.items,
            stats.skipped,
            stats.errors,
            stats.last_success.isoformat(),
        )
        if self.notifier is not None:
            self.notifier.record_success(name)
        return True

    def _vehicle_cycle(self, stats: CycleStats) -> None:
        observations = self.upstream.fetch_vehicle_positions()
        LOGGER.info("Fetched %d vehicle observations", len(observations))
        self.aligner.resolve_many(observations)

        trip_updates = []
        positions = []
        trip_update_ids: set[str] = set()
        position_ids: set[str] = set()

        for observation in observations:
            stats.items += 1
            try:
                processed = self.observation_processor.process(observation)
            except PerItemProcessingError as exc:
                stats.errors += 1
                LOGGER.warning("Error processing %s: %s", exc.context(), exc, exc_info=True)
                continue

            if processed is None:
                stats.skipped += 1
                processed = self.observation_processor.previous(observation.vehicle_id)
                if processed is None:
                    continue
                self._keep_live(processed, trip_update_ids, position_ids)
                continue

            self._keep_live(processed, trip_update_ids, position_ids)
            if processed.trip_update is not None:
                trip_updates.append(processed.trip_update)
            positions.append(processed.vehicle_position)

        self.diff_engine.publish(Stream.TRIP_UPDATES, trip_updates, trip_update_ids, self.sink)
        self.diff_engine.publish(Stream.VEHICLE_POSITIONS, positions, position_ids, self.sink)

    @staticmethod
    def _keep_live(
        processed: ProcessedVehicle, trip_update_ids: set[str], position_ids: set[str]
    ) -> None:
        if processed.trip_update is not None:
            trip_update_ids.add(processed.trip_update.id)
        position_ids.add(processed.vehicle_position.id)

    def _alert_cycle(self, stats: CycleStats) -> None:
        alerts = []
        for kind in (AlertKind.BUS, AlertKind.RAIL):
            fetched = self.upstream.fetch_alerts(kind)
            LOGGER.info("Fetched %d %s alerts", len(fetched), kind.value)
            alerts.extend(fetched)

        processed_alerts: list[ProcessedAlert] = []
        seen: set[str] = set()
        for alert in alerts:
            if alert.guid in seen:
                continue
            seen.add(alert.guid)
            stats.items += 1
            try:
                processed = self.alert_processor.process(alert)
            except PerItemProcessingError as exc:
                stats.errors += 1
                LOGGER.warning("Error processing %s: %s", exc.context(), exc, exc_info=True)
                continue
            if processed is None or not processed.changed:
                stats.skipped += 1
            if processed is not None:
                processed_alerts.append(processed)

        entities = [item.entity for item in processed_alerts if item.changed]
        current_ids = {item.record.guid for item in processed_alerts}
        self.diff_engine.publish(Stream.ALERTS, entities, current_ids, self.sink)
        self.alert_processor.mark_published(processed_alerts)
        self.store.flush()

    def _loop(self, name: str, interval: float, run: Callable[[], bool]) -> None:
        LOGGER.info("Starting %s cycle (interval=%ss)", name, interval)
        while not self._stop_event.is_set():
            run()
            if self._stop_event.wait(interval):
                break
        LOGGER.info("Stopped %s cycle", name)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Scheduler already started")
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(VEHICLE_CYCLE, self.config.vehicle_poll_interval_seconds, self.run_vehicle_cycle),
                name="vehicle-cycle",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(ALERT_CYCLE, self.config.alert_poll_interval_seconds, self.run_alert_cycle),
                name="alert-cycle",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                LOGGER.warning("%s did not finish within %ss", thread.name, timeout)
        self._threads = []
        self.aligner.shutdown()
        self.store.flush()

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()
