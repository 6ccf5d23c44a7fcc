"""Durable tracking of published alert GUIDs and resolved trip mappings."""
from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone
from typing import Iterable

import psycopg2
from psycopg2.extras import execute_batch

from .models import UNMAPPABLE, TripMapKey, Unmappable

LOGGER = logging.getLogger(__name__)

ALERTS_TABLE = "bridge_published_alerts"
TRIP_MAPPINGS_TABLE = "bridge_trip_mappings"


class MemoryTrackingStore:
    """Tracking store that lives only as long as the process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._alerts: dict[str, tuple[datetime, tuple[str, ...]]] = {}
        self._trip_mappings: dict[TripMapKey, str | Unmappable] = {}

    def last_published(self, guid: str) -> datetime | None:
        with self._lock:
            entry = self._alerts.get(guid)
        return entry[0] if entry else None

    def record_published(self, guid: str, published_at: datetime, route_ids: Iterable[str] = ()) -> None:
        with self._lock:
            self._alerts[guid] = (published_at, tuple(route_ids))

    def published_guids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._alerts)

    def forget(self, guids: Iterable[str]) -> None:
        with self._lock:
            for guid in guids:
                self._alerts.pop(guid, None)

    def record_trip_mapping(self, key: TripMapKey, value: str | Unmappable) -> None:
        with self._lock:
            self._trip_mappings[key] = value

    def load_trip_mappings(self, service_dates: Iterable[date]) -> dict[TripMapKey, str | Unmappable]:
        wanted = set(service_dates)
        with self._lock:
            return {key: value for key, value in self._trip_mappings.items() if key.service_date in wanted}

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.flush()


def ensure_schema(conn: psycopg2.extensions.connection) -> None:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {ALERTS_TABLE} (
                guid TEXT PRIMARY KEY,
                published_at TIMESTAMPTZ NOT NULL,
                route_ids TEXT[] NOT NULL DEFAULT '{{}}',
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {TRIP_MAPPINGS_TABLE} (
                service_date DATE NOT NULL,
                upstream_trip_id TEXT NOT NULL,
                canonical_trip_id TEXT,
                resolved_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (service_date, upstream_trip_id)
            )
            """
        )
    conn.commit()


class PostgresTrackingStore(MemoryTrackingStore):
    """Write-behind store: mutations are buffered and written on ``flush``.

    A NULL ``canonical_trip_id`` row is a persisted tombstone.
    """

    def __init__(self, conn: psycopg2.extensions.connection) -> None:
        super().__init__()
        self.conn = conn
        self._pending_alerts: dict[str, tuple[datetime, tuple[str, ...]]] = {}
        self._pending_deletes: set[str] = set()
        self._pending_trips: dict[TripMapKey, str | Unmappable] = {}
        self._load_alerts()

    @classmethod
    def connect(cls, database_url: str) -> PostgresTrackingStore:
        conn = psycopg2.connect(database_url)
        conn.autocommit = False
        ensure_schema(conn)
        return cls(conn)

    def _load_alerts(self) -> None:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT guid, published_at, route_ids FROM {ALERTS_TABLE}")
            rows = cur.fetchall()
        with self._lock:
            for guid, published_at, route_ids in rows:
                self._alerts[guid] = (published_at, tuple(route_ids or ()))
        LOGGER.info("Loaded %d published alert ids from %s", len(rows), ALERTS_TABLE)

    def record_published(self, guid: str, published_at: datetime, route_ids: Iterable[str] = ()) -> None:
        route_ids = tuple(route_ids)
        with self._lock:
            super().record_published(guid, published_at, route_ids)
            self._pending_alerts[guid] = (published_at, route_ids)
            self._pending_deletes.discard(guid)

    def forget(self, guids: Iterable[str]) -> None:
        guids = list(guids)
        with self._lock:
            super().forget(guids)
            for guid in guids:
                self._pending_alerts.pop(guid, None)
                self._pending_deletes.add(guid)

    def record_trip_mapping(self, key: TripMapKey, value: str | Unmappable) -> None:
        with self._lock:
            super().record_trip_mapping(key, value)
            self._pending_trips[key] = value

    def load_trip_mappings(self, service_dates: Iterable[date]) -> dict[TripMapKey, str | Unmappable]:
        dates = sorted(set(service_dates))
        if not dates:
            return {}
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT service_date, upstream_trip_id, canonical_trip_id
                FROM {TRIP_MAPPINGS_TABLE}
                WHERE service_date = ANY(%s)
                """,
                (dates,),
            )
            rows = cur.fetchall()
        self.conn.commit()
        mappings: dict[TripMapKey, str | Unmappable] = {
            TripMapKey(service_date, trip_id): canonical or UNMAPPABLE
            for service_date, trip_id, canonical in rows
        }
        with self._lock:
            for key, value in mappings.items():
                self._trip_mappings.setdefault(key, value)
        LOGGER.info("Loaded %d persisted trip mappings for %s", len(mappings), dates)
        return mappings

    def flush(self) -> None:
        with self._lock:
            alerts = dict(self._pending_alerts)
            deletes = set(self._pending_deletes)
            trips = dict(self._pending_trips)
            self._pending_alerts.clear()
            self._pending_deletes.clear()
            self._pending_trips.clear()
        if not (alerts or deletes or trips):
            return
        now = datetime.now(timezone.utc)
        try:
            with self.conn.cursor() as cur:
                if alerts:
                    execute_batch(
                        cur,
                        f"""
                        INSERT INTO {ALERTS_TABLE} (guid, published_at, route_ids, updated_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (guid)
                        DO UPDATE SET
                            published_at = EXCLUDED.published_at,
                            route_ids = EXCLUDED.route_ids,
                            updated_at = EXCLUDED.updated_at
                        """,
                        [(guid, ts, list(routes), now) for guid, (ts, routes) in alerts.items()],
                    )
                if deletes:
                    execute_batch(
                        cur,
                        f"DELETE FROM {ALERTS_TABLE} WHERE guid = %s",
                        [(guid,) for guid in sorted(deletes)],
                    )
                if trips:
                    execute_batch(
                        cur,
                        f"""
                        INSERT INTO {TRIP_MAPPINGS_TABLE} (
                            service_date, upstream_trip_id, canonical_trip_id, resolved_at
                        ) VALUES (%s, %s, %s, %s)
                        ON CONFLICT (service_date, upstream_trip_id) DO NOTHING
                        """,
                        [
                            (key.service_date, key.trip_id, None if value is UNMAPPABLE else value, now)
                            for key, value in trips.items()
                        ],
                    )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            with self._lock:
                for guid, entry in alerts.items():
                    self._pending_alerts.setdefault(guid, entry)
                self._pending_deletes.update(deletes - set(self._pending_alerts))
                for key, value in trips.items():
                    self._pending_trips.setdefault(key, value)
            raise
        LOGGER.debug(
            "Flushed tracking store (alerts=%d, deletes=%d, trip_mappings=%d)",
            len(alerts),
            len(deletes),
            len(trips),
        )

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self.conn.close()
