"""Track what each output stream has published and derive adds, updates and deletes."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from google.transit import gtfs_realtime_pb2

LOGGER = logging.getLogger(__name__)


class Stream(str, Enum):
    TRIP_UPDATES = "trip_updates"
    VEHICLE_POSITIONS = "vehicle_positions"
    ALERTS = "alerts"


@dataclass(frozen=True)
class DiffResult:
    added: frozenset[str]
    updated: frozenset[str]
    deleted: frozenset[str]

    @property
    def current(self) -> frozenset[str]:
        return self.added | self.updated


def diff_ids(previous: Iterable[str], current: Iterable[str]) -> DiffResult:
    previous = frozenset(previous)
    current = frozenset(current)
    return DiffResult(
        added=current - previous,
        updated=current & previous,
        deleted=previous - current,
    )


def tombstone(entity_id: str) -> gtfs_realtime_pb2.FeedEntity:
    return gtfs_realtime_pb2.FeedEntity(id=entity_id, is_deleted=True)


class PublishDiffEngine:
    """Keeps the last published id set per stream.

    Alert ids also live in the durable tracking store, so alerts that
    disappeared while the process was down are still deleted after a restart.
    """

    def __init__(self, store=None) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._published: dict[Stream, frozenset[str]] = {stream: frozenset() for stream in Stream}

    def published(self, stream: Stream) -> frozenset[str]:
        with self._lock:
            return self._previous(stream)

    def _previous(self, stream: Stream) -> frozenset[str]:
        if stream is Stream.ALERTS and self.store is not None:
            return self._published[stream] | self.store.published_guids()
        return self._published[stream]

    def seed(self, stream: Stream, ids: Iterable[str]) -> None:
        """Mark ``ids`` as already published, e.g. entities still live in the output after a restart."""
        with self._lock:
            self._published[stream] = self._published[stream] | frozenset(ids)

    def diff(self, stream: Stream, current_ids: Iterable[str]) -> DiffResult:
        """Compute the diff against the last published set without committing it."""
        if stream is Stream.ALERTS and self.store is not None:
            self.store.flush()
        with self._lock:
            return diff_ids(self._previous(stream), current_ids)

    def commit(self, stream: Stream, current_ids: Iterable[str]) -> DiffResult:
        result = self.diff(stream, current_ids)
        self._apply(stream, result)
        return result

    def publish(
        self,
        stream: Stream,
        entities: Iterable[gtfs_realtime_pb2.FeedEntity],
        current_ids: Iterable[str],
        sink,
    ) -> DiffResult:
        """Hand this cycle's entities and deletions to ``sink``, then commit the new id set.

        If the sink raises, nothing is committed and the same deletions are
        derived again on the next cycle.
        """
        current_ids = frozenset(current_ids)
        entities = [entity for entity in entities if entity.id in current_ids]
        result = self.diff(stream, current_ids)
        sink.apply(stream, entities, sorted(result.deleted))
        self._apply(stream, result)
        LOGGER.info(
            "Published %s: %d added, %d updated, %d deleted (%d entities emitted)",
            stream.value,
            len(result.added),
            len(result.updated),
            len(result.deleted),
            len(entities),
        )
        return result

    def _apply(self, stream: Stream, result: DiffResult) -> None:
        with self._lock:
            self._published[stream] = result.current
        if stream is Stream.ALERTS and self.store is not None and result.deleted:
            self.store.forget(result.deleted)
            self.store.flush()
