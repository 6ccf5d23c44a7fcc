"""Output sinks that turn per-cycle entity changes into GTFS-rt feed files."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from google.protobuf.json_format import MessageToDict
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .publisher import Stream, tombstone

LOGGER = logging.getLogger(__name__)

GTFS_REALTIME_VERSION = "2.0"


class FeedSink(Protocol):
    def apply(
        self,
        stream: Stream,
        updated_entities: Sequence[gtfs_realtime_pb2.FeedEntity],
        deleted_ids: Sequence[str],
    ) -> None: ...

    def live_ids(self, stream: Stream) -> set[str]: ...


def build_feed_message(
    entities: Iterable[gtfs_realtime_pb2.FeedEntity],
    timestamp: int | None = None,
) -> gtfs_realtime_pb2.FeedMessage:
    message = gtfs_realtime_pb2.FeedMessage()
    message.header.gtfs_realtime_version = GTFS_REALTIME_VERSION
    message.header.incrementality = gtfs_realtime_pb2.FeedHeader.FULL_DATASET
    message.header.timestamp = int(time.time()) if timestamp is None else timestamp
    for entity in entities:
        message.entity.add().CopyFrom(entity)
    return message


def _write_atomic(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileFeedSink:
    """Keeps the full live dataset per stream and rewrites ``<stream>.pb`` every cycle.

    Deletions from the current cycle are written as ``is_deleted`` entities
    alongside the live ones. Entities not re-emitted in a cycle keep their
    last written value.
    """

    def __init__(self, output_dir: Path, write_json: bool = True) -> None:
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.write_json = write_json
        self._lock = threading.Lock()
        self._datasets: dict[Stream, dict[str, gtfs_realtime_pb2.FeedEntity]] = {}
        for stream in Stream:
            self._datasets[stream] = self._load_existing(stream)

    def pb_path(self, stream: Stream) -> Path:
        return self.output_dir / f"{stream.value}.pb"

    def json_path(self, stream: Stream) -> Path:
        return self.output_dir / f"{stream.value}.json"

    def dataset(self, stream: Stream) -> dict[str, gtfs_realtime_pb2.FeedEntity]:
        with self._lock:
            return dict(self._datasets[stream])

    def live_ids(self, stream: Stream) -> set[str]:
        with self._lock:
            return set(self._datasets[stream])

    def _load_existing(self, stream: Stream) -> dict[str, gtfs_realtime_pb2.FeedEntity]:
        path = self.pb_path(stream)
        if not path.exists():
            return {}
        message = gtfs_realtime_pb2.FeedMessage()
        try:
            message.ParseFromString(path.read_bytes())
        except DecodeError:
            LOGGER.warning("Ignoring unreadable feed file %s", path)
            return {}
        entities = {entity.id: entity for entity in message.entity if not entity.is_deleted}
        LOGGER.info("Loaded %d live entities from %s", len(entities), path)
        return entities

    def apply(
        self,
        stream: Stream,
        updated_entities: Sequence[gtfs_realtime_pb2.FeedEntity],
        deleted_ids: Sequence[str],
    ) -> None:
        with self._lock:
            dataset = dict(self._datasets[stream])
            for entity in updated_entities:
                dataset[entity.id] = entity
            for entity_id in deleted_ids:
                dataset.pop(entity_id, None)

            entities = [dataset[key] for key in sorted(dataset)]
            entities.extend(tombstone(entity_id) for entity_id in deleted_ids)
            message = build_feed_message(entities)

            pb_path = self.pb_path(stream)
            _write_atomic(pb_path, message.SerializeToString())
            if self.write_json:
                payload = MessageToDict(message, preserving_proto_field_name=True)
                _write_atomic(
                    self.json_path(stream),
                    json.dumps(payload, indent=2).encode("utf-8"),
                )
            self._datasets[stream] = dataset

        LOGGER.debug(
            "Wrote %s (live=%d, deleted=%d)", pb_path, len(dataset), len(deleted_ids)
        )


class LoggingFeedSink:
    """Dry-run sink: reports what would have been written."""

    def __init__(self) -> None:
        self.calls = 0

    def live_ids(self, stream: Stream) -> set[str]:
        return set()

    def apply(
        self,
        stream: Stream,
        updated_entities: Sequence[gtfs_realtime_pb2.FeedEntity],
        deleted_ids: Sequence[str],
    ) -> None:
        self.calls += 1
        LOGGER.info(
            "Dry run: %s would publish %d entities and %d deletions",
            stream.value,
            len(updated_entities),
            len(deleted_ids),
        )
