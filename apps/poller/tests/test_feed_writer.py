import json
import sys
import tempfile
import unittest
from pathlib import Path

from google.transit import gtfs_realtime_pb2

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gtfsrt_bridge.feed_writer import FileFeedSink, LoggingFeedSink
from gtfsrt_bridge.publisher import Stream


def position(vehicle_id, latitude=38.9):
    entity = gtfs_realtime_pb2.FeedEntity(id=vehicle_id)
    entity.vehicle.vehicle.id = vehicle_id
    entity.vehicle.position.latitude = latitude
    entity.vehicle.position.longitude = -77.0
    return entity


def read_feed(path):
    message = gtfs_realtime_pb2.FeedMessage()
    message.ParseFromString(path.read_bytes())
    return message


class FileFeedSinkTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.output_dir = Path(self.tmpdir.name) / "feeds"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_writes_full_dataset_with_header(self):
        sink = FileFeedSink(self.output_dir)
        sink.apply(Stream.VEHICLE_POSITIONS, [position("v1"), position("v2")], [])

        message = read_feed(self.output_dir / "vehicle_positions.pb")
        self.assertEqual(message.header.gtfs_realtime_version, "2.0")
        self.assertEqual(message.header.incrementality, gtfs_realtime_pb2.FeedHeader.FULL_DATASET)
        self.assertGreater(message.header.timestamp, 0)
        self.assertEqual([e.id for e in message.entity], ["v1", "v2"])

        payload = json.loads((self.output_dir / "vehicle_positions.json").read_text(encoding="utf-8"))
        self.assertEqual(payload["header"]["gtfs_realtime_version"], "2.0")
        self.assertEqual([e["id"] for e in payload["entity"]], ["v1", "v2"])

    def test_entities_not_reemitted_are_kept(self):
        sink = FileFeedSink(self.output_dir)
        sink.apply(Stream.VEHICLE_POSITIONS, [position("v1"), position("v2")], [])
        sink.apply(Stream.VEHICLE_POSITIONS, [position("v2", latitude=39.0)], [])

        message = read_feed(self.output_dir / "vehicle_positions.pb")
        entities = {e.id: e for e in message.entity}
        self.assertEqual(set(entities), {"v1", "v2"})
        self.assertAlmostEqual(entities["v2"].vehicle.position.latitude, 39.0, places=4)

    def test_deletions_are_written_as_tombstones_once(self):
        sink = FileFeedSink(self.output_dir)
        sink.apply(Stream.TRIP_UPDATES, [position("v1"), position("v2")], [])
        sink.apply(Stream.TRIP_UPDATES, [], ["v1"])

        message = read_feed(self.output_dir / "trip_updates.pb")
        self.assertEqual([(e.id, e.is_deleted) for e in message.entity], [("v2", False), ("v1", True)])

        sink.apply(Stream.TRIP_UPDATES, [], [])
        message = read_feed(self.output_dir / "trip_updates.pb")
        self.assertEqual([e.id for e in message.entity], ["v2"])

    def test_dataset_is_reloaded_after_restart(self):
        FileFeedSink(self.output_dir).apply(Stream.ALERTS, [position("g1")], [])
        restarted = FileFeedSink(self.output_dir)
        self.assertEqual(set(restarted.dataset(Stream.ALERTS)), {"g1"})
        self.assertEqual(restarted.live_ids(Stream.ALERTS), {"g1"})
        self.assertEqual(restarted.live_ids(Stream.TRIP_UPDATES), set())

        restarted.apply(Stream.ALERTS, [], [])
        self.assertEqual([e.id for e in read_feed(self.output_dir / "alerts.pb").entity], ["g1"])

    def test_json_projection_can_be_disabled(self):
        sink = FileFeedSink(self.output_dir, write_json=False)
        sink.apply(Stream.ALERTS, [], [])
        self.assertTrue((self.output_dir / "alerts.pb").exists())
        self.assertFalse((self.output_dir / "alerts.json").exists())

    def test_unreadable_feed_file_is_ignored(self):
        self.output_dir.mkdir(parents=True)
        (self.output_dir / "alerts.pb").write_bytes(b"\xff\xff\xff")
        with self.assertLogs("gtfsrt_bridge.feed_writer", level="WARNING"):
            sink = FileFeedSink(self.output_dir)
        self.assertEqual(sink.dataset(Stream.ALERTS), {})


class LoggingFeedSinkTest(unittest.TestCase):
    def test_logs_counts(self):
        sink = LoggingFeedSink()
        with self.assertLogs("gtfsrt_bridge.feed_writer", level="INFO") as captured:
            sink.apply(Stream.ALERTS, [position("g1")], ["g2"])
        self.assertEqual(sink.calls, 1)
        self.assertIn("1 entities and 1 deletions", captured.output[0])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
