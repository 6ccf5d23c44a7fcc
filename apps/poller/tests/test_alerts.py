import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gtfsrt_bridge.alerts import AlertProcessor
from gtfsrt_bridge.route_mapper import RouteMapper
from gtfsrt_bridge.store import MemoryTrackingStore
from tests.stubs import alert, route

ROUTES = [route("r-a12", "A12"), route("r-b30", "B30"), route("r-red", "Red", route_type=1)]
PUBLISHED = datetime(2024, 3, 12, 13, 0, tzinfo=timezone.utc)


class AlertProcessorTest(unittest.TestCase):
    def setUp(self):
        self.store = MemoryTrackingStore()
        self.processor = AlertProcessor(RouteMapper(ROUTES), self.store)

    def test_builds_alert_for_resolved_routes(self):
        processed = self.processor.process(alert("g1", "A12, Z9, B30", PUBLISHED))

        self.assertTrue(processed.changed)
        self.assertEqual(processed.record.route_ids, ("r-a12", "r-b30"))
        entity = processed.entity
        self.assertEqual(entity.id, "g1")
        self.assertEqual(entity.alert.header_text.translation[0].text, "A12, Z9, B30")
        self.assertEqual(entity.alert.description_text.translation[0].text, "Detour on A12, Z9, B30")
        self.assertEqual([e.route_id for e in entity.alert.informed_entity], ["r-a12", "r-b30"])
        self.assertEqual(entity.alert.active_period[0].start, int(PUBLISHED.timestamp()))

    def test_duplicate_routes_are_collapsed(self):
        processed = self.processor.process(alert("g1", "A12, A12v1, RED", PUBLISHED))
        self.assertEqual(processed.record.route_ids, ("r-a12", "r-red"))

    def test_alert_without_known_routes_is_skipped(self):
        with self.assertLogs("gtfsrt_bridge.alerts", level="WARNING"):
            self.assertIsNone(self.processor.process(alert("g2", "Z1, Z2", PUBLISHED)))
        self.processor.mark_published([])
        self.assertIsNone(self.store.last_published("g2"))

    def test_guid_recorded_once_published(self):
        processed = self.processor.process(alert("g1", "A12", PUBLISHED))
        self.assertIsNone(self.store.last_published("g1"))
        self.assertEqual(self.processor.mark_published([processed]), 1)
        self.assertEqual(self.store.last_published("g1"), PUBLISHED)
        self.assertIn("g1", self.store.published_guids())

    def test_unchanged_alert_is_live_but_not_reemitted(self):
        self.processor.mark_published([self.processor.process(alert("g1", "A12", PUBLISHED))])

        same = self.processor.process(alert("g1", "A12", PUBLISHED))
        older = self.processor.process(alert("g1", "A12", PUBLISHED - timedelta(minutes=5)))
        self.assertFalse(same.changed)
        self.assertEqual(same.record.guid, "g1")
        self.assertFalse(older.changed)
        self.assertEqual(self.processor.mark_published([same, older]), 0)

    def test_newer_pub_date_is_reemitted(self):
        self.processor.mark_published([self.processor.process(alert("g1", "A12", PUBLISHED))])
        later = PUBLISHED + timedelta(minutes=10)
        processed = self.processor.process(alert("g1", "A12, B30", later))
        self.assertTrue(processed.changed)
        self.processor.mark_published([processed])
        self.assertEqual(self.store.last_published("g1"), later)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
