import sys
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gtfsrt_bridge.errors import UpstreamFetchError
from gtfsrt_bridge.models import AlertKind
from gtfsrt_bridge.upstream import (
    TokenBucket,
    UpstreamClient,
    parse_alerts_rss,
    parse_bus_positions,
    parse_route_schedule,
)

TZ = ZoneInfo("America/New_York")

BUS_POSITIONS = {
    "BusPositions": [
        {
            "VehicleID": "7001",
            "RouteID": "A12v1",
            "TripID": "3370001",
            "DirectionText": "NORTH",
            "TripHeadsign": "ADDISON RD STATION",
            "Lat": 38.89,
            "Lon": -76.91,
            "Deviation": 2.5,
            "DateTime": "2024-03-12T08:10:22",
            "TripStartTime": "2024-03-12T08:00:00",
            "TripEndTime": "2024-03-12T08:45:00",
        },
        {
            "VehicleID": "7002",
            "RouteID": "B30",
            "TripID": "3370002",
            "Lat": 38.9,
            "Lon": -77.0,
            "DateTime": None,
            "TripStartTime": "2024-03-12T08:00:00",
            "TripEndTime": "2024-03-12T08:45:00",
        },
    ]
}

ROUTE_SCHEDULE = {
    "Direction0": [
        {
            "TripID": "3370001",
            "RouteID": "A12",
            "TripDirectionText": "NORTH",
            "TripHeadsign": "ADDISON RD STATION",
            "StartTime": "2024-03-12T08:00:00",
            "EndTime": "2024-03-12T08:45:00",
            "StopTimes": [
                {"StopID": "1001", "StopName": "MAIN ST", "StopSeq": 1, "Time": "2024-03-12T08:00:00"},
                {"StopID": "1002", "StopName": "ELM ST", "StopSeq": 2, "Time": "2024-03-12T08:05:00"},
            ],
        }
    ],
    "Direction1": [
        {
            "TripID": "3370003",
            "RouteID": "A12",
            "TripDirectionText": "SOUTH",
            "TripHeadsign": "CAPITOL HEIGHTS",
            "StartTime": "2024-03-12T09:00:00",
            "EndTime": "2024-03-12T09:45:00",
            "StopTimes": [],
        }
    ],
}

RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel>
  <item>
    <guid>a1</guid>
    <title>A12, B30</title>
    <description>Detour due to construction.</description>
    <link>https://example.com/a1</link>
    <pubDate>Tue, 12 Mar 2024 13:05:00 GMT</pubDate>
  </item>
  <item>
    <title>No guid</title>
    <pubDate>Tue, 12 Mar 2024 13:05:00 GMT</pubDate>
  </item>
</channel></rss>
"""


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class StubResponse:
    def __init__(self, payload=None, content=b"", status=200):
        self.payload = payload
        self.content = content
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


class StubSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append((url, params, headers, timeout))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


class ParseTest(unittest.TestCase):
    def test_parse_bus_positions_skips_malformed_entries(self):
        with self.assertLogs("gtfsrt_bridge.upstream", level="WARNING"):
            observations = parse_bus_positions(BUS_POSITIONS, TZ)
        self.assertEqual(len(observations), 1)
        obs = observations[0]
        self.assertEqual(obs.vehicle_id, "7001")
        self.assertEqual(obs.route_code, "A12v1")
        self.assertEqual(obs.deviation_minutes, 2.5)
        self.assertEqual(obs.timestamp, datetime(2024, 3, 12, 8, 10, 22, tzinfo=TZ))
        self.assertEqual(obs.service_date, date(2024, 3, 12))

    def test_parse_route_schedule_reads_both_directions(self):
        trips = parse_route_schedule(ROUTE_SCHEDULE, TZ)
        self.assertEqual([t.trip_id for t in trips], ["3370001", "3370003"])
        first = trips[0]
        self.assertEqual(first.direction_text, "NORTH")
        self.assertEqual([st.stop_id for st in first.stop_times], ["1001", "1002"])
        self.assertEqual(first.stop_times[1].time, datetime(2024, 3, 12, 8, 5, tzinfo=TZ))
        self.assertEqual(trips[1].stop_times, ())

    def test_parse_alerts_rss(self):
        with self.assertLogs("gtfsrt_bridge.upstream", level="WARNING"):
            alerts = parse_alerts_rss(RSS, AlertKind.BUS)
        self.assertEqual(len(alerts), 1)
        item = alerts[0]
        self.assertEqual(item.guid, "a1")
        self.assertEqual(item.title, "A12, B30")
        self.assertEqual(item.link, "https://example.com/a1")
        self.assertEqual(item.published_at, datetime(2024, 3, 12, 13, 5, tzinfo=timezone.utc))


class TokenBucketTest(unittest.TestCase):
    def test_spaces_requests_at_configured_rate(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=4, clock=clock, sleep=clock.sleep)
        waits = [bucket.acquire() for _ in range(3)]
        self.assertEqual(waits[0], 0.0)
        self.assertAlmostEqual(waits[1], 0.25)
        self.assertAlmostEqual(waits[2], 0.25)
        self.assertAlmostEqual(clock.now, 0.5)

    def test_idle_time_does_not_build_a_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        clock.now += 10
        self.assertEqual(bucket.acquire(), 0.0)
        self.assertAlmostEqual(bucket.acquire(), 0.5)

    def test_rejects_non_positive_rate(self):
        with self.assertRaises(ValueError):
            TokenBucket(rate=0)


class UpstreamClientTest(unittest.TestCase):
    BASE = "https://api.example.com"

    def make_client(self, responses, **kwargs):
        clock = FakeClock()
        session = StubSession(responses)
        client = UpstreamClient(
            self.BASE,
            "secret",
            rate_limit=9,
            timezone_name="America/New_York",
            session=session,
            limiter=TokenBucket(9, clock=clock, sleep=clock.sleep),
            **kwargs,
        )
        return client, session

    def test_fetch_vehicle_positions_sends_api_key(self):
        client, session = self.make_client(
            {f"{self.BASE}/Bus.svc/json/jBusPositions": StubResponse(BUS_POSITIONS)}
        )
        with self.assertLogs("gtfsrt_bridge.upstream", level="WARNING"):
            observations = client.fetch_vehicle_positions()
        self.assertEqual([o.vehicle_id for o in observations], ["7001"])
        self.assertEqual(session.requests[0][2], {"api_key": "secret"})

    def test_route_schedule_is_fetched_once_per_route_and_date(self):
        url = f"{self.BASE}/Bus.svc/json/jRouteSchedule"
        client, session = self.make_client({url: StubResponse(ROUTE_SCHEDULE)})
        first = client.fetch_route_schedule("A12", date(2024, 3, 12))
        second = client.fetch_route_schedule("A12", date(2024, 3, 12))
        self.assertIs(first, second)
        self.assertEqual(len(session.requests), 1)
        self.assertEqual(
            session.requests[0][1],
            {"RouteID": "A12", "Date": "2024-03-12", "IncludingVariations": "false"},
        )

    def test_route_schedules_older_than_yesterday_are_dropped(self):
        url = f"{self.BASE}/Bus.svc/json/jRouteSchedule"
        client, session = self.make_client({url: StubResponse(ROUTE_SCHEDULE)})
        client.fetch_route_schedule("A12", date(2024, 3, 11))
        client.fetch_route_schedule("A12", date(2024, 3, 12))
        client.fetch_route_schedule("A12", date(2024, 3, 11))
        self.assertEqual(len(session.requests), 2)

        client.fetch_route_schedule("A12", date(2024, 3, 13))
        client.fetch_route_schedule("A12", date(2024, 3, 11))
        self.assertEqual(len(session.requests), 4)
        self.assertEqual(
            [params["Date"] for _, params, _, _ in session.requests],
            ["2024-03-11", "2024-03-12", "2024-03-13", "2024-03-11"],
        )

    def test_http_errors_become_fetch_errors(self):
        url = f"{self.BASE}/Bus.svc/json/jBusPositions"
        client, _ = self.make_client({url: StubResponse(status=503)})
        with self.assertRaises(UpstreamFetchError) as ctx:
            client.fetch_vehicle_positions()
        self.assertEqual(ctx.exception.url, url)

    def test_connection_errors_become_fetch_errors(self):
        url = f"{self.BASE}/Bus.svc/json/jBusPositions"
        client, _ = self.make_client({url: requests.ConnectionError("refused")})
        with self.assertRaises(UpstreamFetchError):
            client.fetch_vehicle_positions()

    def test_invalid_json_becomes_fetch_error(self):
        url = f"{self.BASE}/Bus.svc/json/jBusPositions"
        client, _ = self.make_client({url: StubResponse(payload=None)})
        with self.assertRaises(UpstreamFetchError):
            client.fetch_vehicle_positions()

    def test_fetch_routes(self):
        url = f"{self.BASE}/Bus.svc/json/jRoutes"
        payload = {"Routes": [{"RouteID": "A12"}, {"RouteID": "B30"}, {"Name": "no id"}]}
        client, _ = self.make_client({url: StubResponse(payload)})
        self.assertEqual(client.fetch_routes(), ["A12", "B30"])

    def test_alerts_without_url_are_empty(self):
        client, session = self.make_client({})
        self.assertEqual(client.fetch_alerts(AlertKind.RAIL), [])
        self.assertEqual(session.requests, [])

    def test_alerts_feed_is_fetched_without_api_key(self):
        url = "https://alerts.example.com/bus.xml"
        client, session = self.make_client(
            {url: StubResponse(content=RSS)}, alert_urls={AlertKind.BUS: url}
        )
        with self.assertLogs("gtfsrt_bridge.upstream", level="WARNING"):
            alerts = client.fetch_alerts(AlertKind.BUS)
        self.assertEqual([a.guid for a in alerts], ["a1"])
        self.assertEqual(session.requests[0][2], {})

    def test_invalid_rss_becomes_fetch_error(self):
        url = "https://alerts.example.com/bus.xml"
        client, _ = self.make_client(
            {url: StubResponse(content=b"<rss><channel>")}, alert_urls={AlertKind.BUS: url}
        )
        with self.assertRaises(UpstreamFetchError):
            client.fetch_alerts(AlertKind.BUS)

    def test_rate_above_documented_limit_warns(self):
        with self.assertLogs("gtfsrt_bridge.upstream", level="WARNING"):
            UpstreamClient(self.BASE, "secret", rate_limit=20, timezone_name="UTC", session=StubSession({}))

    def test_close_closes_session(self):
        client, session = self.make_client({})
        client.close()
        self.assertTrue(session.closed)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
