import sys
import threading
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gtfsrt_bridge.models import UNMAPPABLE
from gtfsrt_bridge.route_mapper import (
    BlacklistRule,
    Outcome,
    RouteMapper,
    RuleResult,
    normalize_route_code,
)
from tests.stubs import route


ROUTES = [
    route("r-a12", "A12"),
    route("r-b30", "B30"),
    route("r-x2", "X2"),
    route("r-lc", "lc"),
    route("r-red", "Red", route_type=1),
    route("r-silver", "Silver", route_type=1),
    route("r-express", "EXP", route_type=3),
]


class NormalizeRouteCodeTest(unittest.TestCase):
    def test_strips_variant_markers(self):
        self.assertEqual(normalize_route_code("A12v1"), "A12")
        self.assertEqual(normalize_route_code("B30"), "B30")
        self.assertEqual(normalize_route_code("X2c"), "X2")

    def test_rejects_codes_not_starting_with_upper_alphanumerics(self):
        self.assertIsNone(normalize_route_code("a12"))
        self.assertIsNone(normalize_route_code("-12"))
        self.assertIsNone(normalize_route_code(""))


class RouteMapperTest(unittest.TestCase):
    def test_variant_maps_to_base_route(self):
        mapper = RouteMapper(ROUTES)
        self.assertEqual(mapper.resolve("A12v1"), "r-a12")

    def test_unknown_route_is_tombstoned_and_cached(self):
        mapper = RouteMapper(ROUTES)
        self.assertIs(mapper.resolve("B99"), UNMAPPABLE)
        self.assertIs(mapper.resolve("B99"), UNMAPPABLE)
        self.assertEqual(mapper.lookups, 1)
        self.assertNotIn("B99", mapper.mappings())

    def test_each_code_is_evaluated_once(self):
        mapper = RouteMapper(ROUTES)
        for _ in range(5):
            mapper.resolve("A12v1")
            mapper.resolve("X2")
        self.assertEqual(mapper.lookups, 2)
        self.assertEqual(mapper.mappings(), {"A12v1": "r-a12", "X2": "r-x2"})

    def test_blacklist_stops_before_name_match(self):
        mapper = RouteMapper(ROUTES, blacklist=["A12"])
        self.assertIs(mapper.resolve("A12"), UNMAPPABLE)
        self.assertIs(mapper.resolve("A12v1"), UNMAPPABLE)
        self.assertEqual(mapper.resolve("B30"), "r-b30")

    def test_blacklist_applies_to_raw_code(self):
        rule = BlacklistRule(["A12v1"])
        self.assertIs(rule.apply("A12v1", ROUTES).outcome, Outcome.STOP)
        self.assertIs(rule.apply("A12", ROUTES).outcome, Outcome.NO_MATCH)

    def test_static_override_wins_over_normalization(self):
        mapper = RouteMapper(ROUTES, overrides={"B30": "EXP"})
        self.assertEqual(mapper.resolve("B30"), "r-express")

    def test_override_matches_lowercase_short_name_exactly(self):
        mapper = RouteMapper(ROUTES, overrides={"LC": "lc"})
        self.assertEqual(mapper.resolve("LC"), "r-lc")

    def test_override_to_missing_route_falls_through(self):
        mapper = RouteMapper(ROUTES, overrides={"X2": "NOPE"})
        with self.assertLogs("gtfsrt_bridge.route_mapper", level="WARNING") as captured:
            self.assertEqual(mapper.resolve("X2"), "r-x2")
        self.assertTrue(any("static mapping" in line for line in captured.output))

    def test_override_is_checked_before_blacklist(self):
        mapper = RouteMapper(ROUTES, overrides={"A12": "A12"}, blacklist=["A12"])
        self.assertEqual(mapper.resolve("A12"), "r-a12")
        mapper = RouteMapper(ROUTES, overrides={"A12v1": "B30"}, blacklist=["A12"])
        self.assertEqual(mapper.resolve("A12v1"), "r-b30")
        self.assertIs(mapper.resolve("A12v2"), UNMAPPABLE)

    def test_malformed_code_is_tombstoned(self):
        mapper = RouteMapper(ROUTES)
        with self.assertLogs("gtfsrt_bridge.route_mapper", level="WARNING") as captured:
            self.assertIs(mapper.resolve("a12"), UNMAPPABLE)
        self.assertTrue(any("malformed" in line for line in captured.output))

    def test_rail_routes_match_case_insensitively(self):
        mapper = RouteMapper(ROUTES)
        self.assertEqual(mapper.resolve("RED"), "r-red")
        self.assertEqual(mapper.resolve("SILVER"), "r-silver")

    def test_bus_routes_match_case_sensitively(self):
        mapper = RouteMapper(ROUTES)
        self.assertIs(mapper.resolve("LC"), UNMAPPABLE)

    def test_prime_counts_mapped_codes(self):
        mapper = RouteMapper(ROUTES)
        self.assertEqual(mapper.prime(["A12", "B99", "RED"]), 2)
        self.assertEqual(len(mapper.cache), 3)

    def test_concurrent_resolution_runs_rules_once(self):
        release = threading.Event()
        calls = []

        class SlowRule:
            name = "slow"

            def apply(self, code, routes):
                calls.append(code)
                release.wait(2)
                return RuleResult(Outcome.MATCH, "r-a12")

        mapper = RouteMapper(ROUTES, rules=[SlowRule()])
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(mapper.resolve("A12")))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        release.set()
        for thread in threads:
            thread.join(5)

        self.assertEqual(calls, ["A12"])
        self.assertEqual(results, ["r-a12"] * 8)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
