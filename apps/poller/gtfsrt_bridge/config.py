"""Command-line flags and environment variables for the bridge."""
from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError

DEFAULT_RAIL_ROUTES = ("RED", "ORANGE", "YELLOW", "GREEN", "BLUE", "SILVER")
DEFAULT_BASE_URL = "https://api.wmata.com"


@dataclass(frozen=True)
class BridgeConfig:
    agency_id: str
    upstream_api_key: str
    static_gtfs_path: Path
    vehicle_poll_interval_seconds: float = 30.0
    alert_poll_interval_seconds: float = 60.0
    upstream_rate_limit_per_second: float = 9.0
    trip_match_score_threshold: float = 1500.0
    route_blacklist: frozenset[str] = frozenset()
    route_static_overrides: Mapping[str, str] = field(default_factory=dict)
    rail_routes: tuple[str, ...] = DEFAULT_RAIL_ROUTES
    agency_timezone: str = "America/New_York"
    upstream_base_url: str = DEFAULT_BASE_URL
    bus_alerts_url: str | None = None
    rail_alerts_url: str | None = None
    http_timeout: float = 15.0
    static_gtfs_url: str | None = None
    output_dir: Path = Path("data/feeds")
    write_json: bool = True
    database_url: str | None = None
    trip_resolver_workers: int = 4
    delay_sign: int = -1
    failure_alert_threshold: int = 5
    discord_webhook_url: str | None = None
    discord_username: str | None = None
    discord_avatar_url: str | None = None
    log_level: str = "INFO"
    once: bool = False
    dry_run: bool = False


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Republish a proprietary real-time transit API as GTFS-realtime feeds."
    )
    parser.add_argument(
        "--agency-id",
        help="Agency id in the static GTFS bundle. Defaults to AGENCY_ID env var.",
    )
    parser.add_argument(
        "--timezone",
        help="Agency time zone for upstream timestamps (default: America/New_York).",
    )
    parser.add_argument(
        "--vehicle-interval",
        type=float,
        help="Seconds between bus position polls (default: 30).",
    )
    parser.add_argument(
        "--alert-interval",
        type=float,
        help="Seconds between alert feed polls (default: 60).",
    )
    parser.add_argument(
        "--rate-limit",
        type=float,
        help="Upstream requests per second shared by all threads (default: 9).",
    )
    parser.add_argument(
        "--score-threshold",
        type=float,
        help="Highest trip alignment score accepted as a match (default: 1500).",
    )
    parser.add_argument(
        "--blacklist",
        help="Comma separated upstream route codes to ignore. Defaults to ROUTE_BLACKLIST env var.",
    )
    parser.add_argument(
        "--override",
        dest="overrides",
        action="append",
        help="Static route override as CODE=SHORT_NAME. Provide once per route.",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        help="Seconds to wait for each upstream response (default: 15).",
    )
    parser.add_argument(
        "--gtfs-path",
        help="Path to the static GTFS zip. Defaults to STATIC_GTFS_PATH env var.",
    )
    parser.add_argument(
        "--gtfs-url",
        help="Download URL used when the static GTFS zip is missing.",
    )
    parser.add_argument(
        "--output-dir",
        help="Directory for the generated feed files (default: data/feeds).",
    )
    parser.add_argument(
        "--no-json",
        action="store_true",
        help="Skip writing JSON projections next to the protobuf feeds.",
    )
    parser.add_argument(
        "--database-url",
        help="PostgreSQL connection string. Defaults to DATABASE_URL env var.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Worker threads used to resolve new trips (default: 4).",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one vehicle cycle and one alert cycle, then exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Poll and process without writing feeds or touching PostgreSQL.",
    )
    return parser.parse_args(argv)


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_overrides(items: Sequence[str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in items:
        code, sep, short_name = item.partition("=")
        code, short_name = code.strip(), short_name.strip()
        if not sep or not code or not short_name:
            raise ConfigurationError(
                f"Invalid route override {item!r}. Use CODE=SHORT_NAME."
            )
        overrides[code] = short_name
    return overrides


def _number(
    value: float | None,
    env: Mapping[str, str],
    env_name: str,
    default: float,
    cast: Callable[[str], float] = float,
) -> float:
    if value is not None:
        return value
    raw = env.get(env_name)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {env_name} value: {raw!r}. Provide a numeric value.") from exc


def load_config(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Merge flags with environment variables and validate the result."""
    env = environ if environ is not None else os.environ

    agency_id = args.agency_id or env.get("AGENCY_ID")
    if not agency_id:
        raise ConfigurationError("Agency id not provided. Use --agency-id or set AGENCY_ID env var.")

    api_key = env.get("UPSTREAM_API_KEY")
    if not api_key:
        raise ConfigurationError("Upstream API key not provided. Set UPSTREAM_API_KEY env var.")

    gtfs_path = args.gtfs_path or env.get("STATIC_GTFS_PATH")
    if not gtfs_path:
        raise ConfigurationError(
            "Static GTFS path not provided. Use --gtfs-path or set STATIC_GTFS_PATH env var."
        )

    timezone_name = args.timezone or env.get("AGENCY_TIMEZONE") or "America/New_York"
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown time zone: {timezone_name!r}") from exc

    vehicle_interval = _number(args.vehicle_interval, env, "VEHICLE_POLL_INTERVAL", 30.0)
    alert_interval = _number(args.alert_interval, env, "ALERT_POLL_INTERVAL", 60.0)
    if vehicle_interval <= 0 or alert_interval <= 0:
        raise ConfigurationError("Polling intervals must be greater than zero.")

    rate_limit = _number(args.rate_limit, env, "UPSTREAM_RATE_LIMIT", 9.0)
    if rate_limit <= 0:
        raise ConfigurationError("Upstream rate limit must be greater than zero.")

    threshold = _number(args.score_threshold, env, "TRIP_MATCH_SCORE_THRESHOLD", 1500.0)
    if threshold < 0:
        raise ConfigurationError("Trip match score threshold must not be negative.")

    http_timeout = _number(args.http_timeout, env, "HTTP_TIMEOUT", 15.0)
    workers = int(_number(args.workers, env, "TRIP_RESOLVER_WORKERS", 4, int))
    if workers < 1:
        raise ConfigurationError("Trip resolver workers must be at least 1.")

    delay_sign = int(_number(None, env, "DELAY_SIGN", -1, int))
    if delay_sign not in (-1, 1):
        raise ConfigurationError("DELAY_SIGN must be 1 or -1.")

    failure_threshold = max(int(_number(None, env, "FAILURE_ALERT_THRESHOLD", 5, int)), 0)

    blacklist = args.blacklist if args.blacklist is not None else env.get("ROUTE_BLACKLIST")
    override_items = args.overrides or _split_list(env.get("ROUTE_STATIC_OVERRIDES"))
    rail_routes = tuple(_split_list(env.get("RAIL_ROUTES"))) or DEFAULT_RAIL_ROUTES

    database_url = args.database_url or env.get("DATABASE_URL")
    if not database_url and not args.dry_run:
        raise ConfigurationError(
            "Database URL not provided. Use --database-url or set DATABASE_URL env var."
        )

    return BridgeConfig(
        agency_id=agency_id,
        upstream_api_key=api_key,
        static_gtfs_path=Path(gtfs_path).expanduser(),
        vehicle_poll_interval_seconds=vehicle_interval,
        alert_poll_interval_seconds=alert_interval,
        upstream_rate_limit_per_second=rate_limit,
        trip_match_score_threshold=threshold,
        route_blacklist=frozenset(_split_list(blacklist)),
        route_static_overrides=parse_overrides(override_items),
        rail_routes=rail_routes,
        agency_timezone=timezone_name,
        upstream_base_url=env.get("UPSTREAM_BASE_URL") or DEFAULT_BASE_URL,
        bus_alerts_url=env.get("BUS_ALERTS_URL") or None,
        rail_alerts_url=env.get("RAIL_ALERTS_URL") or None,
        http_timeout=http_timeout,
        static_gtfs_url=args.gtfs_url or env.get("STATIC_GTFS_URL") or None,
        output_dir=Path(args.output_dir or env.get("OUTPUT_DIR") or "data/feeds").expanduser(),
        write_json=not args.no_json,
        database_url=database_url or None,
        trip_resolver_workers=workers,
        delay_sign=delay_sign,
        failure_alert_threshold=failure_threshold,
        discord_webhook_url=env.get("DISCORD_WEBHOOK_URL") or None,
        discord_username=env.get("DISCORD_USERNAME") or None,
        discord_avatar_url=env.get("DISCORD_AVATAR_URL") or None,
        log_level=(args.log_level or env.get("LOG_LEVEL") or "INFO").upper(),
        once=args.once,
        dry_run=args.dry_run,
    )
