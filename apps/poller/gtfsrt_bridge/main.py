"""Wire the bridge together and run it until interrupted."""
from __future__ import annotations

import logging
import signal
from datetime import datetime, timedelta
from pathlib import Path
from typing import Sequence
from zoneinfo import ZoneInfo

import requests
from dotenv import load_dotenv

from .alerts import AlertProcessor
from .config import BridgeConfig, load_config, parse_args
from .errors import ConfigurationError, UpstreamFetchError
from .feed_writer import FileFeedSink, LoggingFeedSink
from .models import AlertKind
from .notifications import FailureNotifier
from .observations import ObservationProcessor
from .publisher import PublishDiffEngine, Stream
from .route_mapper import RouteMapper
from .schedule_aligner import ScheduleAligner
from .scheduler import PollScheduler
from .static_gtfs import StaticGtfs, download_bundle
from .store import MemoryTrackingStore, PostgresTrackingStore
from .upstream import UpstreamClient

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent.parent


def load_schedule(config: BridgeConfig) -> StaticGtfs:
    path = config.static_gtfs_path
    if not path.exists():
        if not config.static_gtfs_url:
            raise SystemExit(f"Static GTFS zip {path} does not exist and no STATIC_GTFS_URL is set.")
        try:
            download_bundle(config.static_gtfs_url, path, timeout=max(config.http_timeout, 60))
        except requests.RequestException as exc:
            raise SystemExit(f"Failed to download static GTFS from {config.static_gtfs_url}: {exc}") from exc
    schedule = StaticGtfs.from_zip(path)
    LOGGER.info("Loaded static GTFS from %s", path)
    return schedule


def prime_routes(route_mapper: RouteMapper, upstream: UpstreamClient, config: BridgeConfig) -> None:
    codes = list(config.rail_routes)
    try:
        codes.extend(upstream.fetch_routes())
    except UpstreamFetchError as exc:
        LOGGER.warning("Could not fetch upstream routes; mapping lazily instead: %s", exc)
    route_mapper.prime(codes)


def resume_published(diff_engine: PublishDiffEngine, sink) -> None:
    """Treat entities left live in the output by a previous run as published, so they can be deleted."""
    for stream in Stream:
        ids = sink.live_ids(stream)
        if ids:
            diff_engine.seed(stream, ids)
            LOGGER.info("Resuming %s with %d live entities from the previous run", stream.value, len(ids))


def build_scheduler(config: BridgeConfig, schedule: StaticGtfs, store, sink) -> PollScheduler:
    routes = schedule.routes_for_agency(config.agency_id)
    if not routes:
        raise SystemExit(f"No routes found for agency {config.agency_id!r} in the static GTFS.")

    alert_urls = {}
    if config.bus_alerts_url:
        alert_urls[AlertKind.BUS] = config.bus_alerts_url
    if config.rail_alerts_url:
        alert_urls[AlertKind.RAIL] = config.rail_alerts_url

    upstream = UpstreamClient(
        base_url=config.upstream_base_url,
        api_key=config.upstream_api_key,
        rate_limit=config.upstream_rate_limit_per_second,
        timezone_name=config.agency_timezone,
        timeout=config.http_timeout,
        alert_urls=alert_urls,
    )
    route_mapper = RouteMapper(
        routes,
        overrides=config.route_static_overrides,
        blacklist=config.route_blacklist,
    )
    prime_routes(route_mapper, upstream, config)

    aligner = ScheduleAligner(
        route_mapper,
        schedule,
        upstream,
        score_threshold=config.trip_match_score_threshold,
        timezone_name=config.agency_timezone,
        store=store,
        max_workers=config.trip_resolver_workers,
    )
    today = datetime.now(ZoneInfo(config.agency_timezone)).date()
    aligner.preload([today - timedelta(days=1), today])

    notifier = None
    if config.discord_webhook_url:
        notifier = FailureNotifier(
            config.discord_webhook_url,
            config.failure_alert_threshold,
            username=config.discord_username,
            avatar_url=config.discord_avatar_url,
        )

    diff_engine = PublishDiffEngine(store)
    resume_published(diff_engine, sink)

    return PollScheduler(
        upstream=upstream,
        observation_processor=ObservationProcessor(
            route_mapper, aligner, schedule, delay_sign=config.delay_sign
        ),
        alert_processor=AlertProcessor(route_mapper, store),
        aligner=aligner,
        diff_engine=diff_engine,
        sink=sink,
        config=config,
        notifier=notifier,
        store=store,
    )


def main(argv: Sequence[str] | None = None) -> None:
    load_dotenv(dotenv_path=APP_ROOT / ".env")
    args = parse_args(argv)
    try:
        config = load_config(args)
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    schedule = load_schedule(config)

    if config.dry_run:
        LOGGER.info("Dry run: feeds will not be written and PostgreSQL is not used.")
        store = MemoryTrackingStore()
        sink = LoggingFeedSink()
    else:
        store = PostgresTrackingStore.connect(config.database_url)
        sink = FileFeedSink(config.output_dir, write_json=config.write_json)

    scheduler = None
    try:
        scheduler = build_scheduler(config, schedule, store, sink)

        def _handle_shutdown(signum, frame):
            LOGGER.info("Received signal %s; shutting down bridge.", signum)
            raise SystemExit(0)

        signal.signal(signal.SIGTERM, _handle_shutdown)
        signal.signal(signal.SIGINT, _handle_shutdown)

        if config.once:
            scheduler.run_vehicle_cycle()
            scheduler.run_alert_cycle()
        else:
            scheduler.run_forever()
    finally:
        if scheduler is not None:
            scheduler.stop()
            scheduler.upstream.close()
        store.close()


if __name__ == "__main__":  # pragma: no cover
    main()
