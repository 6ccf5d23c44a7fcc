"""Convert upstream RSS alerts into GTFS-rt service alerts scoped to canonical routes."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from google.transit import gtfs_realtime_pb2

from .errors import PerItemProcessingError
from .models import UNMAPPABLE, AlertRecord, UpstreamAlert
from .route_mapper import RouteMapper

LOGGER = logging.getLogger(__name__)

TITLE_SEPARATOR = ", "


@dataclass(frozen=True)
class ProcessedAlert:
    record: AlertRecord
    entity: gtfs_realtime_pb2.FeedEntity | None

    @property
    def changed(self) -> bool:
        return self.entity is not None


def translated(text: str, language: str | None = None) -> gtfs_realtime_pb2.TranslatedString:
    message = gtfs_realtime_pb2.TranslatedString()
    translation = message.translation.add()
    translation.text = text
    if language:
        translation.language = language
    return message


def build_alert_entity(record: AlertRecord) -> gtfs_realtime_pb2.FeedEntity:
    entity = gtfs_realtime_pb2.FeedEntity(id=record.guid)
    alert = entity.alert
    if record.title:
        alert.header_text.CopyFrom(translated(record.title))
    if record.description:
        alert.description_text.CopyFrom(translated(record.description))
    for route_id in record.route_ids:
        alert.informed_entity.add().route_id = route_id
    alert.active_period.add().start = int(record.published_at.timestamp())
    return entity


class AlertProcessor:
    """Resolves alert titles to routes and re-emits an alert only when its pub date advances."""

    def __init__(self, route_mapper: RouteMapper, store) -> None:
        self.route_mapper = route_mapper
        self.store = store

    def resolve_routes(self, title: str) -> tuple[str, ...]:
        route_ids: list[str] = []
        for code in title.split(TITLE_SEPARATOR):
            code = code.strip()
            if not code:
                continue
            route_id = self.route_mapper.resolve(code)
            if route_id is not UNMAPPABLE and route_id not in route_ids:
                route_ids.append(route_id)
        return tuple(route_ids)

    def process(self, alert: UpstreamAlert) -> ProcessedAlert | None:
        """Return ``None`` to skip the alert, otherwise the live record and (if changed) its entity."""
        try:
            route_ids = self.resolve_routes(alert.title)
        except Exception as exc:
            raise PerItemProcessingError(f"Error resolving alert routes: {exc}", guid=alert.guid) from exc

        if not route_ids:
            LOGGER.warning(
                "Skipping alert %s: none of the routes in %r could be mapped", alert.guid, alert.title
            )
            return None

        record = AlertRecord(
            guid=alert.guid,
            title=alert.title,
            description=alert.description,
            published_at=alert.published_at,
            route_ids=route_ids,
        )
        last = self.store.last_published(alert.guid)
        if last is not None and alert.published_at <= last:
            LOGGER.debug("Alert %s unchanged since %s", alert.guid, last.isoformat())
            return ProcessedAlert(record=record, entity=None)

        return ProcessedAlert(record=record, entity=build_alert_entity(record))

    def mark_published(self, processed: list[ProcessedAlert]) -> int:
        """Record emitted alerts in the tracking store once the sink has accepted them."""
        count = 0
        for item in processed:
            if not item.changed:
                continue
            record = item.record
            self.store.record_published(record.guid, record.published_at, record.route_ids)
            count += 1
        return count
