"""Discord webhook alerts for cycles that keep failing."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

import requests

LOGGER = logging.getLogger(__name__)


class FailureNotifier:
    """Posts once per outage of a named cycle and once more when it recovers."""

    def __init__(
        self,
        webhook_url: str | None,
        threshold: int,
        username: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.threshold = max(1, threshold)
        self.username = username
        self.avatar_url = avatar_url
        self._lock = threading.Lock()
        self._alerted: set[str] = set()

    def post(self, content: str, context: str) -> bool:
        """Send ``content`` to the webhook. Delivery problems are logged, never raised."""
        if not self.webhook_url:
            LOGGER.warning("Discord webhook not configured; dropping %s", context)
            return False
        payload: dict[str, object] = {"content": content}
        if self.username:
            payload["username"] = self.username
        if self.avatar_url:
            payload["avatar_url"] = self.avatar_url
        try:
            requests.post(self.webhook_url, json=payload, timeout=10).raise_for_status()
        except requests.RequestException:
            LOGGER.exception("Could not deliver %s to Discord", context)
            return False
        LOGGER.info("Delivered %s to Discord", context)
        return True

    def record_failure(self, cycle: str, failure_count: int, exc: BaseException) -> bool:
        with self._lock:
            if failure_count < self.threshold or cycle in self._alerted:
                return False
            self._alerted.add(cycle)
        content = (
            f":warning: GTFS-rt bridge alert\n"
            f"Cycle: `{cycle}`\n"
            f"Consecutive failures: **{failure_count}** (threshold {self.threshold})\n"
            f"Timestamp (UTC): {datetime.now(timezone.utc).isoformat()}\n"
            f"Last error: `{type(exc).__name__}: {exc}`"
        )
        posted = self.post(content, f"failure alert for {cycle}")
        if posted:
            LOGGER.warning(
                "Sent Discord alert after %d consecutive failures of the %s cycle",
                failure_count,
                cycle,
            )
        return posted

    def record_success(self, cycle: str) -> bool:
        with self._lock:
            if cycle not in self._alerted:
                return False
            self._alerted.discard(cycle)
        content = (
            f":white_check_mark: GTFS-rt bridge recovered\n"
            f"Cycle: `{cycle}`\n"
            f"Timestamp (UTC): {datetime.now(timezone.utc).isoformat()}"
        )
        return self.post(content, f"recovery notice for {cycle}")
