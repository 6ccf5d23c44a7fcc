"""Exception types raised by the bridge."""
from __future__ import annotations


class BridgeError(Exception):
    pass


class ConfigurationError(BridgeError):
    pass


class UpstreamFetchError(BridgeError):
    """A batch call to the upstream API failed (network, HTTP status or decoding)."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url


class PerItemProcessingError(BridgeError):
    """A single observation or alert could not be converted."""

    def __init__(
        self,
        message: str,
        vehicle_id: str | None = None,
        route_code: str | None = None,
        headsign: str | None = None,
        guid: str | None = None,
    ) -> None:
        super().__init__(message)
        self.vehicle_id = vehicle_id
        self.route_code = route_code
        self.headsign = headsign
        self.guid = guid

    def context(self) -> str:
        if self.guid is not None:
            return f"alert {self.guid}"
        return (
            f"vehicle {self.vehicle_id} on route {self.route_code} "
            f"to {self.headsign or 'unknown headsign'}"
        )
