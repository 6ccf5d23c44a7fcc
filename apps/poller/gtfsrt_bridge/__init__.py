"""GTFS-realtime bridge for a proprietary transit API."""

__version__ = "0.1.0"
