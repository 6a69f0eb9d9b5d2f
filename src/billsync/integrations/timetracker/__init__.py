"""Time-tracking service API client."""

from .client import TimeTrackerClient

__all__ = ["TimeTrackerClient"]
