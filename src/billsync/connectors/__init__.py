"""
Connector framework for billsync.

This package contains the source connector that reads billing rows and the
target connector that delivers postings to the time-tracking service.
"""

from typing import Type

from .base import BaseConnector, ConnectorCapability, RawRow, SourceConnector, TargetConnector
from .sql import SqlSourceConnector
from .timetracker import TimeTrackerConnector

__all__ = [
    "BaseConnector",
    "ConnectorCapability",
    "RawRow",
    "SourceConnector",
    "TargetConnector",
    "SqlSourceConnector",
    "TimeTrackerConnector",
]

# Connector registry for dynamic loading
CONNECTOR_REGISTRY = {
    "sql": SqlSourceConnector,
    "timetracker": TimeTrackerConnector,
}

def get_connector(service_type: str) -> Type[BaseConnector]:
    """Get a connector class by service type."""
    if service_type not in CONNECTOR_REGISTRY:
        raise ValueError(f"Unknown service type: {service_type}")
    return CONNECTOR_REGISTRY[service_type]
