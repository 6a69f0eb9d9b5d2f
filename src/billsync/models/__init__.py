"""
Models for the billsync connector.
"""

from .config import (
    DerivedField, FailurePolicy, FieldType, PostingTemplate, RefreshOptions,
    SourceConfig, SourceField, SyncConfig, SyncOptions
)
from .records import (
    DeliveryOutcome, DeliveryStatus, FetchResult, Position, PositionType, SkippedRow,
    SourceRecord, TransformedPosting, Watermark, position_from_text, position_to_text
)
from .sync import CoordinatorState, CycleResult, CycleStatus, RecordResult, RecordStatus, RefreshResult

__all__ = [
    # Configuration
    "SyncConfig",
    "SourceConfig",
    "SourceField",
    "FieldType",
    "DerivedField",
    "PostingTemplate",
    "SyncOptions",
    "RefreshOptions",
    "FailurePolicy",

    # Records and postings
    "Position",
    "PositionType",
    "position_to_text",
    "position_from_text",
    "SourceRecord",
    "SkippedRow",
    "FetchResult",
    "TransformedPosting",
    "DeliveryOutcome",
    "DeliveryStatus",
    "Watermark",

    # Cycles
    "CoordinatorState",
    "CycleResult",
    "CycleStatus",
    "RecordResult",
    "RecordStatus",
    "RefreshResult",
]
