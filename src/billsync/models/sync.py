"""
Models for sync cycle results and status tracking.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .records import Position, position_to_text


class CoordinatorState(str, Enum):
    """Where the coordinator currently is in its cycle."""
    IDLE = "idle"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    DELIVERING = "delivering"
    COMMITTING = "committing"
    BACKOFF = "backoff"
    HALTED = "halted"


class CycleStatus(str, Enum):
    """Outcome of a single sync cycle."""
    RUNNING = "running"
    IDLE = "idle"              # Nothing above the watermark
    COMPLETED = "completed"    # Batch processed and committed
    ABORTED = "aborted"        # Stopped by failure policy or stop request
    BACKOFF = "backoff"        # Retryable failure, watermark unchanged
    FAILED = "failed"          # Fatal, coordinator halted
    SKIPPED_BUSY = "skipped_busy"


class RecordStatus(str, Enum):
    """Per-record outcome within a cycle."""
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    MALFORMED = "malformed"


class RecordResult(BaseModel):
    """Outcome of one record within a cycle."""
    position: str
    status: RecordStatus
    message: Optional[str] = None

    @classmethod
    def for_position(cls, position: Position, status: RecordStatus, message: Optional[str] = None) -> "RecordResult":
        return cls(position=position_to_text(position), status=status, message=message)


class CycleResult(BaseModel):
    """Represents one sync cycle."""
    id: str
    config_id: str
    status: CycleStatus = CycleStatus.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    watermark_before: Optional[str] = None
    watermark_after: Optional[str] = None
    fetched: int = 0
    delivered: List[RecordResult] = Field(default_factory=list)
    skipped: List[RecordResult] = Field(default_factory=list)
    more_pending: bool = False
    error_message: Optional[str] = None
    execution_time_seconds: Optional[float] = None

    def _finish(self, status: CycleStatus, error_message: Optional[str] = None) -> None:
        self.status = status
        self.error_message = error_message
        self.completed_at = datetime.now(timezone.utc)
        self.execution_time_seconds = (self.completed_at - self.started_at).total_seconds()

    def mark_completed(self, watermark_after: Optional[Position] = None) -> None:
        """Mark the cycle as committed."""
        if watermark_after is not None:
            self.watermark_after = position_to_text(watermark_after)
        self._finish(CycleStatus.COMPLETED)

    def mark_idle(self) -> None:
        self.watermark_after = self.watermark_before
        self._finish(CycleStatus.IDLE)

    def mark_aborted(self, reason: str) -> None:
        self.watermark_after = self.watermark_before
        self._finish(CycleStatus.ABORTED, reason)

    def mark_backoff(self, reason: str) -> None:
        self.watermark_after = self.watermark_before
        self._finish(CycleStatus.BACKOFF, reason)

    def mark_failed(self, error_message: str) -> None:
        """Mark the cycle as failed with a fatal error."""
        self.watermark_after = self.watermark_before
        self._finish(CycleStatus.FAILED, error_message)

    @property
    def committed(self) -> bool:
        return self.status == CycleStatus.COMPLETED

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the cycle."""
        return {
            "id": self.id,
            "config_id": self.config_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "watermark_before": self.watermark_before,
            "watermark_after": self.watermark_after,
            "fetched": self.fetched,
            "delivered_count": len(self.delivered),
            "skipped_count": len(self.skipped),
            "more_pending": self.more_pending,
            "error_message": self.error_message,
            "execution_time_seconds": self.execution_time_seconds,
        }


class RefreshResult(BaseModel):
    """Outcome of one tag refresh run."""
    status: str  # refreshed, reset, failed
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    refreshed: int = 0
    skipped: int = 0
    message: Optional[str] = None
