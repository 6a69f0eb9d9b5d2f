"""
Custom exceptions for billsync.
"""

from typing import Any, Optional


class BillSyncError(Exception):
    """Base exception for all application-specific errors."""
    pass


class ConfigurationError(BillSyncError):
    """Error related to settings or sync configuration."""
    pass


class SourceUnavailable(BillSyncError):
    """The source database could not be reached. Retryable at cycle level."""
    pass


class DataIntegrityError(BillSyncError):
    """A source row could not be coerced into a SourceRecord."""

    def __init__(self, message: str, position: Any = None, field: Optional[str] = None):
        super().__init__(message)
        self.position = position
        self.field = field


class EvaluationError(BillSyncError):
    """A formula or template could not be evaluated."""

    def __init__(self, message: str, formula: Optional[str] = None):
        super().__init__(message)
        self.formula = formula


class TransformError(BillSyncError):
    """A mandatory posting field could not be produced for a record."""

    def __init__(self, message: str, position: Any = None, field: Optional[str] = None):
        super().__init__(message)
        self.position = position
        self.field = field


class TargetAPIError(BillSyncError):
    """Exception raised for time-tracking API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PersistenceError(BillSyncError):
    """The watermark could not be read or durably written. Fatal."""
    pass
