"""
Models for source records, postings and delivery outcomes.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Position = Union[int, datetime]
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FieldValue = Union[bool, int, Decimal, str, datetime, None]


class PositionType(str, Enum):
    """How a source orders its rows."""
    INTEGER = "integer"
    TIMESTAMP = "timestamp"


def position_to_text(position: Position) -> str:
    """Render a position the same way everywhere it leaves the process."""
    if isinstance(position, datetime):
        if position.tzinfo is None:
            position = position.replace(tzinfo=timezone.utc)
        return position.astimezone(timezone.utc).isoformat()
    return str(position)


def position_from_text(value: Any, position_type: PositionType) -> Position:
    """
    Parse a persisted or configured position.

    Raises:
        ValueError: If the value does not match the position type
    """
    if position_type == PositionType.INTEGER:
        if isinstance(value, bool):
            raise ValueError(f"Invalid integer position: {value!r}")
        return int(value)

    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SourceRecord(BaseModel):
    """A billing/time row read from the practice-management store."""
    model_config = ConfigDict(frozen=True)

    position: Position
    fields: Dict[str, FieldValue] = Field(default_factory=dict)

    def values(self) -> Dict[str, FieldValue]:
        """Field values as a fresh mapping, safe to extend."""
        return dict(self.fields)


class SkippedRow(BaseModel):
    """A source row dropped by the fetcher because it was malformed."""
    model_config = ConfigDict(frozen=True)

    position: Position
    field: Optional[str] = None
    reason: str


class FetchResult(BaseModel):
    """One bounded batch read above the watermark."""
    records: List[SourceRecord] = Field(default_factory=list)
    skipped: List[SkippedRow] = Field(default_factory=list)
    last_position: Optional[Position] = None
    exhausted: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.records and not self.skipped


class TransformedPosting(BaseModel):
    """The time-tracking representation of a SourceRecord."""
    model_config = ConfigDict(frozen=True)

    idempotency_key: str
    position: Position
    tag_name: str
    tag_path: str
    description: str = ""
    narrative: str
    amounts: Dict[str, Decimal] = Field(default_factory=dict)
    attributes: Dict[str, FieldValue] = Field(default_factory=dict)
    content_hash: str = ""

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready body for the target API."""
        return {
            "idempotency_key": self.idempotency_key,
            "source_position": position_to_text(self.position),
            "tag": {
                "name": self.tag_name,
                "path": self.tag_path,
                "description": self.description,
            },
            "narrative": self.narrative,
            "amounts": {name: format(value, "f") for name, value in sorted(self.amounts.items())},
            "attributes": {name: _json_value(value) for name, value in sorted(self.attributes.items())},
            "content_hash": self.content_hash,
        }


def _json_value(value: FieldValue) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return position_to_text(value)
    return value


class DeliveryStatus(str, Enum):
    """Classification of a delivery attempt."""
    DELIVERED = "delivered"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class DeliveryOutcome(BaseModel):
    """Result of submitting one posting (or one tag batch) to the target."""
    model_config = ConfigDict(frozen=True)

    status: DeliveryStatus
    reason: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def delivered(cls, reason: Optional[str] = None, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.DELIVERED, reason=reason, status_code=status_code)

    @classmethod
    def retryable(cls, reason: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.RETRYABLE, reason=reason, status_code=status_code)

    @classmethod
    def permanent(cls, reason: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.PERMANENT, reason=reason, status_code=status_code)

    @property
    def is_delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class Watermark(BaseModel):
    """Persisted form of the last committed position."""
    model_config = ConfigDict(frozen=True)

    position: Position
    position_type: PositionType
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> Dict[str, Any]:
        """Convert to the stored document format."""
        return {
            "position": position_to_text(self.position),
            "position_type": self.position_type.value,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "Watermark":
        """Create instance from a stored document."""
        position_type = PositionType(data["position_type"])
        updated_at = data.get("updated_at")
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
        return cls(
            position=position_from_text(data["position"], position_type),
            position_type=position_type,
            updated_at=updated_at or datetime.now(timezone.utc),
        )
