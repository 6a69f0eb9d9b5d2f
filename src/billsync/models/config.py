"""
Configuration models for sync operations.
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..exceptions import ConfigurationError
from .records import EPOCH, Position, PositionType, position_from_text


class FieldType(str, Enum):
    """Declared type of a source column."""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"


class FailurePolicy(str, Enum):
    """What to do when a single record cannot be transformed or delivered."""
    SKIP = "skip"      # Log the record as skipped and keep going
    ABORT = "abort"    # Stop the cycle, leave the watermark where it was


class SourceField(BaseModel):
    """A column read from the source table."""
    name: str = Field(..., description="Field name exposed to formulas and templates")
    column: Optional[str] = Field(None, description="Column name if different from the field name")
    type: FieldType = Field(FieldType.STRING, description="Type the raw value is coerced to")
    nullable: bool = Field(True, description="Whether NULL is accepted for this column")

    @property
    def column_name(self) -> str:
        return self.column or self.name


class SourceConfig(BaseModel):
    """Where and how billing rows are read."""
    table: str = Field(..., description="Table or view holding the billing rows")
    schema_name: Optional[str] = Field(None, description="Database schema, if not the default")
    position_column: str = Field(..., description="Strictly increasing column used for ordering")
    position_type: PositionType = Field(PositionType.INTEGER)
    fields: List[SourceField] = Field(..., description="Columns exposed to the transformer")

    @field_validator("fields")
    @classmethod
    def validate_unique_fields(cls, v: List[SourceField]) -> List[SourceField]:
        names = [f.name for f in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate source fields: {duplicates}")
        return v

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


class DerivedField(BaseModel):
    """A value computed from a record by a formula or a template."""
    name: str
    formula: Optional[str] = Field(None, description="Expression evaluated against the record")
    template: Optional[str] = Field(None, description="Text template rendered against the record")
    transform: Optional[str] = Field(None, description="Optional transform applied to the result")
    required: bool = Field(True, description="Whether a failure rejects the whole record")
    amount: bool = Field(False, description="Money-like value, rounded to cents and sent as an amount")

    @model_validator(mode="after")
    def validate_single_source(self) -> "DerivedField":
        if bool(self.formula) == bool(self.template):
            raise ValueError(f"Derived field '{self.name}' needs exactly one of formula or template")
        return self


class PostingTemplate(BaseModel):
    """How a record becomes a posting on the time-tracking service."""
    tag_name: str = Field("{case_number}", description="Template for the tag name")
    tag_path: str = Field("/Patricia/", description="Tag path the connector owns")
    description: str = Field("", description="Template for the tag description")
    narrative: str = Field(..., description="Template for the narrative text")
    narrative_override: Optional[str] = Field(None, description="Fixed narrative replacing the template")
    narrative_max_length: Optional[int] = Field(None, gt=0)
    derived_fields: List[DerivedField] = Field(default_factory=list)
    zero_amount_field: Optional[str] = Field(None, description="Field whose codes force zero amounts")
    zero_amount_codes: List[str] = Field(default_factory=list)

    @field_validator("zero_amount_codes", mode="before")
    @classmethod
    def split_codes(cls, v: Union[str, List[str], None]) -> List[str]:
        # Accept the comma separated form used in environment variables
        if v is None:
            return []
        if isinstance(v, str):
            return [code.strip() for code in v.split(",") if code.strip()]
        return [str(code).strip() for code in v if str(code).strip()]


class SyncOptions(BaseModel):
    """Batching, scheduling and failure handling knobs."""
    batch_size: int = Field(500, gt=0, description="Maximum records fetched per cycle")
    poll_interval_seconds: float = Field(60.0, gt=0)
    backoff_base_seconds: float = Field(5.0, gt=0)
    backoff_max_seconds: float = Field(300.0, gt=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    backoff_jitter: float = Field(0.5, ge=0, le=1)
    failure_policy: FailurePolicy = FailurePolicy.SKIP
    malformed_rows: FailurePolicy = FailurePolicy.SKIP
    default_position: Union[int, datetime, str] = Field(
        0, description="Watermark used on first run; 0 means the epoch for timestamp positions"
    )
    key_prefix: str = Field("billsync", description="Prefix of idempotency keys")

    @model_validator(mode="after")
    def validate_backoff(self) -> "SyncOptions":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


class RefreshOptions(BaseModel):
    """Slow loop that re-sends tags of already synced records."""
    enabled: bool = False
    interval_minutes: float = Field(5.0, gt=0)
    full_cycle_days: float = Field(14.0, gt=0)
    min_batch_size: int = Field(10, gt=0)


class SyncConfig(BaseModel):
    """
    Configuration for one source table synced to the time-tracking service.
    This is loaded from a JSON file.
    """
    # Identity
    id: str = Field(..., description="Unique identifier for this config")
    name: str = Field(..., description="Human-readable name")
    description: Optional[str] = Field(None, description="Optional description")

    source: SourceConfig
    posting: PostingTemplate
    options: SyncOptions = Field(default_factory=SyncOptions)
    refresh: RefreshOptions = Field(default_factory=RefreshOptions)

    def default_position(self) -> Position:
        """Watermark to start from when nothing has been persisted yet."""
        value = self.options.default_position
        if self.source.position_type == PositionType.TIMESTAMP and type(value) is int and value == 0:
            return EPOCH
        try:
            return position_from_text(value, self.source.position_type)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"default_position {value!r} is not a valid "
                f"{self.source.position_type.value} position"
            ) from e

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sync configuration: {e}") from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SyncConfig":
        """Load and validate a sync configuration JSON file."""
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"Cannot read sync configuration {config_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Sync configuration {config_path} is not valid JSON: {e}") from e
        return cls.from_dict(data)
