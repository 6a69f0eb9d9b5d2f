"""
Record fetcher: bounded, ordered reads above the watermark.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from ..connectors.base import RawRow, SourceConnector
from ..exceptions import DataIntegrityError
from ..models.config import FailurePolicy, FieldType, SourceConfig
from ..models.records import (
    FetchResult, FieldValue, Position, PositionType, SkippedRow, SourceRecord, position_to_text
)

logger = logging.getLogger(__name__)

_TRUE = {"true", "t", "yes", "y", "1"}
_FALSE = {"false", "f", "no", "n", "0"}


def coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, (int, Decimal)) and not isinstance(value, bool):
        return str(value)
    raise ValueError(f"expected text, got {type(value).__name__}")


def coerce_number(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        number = Decimal(repr(value))
    elif isinstance(value, str):
        number = Decimal(value.strip())
    else:
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    return number


def coerce_integer(value: Any) -> int:
    number = coerce_number(value)
    if number != number.to_integral_value():
        raise ValueError(f"{value!r} is not an integer")
    return int(number)


def coerce_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"expected a timestamp, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError(f"{value!r} is not a boolean")


COERCERS: Dict[FieldType, Callable[[Any], FieldValue]] = {
    FieldType.STRING: coerce_string,
    FieldType.NUMBER: coerce_number,
    FieldType.INTEGER: coerce_integer,
    FieldType.TIMESTAMP: coerce_timestamp,
    FieldType.BOOLEAN: coerce_boolean,
}


class RecordFetcher:
    """
    Reads batches from a SourceConnector and coerces them into SourceRecords.
    """

    def __init__(self, source: SourceConnector, config: SourceConfig,
                 malformed_rows: FailurePolicy = FailurePolicy.SKIP):
        self.source = source
        self.config = config
        self.malformed_rows = malformed_rows

    def coerce_position(self, value: Any) -> Position:
        """
        Parse a raw position value.

        Raises:
            DataIntegrityError: If the value does not match the position type
        """
        try:
            if value is None:
                raise ValueError("position is null")
            if self.config.position_type == PositionType.INTEGER:
                return coerce_integer(value)
            return coerce_timestamp(value)
        except (ValueError, InvalidOperation, TypeError) as e:
            raise DataIntegrityError(
                f"Unparseable position {value!r} in {self.config.table}: {e}",
                position=value,
                field=self.config.position_column,
            ) from e

    def coerce_row(self, position: Position, raw: Dict[str, Any]) -> SourceRecord:
        """
        Coerce one row against the configured field types.

        Raises:
            DataIntegrityError: For the first field that cannot be coerced
        """
        fields: Dict[str, FieldValue] = {}
        for spec in self.config.fields:
            value = raw.get(spec.name)
            if value is None:
                if not spec.nullable:
                    raise DataIntegrityError(
                        f"Field '{spec.name}' is null at position {position_to_text(position)}",
                        position=position,
                        field=spec.name,
                    )
                fields[spec.name] = None
                continue
            try:
                fields[spec.name] = COERCERS[spec.type](value)
            except (ValueError, InvalidOperation, TypeError, UnicodeDecodeError) as e:
                raise DataIntegrityError(
                    f"Field '{spec.name}' at position {position_to_text(position)} "
                    f"is not a valid {spec.type.value}: {e}",
                    position=position,
                    field=spec.name,
                ) from e
        return SourceRecord(position=position, fields=fields)

    def fetch(self, after: Position, limit: int) -> FetchResult:
        """
        Fetch up to `limit` records with position strictly greater than `after`.

        Args:
            after: Current watermark
            limit: Batch size

        Returns:
            FetchResult with records in ascending order and any skipped rows

        Raises:
            SourceUnavailable: If the source cannot be reached
            DataIntegrityError: On an unparseable or out-of-order position, or a
                malformed row when the policy is abort
        """
        if limit <= 0:
            raise ValueError("limit must be positive")

        rows: List[RawRow] = self.source.fetch_rows(after, limit)

        records: List[SourceRecord] = []
        skipped: List[SkippedRow] = []
        previous: Position = after
        last_position: Optional[Position] = None

        for row in rows[:limit]:
            position = self.coerce_position(row.position)
            if position <= previous:
                raise DataIntegrityError(
                    f"Source returned position {position_to_text(position)} after "
                    f"{position_to_text(previous)}; rows must be strictly increasing",
                    position=position,
                )
            previous = position
            last_position = position

            try:
                records.append(self.coerce_row(position, row.fields))
            except DataIntegrityError as e:
                if self.malformed_rows == FailurePolicy.ABORT:
                    raise
                logger.warning(f"Skipping malformed row at position {position_to_text(position)}: {e}")
                skipped.append(SkippedRow(position=position, field=e.field, reason=str(e)))

        return FetchResult(
            records=records,
            skipped=skipped,
            last_position=last_position,
            exhausted=len(rows) < limit,
        )
