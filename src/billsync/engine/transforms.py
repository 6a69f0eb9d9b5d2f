"""
Transformation of source records into time-tracking postings.
"""

import hashlib
import json
import logging
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ..exceptions import EvaluationError, TransformError
from ..models.config import DerivedField, SyncConfig
from ..models.records import FieldValue, SourceRecord, TransformedPosting, position_to_text
from .expressions import CENTS, CURRENT_VALUE, DECIMAL_CONTEXT, canonical_text, parse
from .templates import parse_template, render

logger = logging.getLogger(__name__)

POSITION_FIELD = "position"

_PARAMETERIZED = ("multiply_by_", "divide_by_", "add_", "subtract_")
_SIMPLE = {"round", "round_to_cents", "int", "decimal", "string", "uppercase", "lowercase", "strip"}


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    number = Decimal(str(value).strip())
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    return number


class FieldTransformer:
    """
    Named value transforms applied after a derived field is evaluated.
    """

    @staticmethod
    def is_known(transform: str) -> bool:
        """Whether a transform name is part of the vocabulary."""
        if transform in _SIMPLE:
            return True
        for prefix in _PARAMETERIZED:
            if transform.startswith(prefix):
                try:
                    _to_decimal(transform[len(prefix):])
                    return True
                except (InvalidOperation, ValueError, TypeError):
                    return False
        return False

    @staticmethod
    def apply_transform(value: Any, transform: Optional[str]) -> Any:
        """
        Apply a transformation to a value.

        Args:
            value: The value to transform
            transform: The transformation to apply

        Returns:
            Transformed value

        Raises:
            TransformError: If the transform is unknown or does not fit the value
        """
        if not transform or value is None:
            return value

        try:
            if transform == "round":
                return _to_decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP, context=DECIMAL_CONTEXT)
            elif transform == "round_to_cents":
                return _to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP, context=DECIMAL_CONTEXT)
            elif transform == "int":
                return int(_to_decimal(value).to_integral_value(rounding=ROUND_DOWN))
            elif transform == "decimal":
                return _to_decimal(value)
            elif transform == "string":
                return canonical_text(value)
            elif transform == "uppercase":
                return canonical_text(value).upper()
            elif transform == "lowercase":
                return canonical_text(value).lower()
            elif transform == "strip":
                return canonical_text(value).strip()
            elif transform.startswith("multiply_by_"):
                multiplier = _to_decimal(transform.replace("multiply_by_", ""))
                return DECIMAL_CONTEXT.multiply(_to_decimal(value), multiplier)
            elif transform.startswith("divide_by_"):
                divisor = _to_decimal(transform.replace("divide_by_", ""))
                return DECIMAL_CONTEXT.divide(_to_decimal(value), divisor)
            elif transform.startswith("add_"):
                addend = _to_decimal(transform.replace("add_", ""))
                return DECIMAL_CONTEXT.add(_to_decimal(value), addend)
            elif transform.startswith("subtract_"):
                subtrahend = _to_decimal(transform.replace("subtract_", ""))
                return DECIMAL_CONTEXT.subtract(_to_decimal(value), subtrahend)
            else:
                raise TransformError(f"Unknown transform: {transform}")

        except (ArithmeticError, ValueError, TypeError, EvaluationError) as e:
            raise TransformError(f"Transform '{transform}' failed for value {value!r}: {e}") from e


class PostingTransformer:
    """
    Turns a SourceRecord into a TransformedPosting using the configured
    derived fields and templates. Pure: no I/O, no state between calls.
    """

    def __init__(self, config: SyncConfig):
        self.config = config
        self.template = config.posting
        self.key_prefix = config.options.key_prefix
        self.field_transformer = FieldTransformer()

    def idempotency_key(self, record: SourceRecord) -> str:
        """Stable external identifier derived from the record position."""
        return f"{self.key_prefix}:{position_to_text(record.position)}"

    def transform(self, record: SourceRecord) -> TransformedPosting:
        """
        Build the posting for one record.

        Args:
            record: Record read from the source

        Returns:
            The posting, identical for identical input

        Raises:
            TransformError: If a required derived field or a template fails
        """
        scope: Dict[str, Any] = record.values()
        scope.setdefault(POSITION_FIELD, record.position)

        amounts: Dict[str, Decimal] = {}
        attributes: Dict[str, FieldValue] = {}

        for field in self.template.derived_fields:
            try:
                value = self._derive(field, scope)
            except (EvaluationError, TransformError) as e:
                if field.required:
                    raise TransformError(
                        f"Field '{field.name}' failed for position {position_to_text(record.position)}: {e}",
                        position=record.position,
                        field=field.name,
                    ) from e
                logger.debug(f"Optional field '{field.name}' omitted at position {record.position}: {e}")
                continue

            scope[field.name] = value
            if field.amount:
                amounts[field.name] = value
            else:
                attributes[field.name] = value

        if self._is_zero_charge(scope):
            amounts = {name: Decimal("0.00") for name in amounts}

        tag_name = self._render("tag_name", self.template.tag_name, scope, record)
        description = self._render("description", self.template.description, scope, record)
        if self.template.narrative_override:
            narrative = self.template.narrative_override
        else:
            narrative = self._render(
                "narrative", self.template.narrative, scope, record, self.template.narrative_max_length
            )

        posting = TransformedPosting(
            idempotency_key=self.idempotency_key(record),
            position=record.position,
            tag_name=tag_name,
            tag_path=self.template.tag_path,
            description=description,
            narrative=narrative,
            amounts=amounts,
            attributes=attributes,
        )
        return posting.model_copy(update={"content_hash": content_hash(posting)})

    def _derive(self, field: DerivedField, scope: Dict[str, Any]) -> Any:
        if field.formula:
            values = scope
            if field.name in scope:
                values = dict(scope)
                values[CURRENT_VALUE] = scope[field.name]
            value = parse(field.formula).evaluate(values)
        else:
            value = render(field.template, scope)

        value = self.field_transformer.apply_transform(value, field.transform)

        if field.amount:
            if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
                raise TransformError(f"Amount field '{field.name}' is not a number: {value!r}")
            value = Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP, context=DECIMAL_CONTEXT)
        return value

    def _render(self, name: str, source: str, scope: Dict[str, Any], record: SourceRecord,
                max_length: Optional[int] = None) -> str:
        if not source:
            return ""
        try:
            return render(source, scope, max_length=max_length)
        except EvaluationError as e:
            raise TransformError(
                f"Template '{name}' failed for position {position_to_text(record.position)}: {e}",
                position=record.position,
                field=name,
            ) from e

    def _is_zero_charge(self, scope: Dict[str, Any]) -> bool:
        field = self.template.zero_amount_field
        if not field or not self.template.zero_amount_codes:
            return False
        value = scope.get(field)
        if value is None:
            return False
        return canonical_text(value).strip() in self.template.zero_amount_codes

    def validate(self) -> List[str]:
        """
        Check formulas, templates and transforms against the known field names.

        Returns:
            List of error messages, empty when the template set is usable
        """
        errors: List[str] = []
        known = set(self.config.source.field_names())
        known.add(POSITION_FIELD)

        for field in self.template.derived_fields:
            try:
                if field.formula:
                    names = set(parse(field.formula).names)
                    if CURRENT_VALUE in names:
                        names.discard(CURRENT_VALUE)
                        if field.name not in known:
                            errors.append(f"Field '{field.name}' uses '@' but has no current value")
                else:
                    names = set(parse_template(field.template).placeholders)
            except EvaluationError as e:
                errors.append(f"Field '{field.name}': {e}")
                names = set()

            unknown = sorted(names - known)
            if unknown:
                errors.append(f"Field '{field.name}' references unknown fields: {unknown}")
            if field.transform and not FieldTransformer.is_known(field.transform):
                errors.append(f"Field '{field.name}' has unknown transform '{field.transform}'")
            known.add(field.name)

        templates = {
            "tag_name": self.template.tag_name,
            "description": self.template.description,
            "narrative": self.template.narrative,
        }
        for name, source in templates.items():
            if not source:
                continue
            try:
                placeholders = parse_template(source).placeholders
            except EvaluationError as e:
                errors.append(f"Template '{name}': {e}")
                continue
            unknown = sorted(set(placeholders) - known)
            if unknown:
                errors.append(f"Template '{name}' references unknown fields: {unknown}")

        if not self.template.tag_name:
            errors.append("Template 'tag_name' must not be empty")
        return errors


def content_hash(posting: TransformedPosting) -> str:
    """md5 of the canonical JSON payload, excluding the hash itself."""
    payload = posting.to_payload()
    payload.pop("content_hash", None)
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()
