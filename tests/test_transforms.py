from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billsync.engine.transforms import FieldTransformer, PostingTransformer
from billsync.exceptions import EvaluationError, TransformError
from billsync.models.records import SourceRecord

from fakes import make_config


def record(position=101, **fields):
    values = {
        "case_number": "P-1001",
        "amount": Decimal("10"),
        "rate": Decimal("100"),
        "hours": Decimal("1.5"),
        "work_code": "WRK",
        "narrative_text": "Drafted the reply",
    }
    values.update(fields)
    return SourceRecord(position=position, fields=values)


class TestFieldTransformer:
    @pytest.mark.parametrize("value, transform, expected", [
        (Decimal("2.345"), "round_to_cents", Decimal("2.35")),
        (Decimal("2.5"), "round", Decimal("3")),
        (Decimal("2.9"), "int", 2),
        ("12.50", "decimal", Decimal("12.50")),
        (Decimal("2"), "multiply_by_1.5", Decimal("3.0")),
        (Decimal("3"), "divide_by_2", Decimal("1.5")),
        (Decimal("3"), "add_0.25", Decimal("3.25")),
        (Decimal("3"), "subtract_1", Decimal("2")),
        ("abc", "uppercase", "ABC"),
        ("ABC", "lowercase", "abc"),
        ("  x ", "strip", "x"),
        (Decimal("1.50"), "string", "1.50"),
    ])
    def test_transforms(self, value, transform, expected):
        assert FieldTransformer.apply_transform(value, transform) == expected

    def test_no_transform_or_no_value(self):
        assert FieldTransformer.apply_transform("x", None) == "x"
        assert FieldTransformer.apply_transform(None, "round") is None

    @pytest.mark.parametrize("value, transform", [
        ("abc", "round"),
        (Decimal("1"), "divide_by_0"),
        (Decimal("1"), "explode"),
        (True, "round_to_cents"),
    ])
    def test_failures_raise(self, value, transform):
        with pytest.raises(TransformError):
            FieldTransformer.apply_transform(value, transform)

    def test_is_known(self):
        assert FieldTransformer.is_known("round_to_cents")
        assert FieldTransformer.is_known("multiply_by_2.5")
        assert not FieldTransformer.is_known("multiply_by_two")
        assert not FieldTransformer.is_known("float")


class TestPostingTransformer:
    def test_amount_formula_rounded_to_cents(self):
        posting = PostingTransformer(make_config()).transform(record(amount=Decimal("10")))
        assert posting.amounts == {"amount": Decimal("11.00")}
        assert posting.to_payload()["amounts"] == {"amount": "11.00"}

    def test_tag_and_narrative(self):
        posting = PostingTransformer(make_config()).transform(record())
        assert posting.tag_name == "P-1001"
        assert posting.tag_path == "/Patricia/"
        assert posting.description == "Case P-1001"
        assert posting.narrative == "Drafted the reply"

    def test_idempotency_key_from_position(self):
        transformer = PostingTransformer(make_config(options={"key_prefix": "firm"}))
        assert transformer.transform(record(101)).idempotency_key == "firm:101"

        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        transformer = PostingTransformer(make_config(position_type="timestamp", options={"default_position": "1970-01-01T00:00:00+00:00"}))
        assert transformer.transform(record(at)).idempotency_key == "billsync:2024-01-01T00:00:00+00:00"

    def test_deterministic(self):
        transformer = PostingTransformer(make_config())
        first = transformer.transform(record())
        second = PostingTransformer(make_config()).transform(record())
        assert first == second
        assert first.content_hash == second.content_hash
        assert len(first.content_hash) == 32

    def test_hash_changes_with_content(self):
        transformer = PostingTransformer(make_config())
        assert transformer.transform(record(amount=Decimal("10"))).content_hash != \
            transformer.transform(record(amount=Decimal("20"))).content_hash

    def test_derived_fields_see_earlier_fields(self):
        config = make_config(derived_fields=[
            {"name": "fee", "formula": "rate * hours", "amount": True},
            {"name": "label", "template": "{case_number}: {fee}"},
        ])
        posting = PostingTransformer(config).transform(record())
        assert posting.amounts == {"fee": Decimal("150.00")}
        assert posting.attributes == {"label": "P-1001: 150.00"}

    def test_missing_required_field_raises(self):
        config = make_config(derived_fields=[{"name": "fee", "formula": "rate * hours", "amount": True}])
        with pytest.raises(TransformError) as excinfo:
            PostingTransformer(config).transform(record(hours=None))
        assert excinfo.value.field == "fee"
        assert excinfo.value.position == 101
        assert isinstance(excinfo.value.__cause__, EvaluationError)

    def test_optional_field_is_omitted(self):
        config = make_config(derived_fields=[
            {"name": "fee", "formula": "rate * hours", "amount": True, "required": False},
            {"name": "code", "formula": "upper(work_code)"},
        ])
        posting = PostingTransformer(config).transform(record(hours=None))
        assert posting.amounts == {}
        assert posting.attributes == {"code": "WRK"}

    def test_non_numeric_amount_raises(self):
        config = make_config(derived_fields=[{"name": "fee", "formula": "work_code", "amount": True}])
        with pytest.raises(TransformError):
            PostingTransformer(config).transform(record())

    def test_transform_applied_after_formula(self):
        config = make_config(derived_fields=[
            {"name": "minutes", "formula": "hours * 60", "transform": "int"},
        ])
        posting = PostingTransformer(config).transform(record(hours=Decimal("1.51")))
        assert posting.attributes == {"minutes": 90}

    def test_unresolved_narrative_raises(self):
        config = make_config(posting={"narrative": "{narrative_text} ({missing})"})
        with pytest.raises(TransformError) as excinfo:
            PostingTransformer(config).transform(record())
        assert excinfo.value.field == "narrative"

    def test_zero_amount_codes(self):
        config = make_config(posting={"zero_amount_field": "work_code", "zero_amount_codes": "NC, PRO"})
        transformer = PostingTransformer(config)
        assert transformer.transform(record(work_code="NC")).amounts == {"amount": Decimal("0.00")}
        assert transformer.transform(record(work_code="WRK")).amounts == {"amount": Decimal("11.00")}

    def test_narrative_override(self):
        config = make_config(posting={"narrative_override": "See invoice"})
        assert PostingTransformer(config).transform(record()).narrative == "See invoice"

    def test_narrative_max_length(self):
        config = make_config(posting={"narrative_max_length": 10})
        assert PostingTransformer(config).transform(record()).narrative == "Drafted..."

    def test_current_value_is_the_same_named_field(self):
        config = make_config(derived_fields=[{"name": "amount", "formula": "@ * 0.5", "amount": True}])
        assert PostingTransformer(config).transform(record()).amounts == {"amount": Decimal("5.00")}


class TestValidate:
    def test_valid_config(self):
        assert PostingTransformer(make_config()).validate() == []

    def test_reports_problems(self):
        config = make_config(
            derived_fields=[
                {"name": "fee", "formula": "rate * minutes"},
                {"name": "broken", "formula": "1 +"},
                {"name": "odd", "formula": "fee", "transform": "explode"},
                {"name": "current", "formula": "@ + 1"},
            ],
            posting={"narrative": "{narrative_text} {nope}"},
        )
        errors = PostingTransformer(config).validate()
        assert any("minutes" in e for e in errors)
        assert any("broken" in e for e in errors)
        assert any("explode" in e for e in errors)
        assert any("'@'" in e for e in errors)
        assert any("nope" in e for e in errors)
