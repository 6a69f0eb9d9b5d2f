from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billsync.engine.templates import parse_template, render, truncate
from billsync.exceptions import EvaluationError


def test_substitutes_placeholders():
    values = {"case": "P-1001", "hours": Decimal("1.50")}
    assert render("Case {case}: {hours} h", values) == "Case P-1001: 1.50 h"


def test_escaped_braces():
    assert render("{{literal}} {x}", {"x": 1}) == "{literal} 1"
    assert render("}}{{", {}) == "}{"


def test_canonical_values():
    at = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert render("{flag}/{at}", {"flag": True, "at": at}) == "true/2024-01-02T03:04:05+00:00"


def test_unresolved_placeholder_is_an_error():
    with pytest.raises(EvaluationError, match="unresolved"):
        render("Case {missing}", {})


def test_null_placeholder_is_an_error():
    with pytest.raises(EvaluationError, match="null"):
        render("Case {case}", {"case": None})


def test_fallback():
    assert render("{case|n/a}", {}) == "n/a"
    assert render("{case|n/a}", {"case": None}) == "n/a"
    assert render("{case|n/a}", {"case": "P-1"}) == "P-1"
    assert render("{case|}", {}) == ""


def test_empty_string_value_is_not_unresolved():
    assert render("[{note}]", {"note": ""}) == "[]"


@pytest.mark.parametrize("template", ["{a", "a}", "{1bad}", "{a b}", "{}"])
def test_invalid_templates(template):
    with pytest.raises(EvaluationError):
        parse_template(template)


def test_placeholders_in_order_of_first_use():
    assert parse_template("{a} {b} {a} {c|x}").placeholders == ["a", "b", "c"]


def test_truncation_is_deterministic():
    assert render("abcdefghij", {}, max_length=8) == "abcde..."
    assert render("abcdefghij", {}, max_length=20) == "abcdefghij"
    assert truncate("abcdef", 2) == "ab"
