from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from billsync.connectors.base import RawRow
from billsync.connectors.sql import SqlSourceConnector
from billsync.engine.fetcher import RecordFetcher, coerce_boolean, coerce_timestamp
from billsync.exceptions import DataIntegrityError, SourceUnavailable
from billsync.models.config import FailurePolicy

from fakes import InMemorySource, entry, make_config


def fetcher_for(rows, policy=FailurePolicy.SKIP, **config_kwargs):
    config = make_config(**config_kwargs)
    return RecordFetcher(InMemorySource(rows), config.source, policy)


class TestRecordFetcher:
    def test_strictly_above_watermark_in_order(self):
        fetcher = fetcher_for([entry(103), entry(100), entry(101), entry(102)])
        result = fetcher.fetch(100, 10)
        assert [r.position for r in result.records] == [101, 102, 103]
        assert result.last_position == 103
        assert result.exhausted

    def test_coerces_field_types(self):
        result = fetcher_for([entry(101, amount="12.50")]).fetch(0, 10)
        fields = result.records[0].fields
        assert fields["amount"] == Decimal("12.50")
        assert fields["case_number"] == "P-101"

    def test_capped_at_limit(self):
        fetcher = fetcher_for([entry(p) for p in range(101, 106)])
        result = fetcher.fetch(100, 2)
        assert [r.position for r in result.records] == [101, 102]
        assert not result.exhausted

    def test_repeatable(self):
        fetcher = fetcher_for([entry(101), entry(102)])
        assert fetcher.fetch(100, 10) == fetcher.fetch(100, 10)

    def test_empty(self):
        result = fetcher_for([entry(101)]).fetch(101, 10)
        assert result.is_empty
        assert result.last_position is None

    def test_malformed_row_skipped(self):
        fetcher = fetcher_for([entry(101), entry(102, amount="abc"), entry(103)])
        result = fetcher.fetch(100, 10)
        assert [r.position for r in result.records] == [101, 103]
        assert len(result.skipped) == 1
        assert result.skipped[0].position == 102
        assert result.skipped[0].field == "amount"

    def test_trailing_malformed_row_still_covered(self):
        result = fetcher_for([entry(101), entry(102, amount="abc")]).fetch(100, 10)
        assert result.last_position == 102

    def test_non_nullable_field(self):
        result = fetcher_for([entry(101, case_number=None)]).fetch(100, 10)
        assert result.skipped[0].field == "case_number"

    def test_malformed_row_aborts_under_abort_policy(self):
        fetcher = fetcher_for([entry(101), entry(102, amount="abc")], policy=FailurePolicy.ABORT)
        with pytest.raises(DataIntegrityError) as excinfo:
            fetcher.fetch(100, 10)
        assert excinfo.value.position == 102

    def test_unparseable_position_fails_the_fetch(self):
        fetcher = fetcher_for([])
        fetcher.source.fetch_rows = lambda after, limit: [entry(101), RawRow(position="abc", fields={})]
        with pytest.raises(DataIntegrityError):
            fetcher.fetch(100, 10)

    def test_out_of_order_source_fails(self):
        fetcher = fetcher_for([])
        fetcher.source.fetch_rows = lambda after, limit: [entry(102), entry(101)]
        with pytest.raises(DataIntegrityError, match="strictly increasing"):
            fetcher.fetch(100, 10)

    def test_source_unavailable_propagates(self):
        fetcher = fetcher_for([entry(101)])
        fetcher.source.unavailable = True
        with pytest.raises(SourceUnavailable):
            fetcher.fetch(100, 10)

    def test_timestamp_positions(self):
        first = datetime(2024, 1, 1, 9, 0)
        second = "2024-01-01T10:00:00Z"
        config = make_config(position_type="timestamp", options={"default_position": "1970-01-01T00:00:00Z"})
        fetcher = RecordFetcher(InMemorySource(), config.source)
        fetcher.source.fetch_rows = lambda after, limit: [entry(first), entry(second)]
        result = fetcher.fetch(config.default_position(), 10)
        assert [r.position for r in result.records] == [
            datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
        ]


class TestCoercers:
    def test_boolean(self):
        assert coerce_boolean("yes") is True
        assert coerce_boolean(0) is False
        with pytest.raises(ValueError):
            coerce_boolean("maybe")

    def test_naive_timestamp_is_utc(self):
        assert coerce_timestamp("2024-03-01T12:00:00").tzinfo == timezone.utc


@pytest.fixture
def sqlite_engine():
    engine = create_engine("sqlite://", poolclass=StaticPool)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE time_entries (id INTEGER PRIMARY KEY, case_number TEXT, amount TEXT, "
            "rate TEXT, hours TEXT, work_code TEXT, narrative_text TEXT)"
        ))
        for position in (101, 102, 103):
            conn.execute(
                text("INSERT INTO time_entries VALUES (:id, :case, :amount, '100', '1.5', 'WRK', :narrative)"),
                {"id": position, "case": f"P-{position}", "amount": str(position - 91), "narrative": f"Entry {position}"},
            )
    yield engine
    engine.dispose()


class TestSqlSourceConnector:
    def test_fetch_rows(self, sqlite_engine):
        source = SqlSourceConnector(make_config().source, engine=sqlite_engine)
        rows = source.fetch_rows(101, 10)
        assert [row.position for row in rows] == [102, 103]
        assert rows[0].fields["case_number"] == "P-102"
        assert rows[0].fields["amount"] == "11"

    def test_limit(self, sqlite_engine):
        source = SqlSourceConnector(make_config().source, engine=sqlite_engine)
        assert [row.position for row in source.fetch_rows(0, 2)] == [101, 102]

    def test_through_fetcher(self, sqlite_engine):
        config = make_config()
        fetcher = RecordFetcher(SqlSourceConnector(config.source, engine=sqlite_engine), config.source)
        result = fetcher.fetch(100, 10)
        assert [r.fields["amount"] for r in result.records] == [Decimal("10"), Decimal("11"), Decimal("12")]

    def test_count_and_schema(self, sqlite_engine):
        source = SqlSourceConnector(make_config().source, engine=sqlite_engine)
        assert source.count() == 3
        assert source.test_connection()
        assert source.has_expected_schema()

    def test_missing_column_detected(self, sqlite_engine):
        config = make_config()
        config.source.fields[0].column = "matter_number"
        assert not SqlSourceConnector(config.source, engine=sqlite_engine).has_expected_schema()

    def test_connectivity_error_is_source_unavailable(self, tmp_path):
        missing = tmp_path / "missing" / "db.sqlite"
        source = SqlSourceConnector(make_config().source, url=f"sqlite:///{missing}")
        with pytest.raises(SourceUnavailable):
            source.fetch_rows(0, 10)
        assert not source.test_connection()
