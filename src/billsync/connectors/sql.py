"""
SQL source connector for the practice-management store.

Rows are read with SQLAlchemy Core against a lightweight table construct
built from the sync configuration, so no ORM mapping or reflection is needed
on the hot path.
"""

import logging
from typing import Any, List, Optional

from sqlalchemy import column, create_engine, func, inspect, select, table, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ..core.config import mask_url
from ..exceptions import SourceUnavailable
from ..models.config import SourceConfig
from .base import RawRow, SourceConnector

logger = logging.getLogger(__name__)

POSITION_LABEL = "_billsync_position"

CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class SqlSourceConnector(SourceConnector):
    """Reads billing rows above a watermark from a relational database."""

    def __init__(self, source: SourceConfig, url: Optional[str] = None, engine: Optional[Engine] = None, **kwargs):
        """
        Initialize the connector.

        Args:
            source: Table, position column and field columns to read
            url: SQLAlchemy database URL, used when no engine is given
            engine: Pre-built engine (tests pass an in-memory SQLite engine)
            **kwargs: Additional configuration parameters
        """
        super().__init__(**kwargs)
        if engine is None and not url:
            raise ValueError("Either url or engine is required")

        self.source = source
        self.url = url
        self.engine = engine or create_engine(url, pool_pre_ping=True, pool_recycle=1800)

        self._position = column(source.position_column)
        self._columns = {f.name: column(f.column_name) for f in source.fields}
        self._table = table(
            source.table,
            self._position,
            *{c.name: c for c in self._columns.values() if c.name != source.position_column}.values(),
            schema=source.schema_name,
        )
        logger.info(f"SQL source {source.table} on {mask_url(str(self.engine.url))}")

    def _select_rows(self, after: Any, limit: int):
        position = self._table.c[self.source.position_column]
        selected = [position.label(POSITION_LABEL)]
        selected += [self._table.c[c.name].label(name) for name, c in self._columns.items()]
        return (
            select(*selected)
            .where(position > after)
            .order_by(position.asc())
            .limit(limit)
        )

    def fetch_rows(self, after: Any, limit: int) -> List[RawRow]:
        """
        Read up to `limit` rows with position strictly greater than `after`.

        Raises:
            SourceUnavailable: On connectivity errors
        """
        query = self._select_rows(after, limit)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(query)
                rows = [dict(row._mapping) for row in result]
        except CONNECTIVITY_ERRORS as e:
            logger.error(f"Source {self.source.table} unavailable: {e}")
            raise SourceUnavailable(f"Source database unavailable: {e}") from e

        raw_rows = []
        for row in rows:
            position = row.pop(POSITION_LABEL)
            raw_rows.append(RawRow(position=position, fields=row))
        logger.debug(f"Fetched {len(raw_rows)} rows from {self.source.table} after {after}")
        return raw_rows

    def count(self) -> int:
        """
        Count rows in the source table.

        Raises:
            SourceUnavailable: On connectivity errors
        """
        query = select(func.count()).select_from(self._table)
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(query).scalar_one())
        except CONNECTIVITY_ERRORS as e:
            raise SourceUnavailable(f"Source database unavailable: {e}") from e

    def has_expected_schema(self) -> bool:
        """Check that the table and every configured column exist."""
        try:
            inspector = inspect(self.engine)
            if not inspector.has_table(self.source.table, schema=self.source.schema_name):
                logger.error(f"Source table {self.source.table} does not exist")
                return False
            existing = {c["name"] for c in inspector.get_columns(self.source.table, schema=self.source.schema_name)}
        except SQLAlchemyError as e:
            logger.error(f"Could not inspect source schema: {e}")
            return False

        expected = {self.source.position_column} | {c.name for c in self._columns.values()}
        missing = sorted(expected - existing)
        if missing:
            logger.error(f"Source table {self.source.table} is missing columns: {missing}")
            return False
        return True

    def test_connection(self) -> bool:
        """Run a trivial query against the source."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Source connection test failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()
