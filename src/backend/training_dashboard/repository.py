from __future__ import annotations

import asyncio
import logging
import threading
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import MetaData, Table, create_engine, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.sql.elements import ColumnElement

from .settings import AnalyticsSettings
from .source import Filter, Row, Sort, TableSource

logger = logging.getLogger(__name__)


class SQLTableSource(TableSource):
    """
    Paginated query interface backed by a relational database via SQLAlchemy.

    Tables are reflected on first use, so column names containing spaces
    (``"DAS Number"``, ``"Date/Time Registration Entered"``) work unchanged.
    Pages are read with ``LIMIT/OFFSET``; when no sort is requested the primary
    key is used so consecutive pages never overlap.
    """

    supports_random_access = True

    def __init__(self, engine: Engine, max_page_size: int = 1000):
        self.engine = engine
        self.max_page_size = max_page_size
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._reflect_lock = threading.Lock()

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        offset: int = 0,
        limit: int = 1000,
    ) -> List[Row]:
        return await asyncio.to_thread(self._query, table, filters, sort, offset, limit)

    def _table(self, name: str) -> Table:
        with self._reflect_lock:
            if name not in self._tables:
                self._tables[name] = Table(name, self._metadata, autoload_with=self.engine)
            return self._tables[name]

    def _query(
        self,
        table_name: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
        offset: int,
        limit: int,
    ) -> List[Row]:
        table = self._table(table_name)
        statement = select(table)
        for item in filters:
            statement = statement.where(self._clause(table, item))

        if sort is not None:
            column = table.c[sort.column]
            statement = statement.order_by(column.desc() if sort.descending else column.asc())
        else:
            statement = statement.order_by(*table.primary_key.columns)

        statement = statement.offset(offset).limit(min(limit, self.max_page_size))
        logger.debug("Querying %s offset=%d limit=%d filters=%d", table_name, offset, limit, len(filters))
        with self.engine.connect() as connection:
            rows = connection.execute(statement).fetchall()
        return [dict(row._mapping) for row in rows]

    @staticmethod
    def _clause(table: Table, item: Filter) -> ColumnElement:
        if item.op == "or":
            return or_(*(SQLTableSource._clause(table, alternative) for alternative in item.value))
        column = table.c[item.column]
        if item.op in ("eq", "gte", "lte") and _stores_text(column, item.value):
            # Text dates may use "T" or a space as separator and may omit the time.
            column = func.replace(column, "T", " ")
            value = _date_text(item.value, lower_bound=item.op == "gte")
        else:
            value = _bind_value(column, item.value)
        if item.op == "eq":
            return column == value
        if item.op == "gte":
            return column >= value
        if item.op == "lte":
            return column <= value
        if item.op == "is_null":
            return column.is_(None)
        if item.op == "not_null":
            return column.is_not(None)
        if item.op == "ilike":
            return column.ilike(f"%{item.value}%")
        if item.op == "in":
            return column.in_([_bind_value(column, entry) for entry in item.value])
        raise ValueError(f"Unsupported filter operator {item.op!r}")


def _stores_text(column: Any, value: Any) -> bool:
    if not isinstance(value, (datetime, date)):
        return False
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        python_type = None
    return python_type not in (datetime, date)


def _date_text(value: Any, lower_bound: bool = False) -> str:
    """
    Render a date bound for comparison against space-separated text dates.

    A lower bound at midnight is rendered as the bare date so that date-only
    values and values carrying a time on that day both sort at or above it.
    """

    if not isinstance(value, datetime):
        return value.isoformat()
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    if lower_bound and value.time() == time.min:
        return value.date().isoformat()
    return value.isoformat(sep=" ")


def _bind_value(column: Any, value: Any) -> Any:
    """Render datetimes as ISO text when the column stores dates as strings."""

    if not _stores_text(column, value):
        return value
    return _date_text(value)


def build_source_from_settings(settings: AnalyticsSettings) -> Optional[TableSource]:
    if settings.database_url:
        engine = create_engine(settings.database_url)
        return SQLTableSource(engine, max_page_size=settings.fetch.page_size)
    return None
