from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError
from .parsing import parse_date_or_none

Row = Dict[str, Any]

FILTER_OPS = ("eq", "gte", "lte", "is_null", "not_null", "ilike", "in", "or")


@dataclass(frozen=True)
class Filter:
    """
    One comparison of a conjunctive filter.

    Supported operators mirror what the remote store can translate: equality,
    inclusive range bounds, null checks, case-insensitive substring match and
    set membership. An ``or`` filter holds alternative filters in ``value`` and
    matches when any of them does.
    """

    column: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ConfigError(f"Unsupported filter operator {self.op!r}")

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def gte(cls, column: str, value: Any) -> "Filter":
        return cls(column, "gte", value)

    @classmethod
    def lte(cls, column: str, value: Any) -> "Filter":
        return cls(column, "lte", value)

    @classmethod
    def is_null(cls, column: str) -> "Filter":
        return cls(column, "is_null")

    @classmethod
    def not_null(cls, column: str) -> "Filter":
        return cls(column, "not_null")

    @classmethod
    def ilike(cls, column: str, value: str) -> "Filter":
        return cls(column, "ilike", value)

    @classmethod
    def in_(cls, column: str, values: Iterable[Any]) -> "Filter":
        return cls(column, "in", tuple(values))

    @classmethod
    def any_of(cls, *filters: "Filter") -> "Filter":
        return cls("", "or", tuple(filters))

    def matches(self, row: Mapping[str, Any]) -> bool:
        if self.op == "or":
            return any(item.matches(row) for item in self.value)
        actual = row.get(self.column)
        if self.op == "is_null":
            return actual is None
        if self.op == "not_null":
            return actual is not None
        if self.op == "in":
            return actual in self.value
        if self.op == "ilike":
            return actual is not None and str(self.value).lower() in str(actual).lower()
        if actual is None:
            return False

        left, right = _comparable(actual, self.value)
        if left is None or right is None:
            return False
        if self.op == "eq":
            return left == right
        if self.op == "gte":
            return left >= right
        if self.op == "lte":
            return left <= right
        return False


@dataclass(frozen=True)
class Sort:
    column: str
    descending: bool = False


def _comparable(actual: Any, expected: Any) -> Tuple[Any, Any]:
    if isinstance(expected, (datetime, date)):
        return parse_date_or_none(actual), parse_date_or_none(expected)
    if isinstance(expected, (int, float)) and not isinstance(expected, bool):
        try:
            return float(actual), float(expected)
        except (TypeError, ValueError):
            return None, None
    return str(actual), str(expected)


class TableSource:
    """
    Paginated tabular query interface of the remote store.

    ``query`` returns at most ``limit`` rows starting at ``offset`` and raises on
    failure. ``supports_random_access`` tells the bulk fetcher whether pages may
    be requested out of order (and therefore in parallel).
    """

    supports_random_access: bool = False
    max_page_size: int = 1000

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        offset: int = 0,
        limit: int = 1000,
    ) -> List[Row]:
        raise NotImplementedError


class InMemoryTableSource(TableSource):
    """
    Serve table snapshots held in memory.

    Used for inline request payloads and in tests. Filtering and sorting happen
    in Python with the same semantics the SQL source applies in the database.
    """

    def __init__(
        self,
        tables: Mapping[str, Sequence[Mapping[str, Any]]],
        max_page_size: int = 1000,
        supports_random_access: bool = True,
    ) -> None:
        self.tables = {name: [dict(row) for row in rows] for name, rows in tables.items()}
        self.max_page_size = max_page_size
        self.supports_random_access = supports_random_access

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
        offset: int = 0,
        limit: int = 1000,
    ) -> List[Row]:
        if table not in self.tables:
            raise LookupError(f"Unknown table {table!r}")
        rows = [row for row in self.tables[table] if all(f.matches(row) for f in filters)]
        if sort is not None:
            present = [row for row in rows if row.get(sort.column) is not None]
            missing = [row for row in rows if row.get(sort.column) is None]
            present.sort(key=lambda row: row[sort.column], reverse=sort.descending)
            rows = present + missing
        limit = min(limit, self.max_page_size)
        return [dict(row) for row in rows[offset:offset + limit]]
