from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigError, FetchError
from .source import Filter, Row, Sort, TableSource

logger = logging.getLogger(__name__)


class BulkFetcher:
    """
    Retrieve complete tables from a store that only serves fixed-size pages.

    Pages are requested from offset 0, advancing by ``page_size``, for as long as
    the previous page came back full. A table whose size is an exact multiple of
    the page size therefore ends on a trailing empty page. When the source
    supports random offset access and ``max_concurrency`` is above 1, pages are
    requested in windows of ``max_concurrency`` offsets and reassembled in
    offset order.

    Any failed page aborts the whole fetch with ``FetchError``; callers never see
    a partial table.
    """

    def __init__(self, source: TableSource, page_size: int = 1000, max_concurrency: int = 1):
        if page_size < 1 or page_size > source.max_page_size:
            raise ConfigError(f"page_size must be between 1 and {source.max_page_size}, got {page_size}")
        if max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.source = source
        self.page_size = page_size
        self.max_concurrency = max_concurrency

    @property
    def parallel(self) -> bool:
        return self.max_concurrency > 1 and self.source.supports_random_access

    async def fetch_all(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
    ) -> List[Row]:
        if not table or not table.strip():
            raise ConfigError("table identifier must not be empty")

        if self.parallel:
            rows, pages = await self._fetch_windows(table, filters, sort)
        else:
            rows, pages = await self._fetch_sequential(table, filters, sort)
        logger.debug("Fetched %d rows from %s in %d page(s)", len(rows), table, pages)
        return rows

    async def fetch_by_keys(
        self,
        table: str,
        column: str,
        keys: Iterable[Any],
        batch_size: int = 1000,
        filters: Sequence[Filter] = (),
        sort: Optional[Sort] = None,
    ) -> List[Row]:
        """
        Fetch every row whose ``column`` is in ``keys``.

        Keys are de-duplicated (first occurrence wins) and sent in batches of
        ``batch_size`` because the store limits set-membership filters.
        """

        if batch_size < 1:
            raise ConfigError(f"batch_size must be at least 1, got {batch_size}")
        unique = list(dict.fromkeys(key for key in keys if key is not None))
        rows: List[Row] = []
        for start in range(0, len(unique), batch_size):
            batch = unique[start:start + batch_size]
            rows.extend(await self.fetch_all(table, [*filters, Filter.in_(column, batch)], sort))
        return rows

    async def _fetch_page(
        self,
        table: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
        offset: int,
    ) -> List[Row]:
        try:
            page = await self.source.query(table, filters, sort, offset, self.page_size)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Page request for %s failed at offset %d: %s", table, offset, exc)
            raise FetchError(table, offset, str(exc)) from exc
        return list(page or [])

    async def _fetch_sequential(
        self,
        table: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
    ) -> Tuple[List[Row], int]:
        rows: List[Row] = []
        offset = 0
        pages = 0
        while True:
            page = await self._fetch_page(table, filters, sort, offset)
            pages += 1
            rows.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size
        return rows, pages

    async def _fetch_windows(
        self,
        table: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
    ) -> Tuple[List[Row], int]:
        rows: List[Row] = []
        offset = 0
        pages = 0
        while True:
            offsets = [offset + index * self.page_size for index in range(self.max_concurrency)]
            window = await self._gather_window(table, filters, sort, offsets)
            for page in window:
                pages += 1
                rows.extend(page)
                if len(page) < self.page_size:
                    return rows, pages
            offset = offsets[-1] + self.page_size

    async def _gather_window(
        self,
        table: str,
        filters: Sequence[Filter],
        sort: Optional[Sort],
        offsets: Sequence[int],
    ) -> List[List[Row]]:
        """Fetch one window of pages; the first failure cancels the pages still running."""

        tasks = [asyncio.ensure_future(self._fetch_page(table, filters, sort, page_offset)) for page_offset in offsets]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            # Collect every outcome so sibling failures are not left unretrieved.
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
