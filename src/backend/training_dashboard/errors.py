from __future__ import annotations

from typing import Optional


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics engine."""


class ConfigError(AnalyticsError):
    """
    Invalid caller input detected before any I/O happens.

    Raised for empty table identifiers, unknown bucket/group keys, bad page
    sizes or TTLs and inverted date ranges.
    """


class FetchError(AnalyticsError):
    """
    A page request against the remote store failed.

    ``offset`` is the offset of the page that failed so callers can tell how far
    the table fetch got before aborting. No partial rows are ever returned
    alongside this error.
    """

    def __init__(self, table: str, offset: int, message: Optional[str] = None) -> None:
        self.table = table
        self.offset = offset
        detail = message or "page request failed"
        super().__init__(f"Error fetching {table} at offset {offset}: {detail}")


class ParseError(AnalyticsError):
    """
    A currency or date value could not be parsed.

    Never propagated out of the engine: ``parse_currency_or_zero`` and
    ``parse_date_or_none`` absorb it into a safe default.
    """
