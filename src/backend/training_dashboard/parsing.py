"""
Tolerant parsers shared by every aggregation.

The store is known to contain malformed amounts and dates. These helpers are
the single place where a parse failure is absorbed: amounts degrade to 0 and
dates to ``None`` so one bad row never aborts an aggregation over thousands.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import ConfigError, ParseError
from .models import ZERO

logger = logging.getLogger(__name__)

GRANULARITIES = ("day", "week", "month", "year")

_CURRENCY_NOISE = re.compile(r"[$,\s]")
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_DATE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%Y/%m/%d",
)


def parse_currency(value: Any) -> Decimal:
    """Strictly parse a formatted amount such as ``"$1,234.56"``; raises ``ParseError``."""

    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        candidate = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = _CURRENCY_NOISE.sub("", value)
        if not _NUMBER.match(cleaned):
            raise ParseError(f"not a currency amount: {value!r}")
        try:
            candidate = Decimal(cleaned)
        except InvalidOperation as exc:
            raise ParseError(f"not a currency amount: {value!r}") from exc
    else:
        raise ParseError(f"unsupported currency value: {value!r}")

    if not candidate.is_finite():
        raise ParseError(f"non-finite currency amount: {value!r}")
    return candidate


def parse_currency_or_zero(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        return parse_currency(value)
    except ParseError:
        logger.debug("Treating unparseable amount %r as 0", value)
        return ZERO


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: Any) -> datetime:
    """
    Parse an ISO 8601 (or US ``MM/DD/YYYY``) timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC. Raises ``ParseError`` on failure.
    """

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ParseError(f"unsupported date value: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    raise ParseError(f"not a date: {value!r}")


def parse_date_or_none(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_date(value)
    except ParseError:
        logger.debug("Excluding unparseable date %r", value)
        return None


def years_before(moment: datetime, years: int) -> datetime:
    """Same calendar instant ``years`` earlier; 29 February maps to 28 February."""

    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(moment: datetime) -> datetime:
    first = month_start(moment)
    return month_start(first - timedelta(days=1))


def bucket_key(moment: datetime, granularity: str) -> str:
    """
    Calendar bucket for ``moment``.

    Keys sort chronologically as strings: ``YYYY-MM-DD`` for day and week (weeks
    start on Sunday and are keyed by their first day), ``YYYY-MM`` for month and
    ``YYYY`` for year.
    """

    if granularity == "day":
        return moment.date().isoformat()
    if granularity == "week":
        # weekday(): Monday == 0, so Sunday is 6 and maps back 0 days.
        offset = (moment.weekday() + 1) % 7
        return (moment.date() - timedelta(days=offset)).isoformat()
    if granularity == "month":
        return f"{moment.year:04d}-{moment.month:02d}"
    if granularity == "year":
        return f"{moment.year:04d}"
    raise ConfigError(f"Unknown granularity {granularity!r}; expected one of {', '.join(GRANULARITIES)}")


def validate_granularity(granularity: str) -> str:
    if granularity not in GRANULARITIES:
        raise ConfigError(f"Unknown granularity {granularity!r}; expected one of {', '.join(GRANULARITIES)}")
    return granularity
