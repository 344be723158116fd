from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from backend.training_dashboard.errors import ConfigError, ParseError
from backend.training_dashboard.parsing import (
    bucket_key,
    parse_currency,
    parse_currency_or_zero,
    parse_date,
    parse_date_or_none,
    previous_month_start,
    years_before,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.56", Decimal("1234.56")),
        ("86.25", Decimal("86.25")),
        (" $ 10 ", Decimal("10")),
        (12, Decimal("12")),
        (Decimal("3.50"), Decimal("3.50")),
    ],
)
def test_parse_currency_accepts_formatted_amounts(raw, expected):
    """Test that currency symbols, separators and whitespace are stripped."""
    assert parse_currency(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "garbage", "$", "1.2.3", "NaN", "Infinity", float("inf")])
def test_parse_currency_or_zero_absorbs_bad_amounts(raw):
    """Test that missing, malformed and non-finite amounts contribute exactly 0."""
    assert parse_currency_or_zero(raw) == Decimal("0")


def test_parse_currency_raises_on_garbage():
    """Test that the strict parser reports the failure instead of guessing."""
    with pytest.raises(ParseError):
        parse_currency("garbage")


def test_parse_date_formats_are_normalized_to_utc():
    """Test ISO, US and date-only inputs all become aware UTC datetimes."""
    expected = datetime(2024, 3, 5, tzinfo=timezone.utc)
    assert parse_date("2024-03-05") == expected
    assert parse_date("03/05/2024") == expected
    assert parse_date(date(2024, 3, 5)) == expected
    assert parse_date("2024-03-05T00:00:00Z") == expected
    assert parse_date("2024-03-05T02:00:00+02:00") == expected


def test_parse_date_or_none_returns_none_for_bad_values():
    """Test that unparseable dates become None."""
    assert parse_date_or_none("not a date") is None
    assert parse_date_or_none("") is None
    assert parse_date_or_none(None) is None


def test_bucket_keys_per_granularity():
    """Test day, Sunday-started week, month and year keys."""
    wednesday = datetime(2024, 5, 22, 15, 30, tzinfo=timezone.utc)
    assert bucket_key(wednesday, "day") == "2024-05-22"
    assert bucket_key(wednesday, "week") == "2024-05-19"
    assert bucket_key(datetime(2024, 5, 19, tzinfo=timezone.utc), "week") == "2024-05-19"
    assert bucket_key(wednesday, "month") == "2024-05"
    assert bucket_key(wednesday, "year") == "2024"


def test_bucket_key_rejects_unknown_granularity():
    """Test that an unknown granularity is a configuration error."""
    with pytest.raises(ConfigError):
        bucket_key(datetime(2024, 1, 1, tzinfo=timezone.utc), "fortnight")


def test_years_before_maps_leap_day():
    """Test that 29 February maps to 28 February in a non-leap year."""
    leap = datetime(2024, 2, 29, 8, 0, tzinfo=timezone.utc)
    assert years_before(leap, 2) == datetime(2022, 2, 28, 8, 0, tzinfo=timezone.utc)


def test_previous_month_start_crosses_year_boundary():
    """Test that January's previous month is December of the prior year."""
    moment = datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert previous_month_start(moment) == datetime(2023, 12, 1, tzinfo=timezone.utc)
