from datetime import datetime, timezone

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine
from sqlalchemy.pool import StaticPool

from backend.training_dashboard.fetcher import BulkFetcher
from backend.training_dashboard.repository import SQLTableSource, build_source_from_settings
from backend.training_dashboard.service import AnalyticsService
from backend.training_dashboard.settings import AnalyticsSettings
from backend.training_dashboard.source import Filter, InMemoryTableSource, Sort


@pytest.fixture
def engine():
    """Fixture for an in-memory SQLite database with a payment table."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata = MetaData()
    payment = Table(
        "payment",
        metadata,
        Column("Payment ID", Integer, primary_key=True),
        Column("Participant Course ID", Integer),
        Column("Date", String),
        Column("Payment Method", String),
        Column("Amount", String),
    )
    metadata.create_all(engine)
    methods = ["Visa", "Cash", None]
    with engine.begin() as connection:
        connection.execute(
            payment.insert(),
            [
                {
                    "Payment ID": index,
                    "Participant Course ID": 100 + index % 4,
                    "Date": f"2024-{1 + index % 12:02d}-15T00:00:00",
                    "Payment Method": methods[index % 3],
                    "Amount": f"${index}.00",
                }
                for index in range(1, 24)
            ],
        )
    yield engine
    engine.dispose()


@pytest.mark.asyncio
async def test_sql_source_pages_in_primary_key_order(engine):
    """Test that LIMIT/OFFSET pages never overlap and cover the table."""
    source = SQLTableSource(engine, max_page_size=5)

    first = await source.query("payment", offset=0, limit=5)
    second = await source.query("payment", offset=5, limit=50)

    assert [row["Payment ID"] for row in first] == [1, 2, 3, 4, 5]
    assert [row["Payment ID"] for row in second] == [6, 7, 8, 9, 10]


@pytest.mark.asyncio
async def test_bulk_fetch_over_sql_in_parallel(engine):
    """Test a complete parallel fetch of a table with spaced column names."""
    fetcher = BulkFetcher(SQLTableSource(engine, max_page_size=5), page_size=5, max_concurrency=3)

    rows = await fetcher.fetch_all("payment")

    assert [row["Payment ID"] for row in rows] == list(range(1, 24))


@pytest.mark.asyncio
async def test_sql_filters(engine):
    """Test translation of each filter operator into SQL."""
    source = SQLTableSource(engine)

    visa = await source.query("payment", [Filter.eq("Payment Method", "Visa")])
    missing = await source.query("payment", [Filter.is_null("Payment Method")])
    keyed = await source.query("payment", [Filter.in_("Participant Course ID", [101])])
    ranged = await source.query(
        "payment",
        [
            Filter.gte("Date", datetime(2024, 3, 1, tzinfo=timezone.utc)),
            Filter.lte("Date", datetime(2024, 4, 30, tzinfo=timezone.utc)),
        ],
    )
    fuzzy = await source.query("payment", [Filter.ilike("Payment Method", "vis")])

    assert {row["Payment Method"] for row in visa} == {"Visa"}
    assert all(row["Payment Method"] is None for row in missing) and missing
    assert {row["Participant Course ID"] for row in keyed} == {101}
    assert {row["Date"][:7] for row in ranged} == {"2024-03", "2024-04"}
    assert len(fuzzy) == len(visa)


@pytest.mark.asyncio
async def test_sql_sort_descending(engine):
    """Test explicit ordering."""
    source = SQLTableSource(engine)

    rows = await source.query("payment", sort=Sort("Payment ID", descending=True), limit=3)

    assert [row["Payment ID"] for row in rows] == [23, 22, 21]


def test_build_source_from_settings():
    """Test that a source is only built when a database URL is configured."""
    assert build_source_from_settings(AnalyticsSettings()) is None
    source = build_source_from_settings(AnalyticsSettings(database_url="sqlite://"))
    assert isinstance(source, SQLTableSource)


@pytest.mark.asyncio
async def test_text_dates_on_the_boundary_day_are_in_range():
    """Test that space-separated and date-only text values on the first day match a year range."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    metadata = MetaData()
    enrollment = Table(
        "participant_course",
        metadata,
        Column("Participant Course ID", Integer, primary_key=True),
        Column("Status", String),
        Column("Date/Time Registration Entered", String),
    )
    metadata.create_all(engine)
    rows = [
        {"Participant Course ID": 1, "Status": "Enrolled", "Date/Time Registration Entered": "2024-01-01 09:30:00"},
        {"Participant Course ID": 2, "Status": "Enrolled", "Date/Time Registration Entered": "2024-01-01"},
        {"Participant Course ID": 3, "Status": "Enrolled", "Date/Time Registration Entered": "2024-02-10 08:00:00"},
        {"Participant Course ID": 4, "Status": "Enrolled", "Date/Time Registration Entered": "2023-12-31 23:59:59"},
        {"Participant Course ID": 5, "Status": "Enrolled", "Date/Time Registration Entered": "2024-12-31T18:00:00"},
    ]
    with engine.begin() as connection:
        connection.execute(enrollment.insert(), rows)

    sql = AnalyticsService(SQLTableSource(engine), now_fn=lambda: datetime(2024, 6, 1, tzinfo=timezone.utc))
    memory = AnalyticsService(
        InMemoryTableSource({"participant_course": rows}),
        now_fn=lambda: datetime(2024, 6, 1, tzinfo=timezone.utc),
    )

    from_sql = [point.value for point in await sql.enrollments_by_year(2024)]
    from_memory = [point.value for point in await memory.enrollments_by_year(2024)]
    engine.dispose()

    assert from_sql[0] == 2
    assert from_sql[1] == 1
    assert from_sql[11] == 1
    assert from_sql == from_memory


@pytest.mark.asyncio
async def test_sql_any_of_filter(engine):
    """Test that alternative filters are combined with OR."""
    source = SQLTableSource(engine)

    rows = await source.query(
        "payment",
        [Filter.any_of(Filter.eq("Payment ID", 3), Filter.ilike("Payment Method", "cash"))],
    )

    assert [row["Payment ID"] for row in rows] == [1, 3, 4, 7, 10, 13, 16, 19, 22]
