from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Hashable, Iterable, List, Optional, Sequence, Tuple

from . import aggregations, records
from .cache import ResultCache, cache_key
from .enrichment import (
    enrich_licenses,
    enrich_payments,
    filter_enriched_payments,
    paginate_payments,
    participant_revenue,
)
from .errors import ConfigError, FetchError
from .fetcher import BulkFetcher
from .geography import city_details, compare_states, geographic_summary
from .indexes import EntityIndexes, index_unique
from .licensing import license_metrics, profession_counts
from .models import (
    CityDetails,
    CourseAnalytics,
    DashboardSummary,
    DateRange,
    EnrichedPaymentPage,
    EnrollmentTrends,
    GeographicAnalytics,
    LicenseAnalytics,
    MonthlyValue,
    PaymentAnalytics,
    RevenueAnalytics,
    RevenueTrend,
    StateMetrics,
)
from .parsing import ensure_utc, validate_granularity
from .settings import AnalyticsSettings
from .source import Filter, Row, Sort, TableSource
from .statuses import StatusNormalizer, default_normalizer

logger = logging.getLogger(__name__)

MIN_YEAR = 1900
MAX_YEAR = 9999

PAYMENT_SORT_COLUMNS = (
    records.PAYMENT_DATE,
    records.PAYMENT_ID,
    records.PAYMENT_AMOUNT,
    records.PAYMENT_METHOD,
    records.PAYMENT_DESCRIPTION,
    records.APPROVAL_NUMBER,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _range_filters(column: str, date_range: Optional[DateRange]) -> List[Filter]:
    if date_range is None:
        return []
    filters = []
    if date_range.start is not None:
        filters.append(Filter.gte(column, ensure_utc(date_range.start)))
    if date_range.end is not None:
        filters.append(Filter.lte(column, ensure_utc(date_range.end)))
    return filters


def _payment_filters(
    methods: Sequence[str],
    has_approval: Optional[bool],
    search: Optional[str],
) -> List[Filter]:
    """Store-side payment filters; a search matches the payment id or part of the approval number."""

    filters = []
    if methods:
        filters.append(Filter.in_(records.PAYMENT_METHOD, methods))
    if has_approval is True:
        filters.append(Filter.not_null(records.APPROVAL_NUMBER))
    elif has_approval is False:
        filters.append(Filter.is_null(records.APPROVAL_NUMBER))
    term = (search or "").strip()
    if term:
        alternatives = [Filter.ilike(records.APPROVAL_NUMBER, term)]
        if term.isdigit():
            alternatives.insert(0, Filter.eq(records.PAYMENT_ID, int(term)))
        filters.append(Filter.any_of(*alternatives))
    return filters


def _validate_range(date_range: Optional[DateRange]) -> None:
    if date_range is None or date_range.start is None or date_range.end is None:
        return
    if ensure_utc(date_range.start) > ensure_utc(date_range.end):
        raise ConfigError("date range start must not be after its end")


def _validate_year(year: int) -> int:
    if isinstance(year, bool) or not isinstance(year, int) or not MIN_YEAR <= year <= MAX_YEAR:
        raise ConfigError(f"year must be an integer between {MIN_YEAR} and {MAX_YEAR}, got {year!r}")
    return year


def _year_range(year: int) -> DateRange:
    return DateRange(
        start=datetime(year, 1, 1, tzinfo=timezone.utc),
        end=datetime(year, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc),
    )


class AnalyticsService:
    """
    One async query per metric family of the training dashboard.

    Every query follows the same path: fetch the complete tables it needs
    (concurrently), convert rows to entities, build the join indexes, fold them
    with the pure functions in ``aggregations``/``geography``/``licensing`` and
    cache the result under a key derived from the query arguments.

    ``now`` is only read from ``now_fn`` when a caller does not supply one; an
    explicit ``now`` becomes part of the cache key.
    """

    def __init__(
        self,
        source: TableSource,
        settings: Optional[AnalyticsSettings] = None,
        cache: Optional[ResultCache] = None,
        now_fn: Callable[[], datetime] = _utcnow,
        normalizer: Optional[StatusNormalizer] = None,
    ) -> None:
        self.settings = settings or AnalyticsSettings()
        self.source = source
        self.fetcher = BulkFetcher(
            source,
            page_size=min(self.settings.fetch.page_size, source.max_page_size),
            max_concurrency=self.settings.fetch.max_concurrency,
        )
        self.cache = cache or ResultCache()
        self._now_fn = now_fn
        if normalizer is None:
            path = self.settings.aggregation.status_aliases_path
            normalizer = StatusNormalizer.from_file(path) if path else default_normalizer()
        self.normalizer = normalizer

    def _resolve_now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now if now is not None else self._now_fn())

    async def _cached(
        self,
        key: Tuple[Hashable, ...],
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        return await self.cache.get_or_compute(key, ttl or self.settings.cache.default_ttl_seconds, producer)

    async def _fetch(self, table: str, filters: Sequence[Filter] = (), sort: Optional[Sort] = None) -> List[Row]:
        return await self.fetcher.fetch_all(table, filters, sort)

    async def _fetch_keys(self, table: str, column: str, keys: Iterable[Any]) -> List[Row]:
        return await self.fetcher.fetch_by_keys(
            table, column, keys, batch_size=self.settings.fetch.key_batch_size
        )

    async def _fetch_offerings(self, filters: Sequence[Filter] = ()) -> List[Row]:
        """
        Read course offerings, falling back to the legacy table names in order.

        When every name fails the primary table's error is raised, since the
        legacy names usually do not exist at all.
        """

        tables = self.settings.tables
        try:
            return await self._fetch(tables.offering, filters)
        except FetchError as exc:
            primary_error = exc
            logger.error("Fetching offerings from %s failed: %s", tables.offering, exc)

        for table in tables.offering_alternates:
            logger.warning("Falling back to legacy offering table %s", table)
            try:
                return await self._fetch(table, filters)
            except FetchError as exc:
                logger.warning("Legacy offering table %s failed too: %s", table, exc)
        raise primary_error

    async def _participants(
        self, keys: Optional[Iterable[Any]] = None, filters: Sequence[Filter] = ()
    ) -> List[Row]:
        if keys is None:
            return await self._fetch(self.settings.tables.participant, filters)
        return await self._fetch_keys(self.settings.tables.participant, records.PARTICIPANT_ID, keys)

    async def _enrollments(self, filters: Sequence[Filter] = (), keys: Optional[Iterable[Any]] = None) -> List[Row]:
        if keys is None:
            return await self._fetch(self.settings.tables.enrollment, filters)
        return await self._fetch_keys(self.settings.tables.enrollment, records.ENROLLMENT_ID, keys)

    async def _payments(
        self,
        date_range: Optional[DateRange] = None,
        sort: Optional[Sort] = None,
        filters: Sequence[Filter] = (),
    ) -> List[Row]:
        return await self._fetch(
            self.settings.tables.payment, [*_range_filters(records.PAYMENT_DATE, date_range), *filters], sort
        )

    async def _courses(self) -> List[Row]:
        return await self._fetch(self.settings.tables.course)

    async def _licenses(self, filters: Sequence[Filter] = ()) -> List[Row]:
        return await self._fetch(self.settings.tables.license, filters)

    async def course_analytics(self, date_range: Optional[DateRange] = None) -> List[CourseAnalytics]:
        _validate_range(date_range)

        async def produce() -> List[CourseAnalytics]:
            course_rows, offering_rows, enrollment_rows, payment_rows = await asyncio.gather(
                self._courses(),
                self._fetch_offerings(),
                self._enrollments(_range_filters(records.REGISTRATION_DATE, date_range)),
                self._payments(date_range),
            )
            courses = records.courses_from_rows(course_rows)
            indexes = EntityIndexes.build(
                courses=courses,
                offerings=records.offerings_from_rows(offering_rows),
                enrollments=records.enrollments_from_rows(enrollment_rows),
                payments=records.payments_from_rows(payment_rows),
            )
            return aggregations.course_analytics(courses, indexes, self.normalizer)

        return await self._cached(cache_key("course_analytics", date_range), produce)

    async def revenue_analytics(self, date_range: Optional[DateRange] = None) -> RevenueAnalytics:
        """
        Revenue by program type and by year.

        With a date range only the enrollments referenced by the matching
        payments are read, in key batches.
        """

        _validate_range(date_range)

        async def produce() -> RevenueAnalytics:
            payment_rows, offering_rows, course_rows = await asyncio.gather(
                self._payments(date_range),
                self._fetch_offerings(),
                self._courses(),
            )
            payments = records.payments_from_rows(payment_rows)
            if date_range is None or date_range.is_open:
                enrollment_rows = await self._enrollments()
            else:
                enrollment_rows = await self._enrollments(keys=[p.enrollment_id for p in payments])
            indexes = EntityIndexes.build(
                enrollments=records.enrollments_from_rows(enrollment_rows),
                offerings=records.offerings_from_rows(offering_rows),
                courses=records.courses_from_rows(course_rows),
            )
            result = aggregations.revenue_analytics(payments, indexes)
            logger.info(
                "Revenue analytics over %d payments (%d without a course)",
                len(payments),
                result.unlinked_payments,
            )
            return result

        return await self._cached(cache_key("revenue_analytics", date_range), produce)

    async def revenue_trends(
        self,
        granularity: str = "day",
        date_range: Optional[DateRange] = None,
        window: Optional[int] = None,
    ) -> RevenueTrend:
        validate_granularity(granularity)
        _validate_range(date_range)
        window = window if window is not None else self.settings.aggregation.moving_average_window
        if window < 1:
            raise ConfigError(f"moving average window must be at least 1, got {window}")

        async def produce() -> RevenueTrend:
            payments = records.payments_from_rows(await self._payments(date_range))
            return aggregations.revenue_trend(payments, granularity, window)

        return await self._cached(cache_key("revenue_trends", granularity, date_range, window), produce)

    async def payment_analytics(
        self,
        date_range: Optional[DateRange] = None,
        now: Optional[datetime] = None,
    ) -> PaymentAnalytics:
        _validate_range(date_range)
        moment = self._resolve_now(now)

        async def produce() -> PaymentAnalytics:
            rows = await self._payments(date_range, Sort(records.PAYMENT_DATE, descending=True))
            payments = records.payments_from_rows(rows)
            return PaymentAnalytics(
                metrics=aggregations.payment_metrics(payments, moment),
                method_stats=aggregations.payment_method_stats(payments),
                payments=payments,
            )

        return await self._cached(cache_key("payment_analytics", date_range, now), produce)

    async def enriched_payments(
        self,
        date_range: Optional[DateRange] = None,
        amount_range: Optional[Tuple[Decimal, Decimal]] = None,
        payment_types: Sequence[str] = (),
        payment_methods: Sequence[str] = (),
        has_approval: Optional[bool] = None,
        search: Optional[str] = None,
        sort_by: str = records.PAYMENT_DATE,
        descending: bool = True,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> EnrichedPaymentPage:
        """
        Payments joined with their participant and course, one page at a time.

        Date range, payment methods, approval presence and search are evaluated
        by the store. Amount and payment-type filters are applied after the join
        because the store keeps amounts as formatted text, so pages are cut from
        the joined and filtered rows. Without ``page_size`` every row lands on
        the first page.
        """

        _validate_range(date_range)
        if amount_range is not None and amount_range[0] > amount_range[1]:
            raise ConfigError("amount range minimum must not exceed its maximum")
        if sort_by not in PAYMENT_SORT_COLUMNS:
            raise ConfigError(f"Cannot sort payments by {sort_by!r}, expected one of {', '.join(PAYMENT_SORT_COLUMNS)}")
        if page < 1:
            raise ConfigError(f"page must be at least 1, got {page}")
        if page_size is not None and page_size < 1:
            raise ConfigError(f"page_size must be at least 1, got {page_size}")
        methods = tuple(method for method in payment_methods if method)
        filters = _payment_filters(methods, has_approval, search)

        async def produce() -> EnrichedPaymentPage:
            payment_rows, offering_rows, course_rows = await asyncio.gather(
                self._payments(date_range, Sort(sort_by, descending=descending), filters),
                self._fetch_offerings(),
                self._courses(),
            )
            payments = records.payments_from_rows(payment_rows)
            enrollments = records.enrollments_from_rows(
                await self._enrollments(keys=[p.enrollment_id for p in payments])
            )
            participants = records.participants_from_rows(
                await self._participants(keys=[e.participant_id for e in enrollments])
            )
            indexes = EntityIndexes.build(
                participants=participants,
                enrollments=enrollments,
                offerings=records.offerings_from_rows(offering_rows),
                courses=records.courses_from_rows(course_rows),
            )
            joined = enrich_payments(payments, indexes, self.normalizer)
            if joined.dropped:
                logger.info("Dropped %d of %d payments with broken references", joined.dropped, len(payments))
            rows = filter_enriched_payments(joined.rows, amount_range, payment_types)
            return paginate_payments(rows, joined.dropped, page, page_size)

        key = cache_key(
            "enriched_payments",
            date_range,
            amount_range,
            tuple(payment_types),
            methods,
            has_approval,
            (search or "").strip(),
            sort_by,
            descending,
            page,
            page_size,
        )
        return await self._cached(key, produce)

    async def geographic_analytics(self) -> GeographicAnalytics:
        async def produce() -> GeographicAnalytics:
            participant_rows, enrollment_rows, payment_rows, license_rows = await asyncio.gather(
                self._participants(),
                self._enrollments(),
                self._payments(),
                self._licenses(),
            )
            participants = records.participants_from_rows(participant_rows)
            enrollments_by_id = index_unique(records.enrollments_from_rows(enrollment_rows), lambda e: e.id)
            revenue, dropped = participant_revenue(records.payments_from_rows(payment_rows), enrollments_by_id)
            if dropped:
                logger.info("%d payments could not be attributed to a participant", dropped)
            return geographic_summary(participants, records.licenses_from_rows(license_rows), revenue)

        return await self._cached(cache_key("geographic_analytics"), produce)

    async def state_comparison(self, states: Sequence[str]) -> List[StateMetrics]:
        """Metrics for a hand-picked set of states, read with set-membership filters."""

        wanted = tuple(dict.fromkeys(state for state in states if state))
        if not wanted:
            return []

        async def produce() -> List[StateMetrics]:
            participant_rows, license_rows = await asyncio.gather(
                self._participants(filters=[Filter.in_(records.STATE, wanted)]),
                self._licenses([Filter.in_(records.STATE, wanted)]),
            )
            return compare_states(
                records.participants_from_rows(participant_rows),
                records.licenses_from_rows(license_rows),
                wanted,
            )

        return await self._cached(cache_key("state_comparison", wanted), produce)

    async def city_details(self, city: str, state: Optional[str] = None) -> Optional[CityDetails]:
        """
        Participants of one city with their classes and attributed revenue.

        Returns None when nobody lives there. Enrollments and payments are only
        read for the city's participants.
        """

        if not city or not city.strip():
            raise ConfigError("city must not be empty")

        async def produce() -> Optional[CityDetails]:
            filters = [Filter.eq(records.CITY, city)]
            if state:
                filters.append(Filter.eq(records.STATE, state))
            participants = records.participants_from_rows(await self._participants(filters=filters))
            if not participants:
                return None
            enrollments = records.enrollments_from_rows(
                await self._fetch_keys(
                    self.settings.tables.enrollment, records.PARTICIPANT_ID, [p.id for p in participants]
                )
            )
            payments = records.payments_from_rows(
                await self._fetch_keys(self.settings.tables.payment, records.ENROLLMENT_ID, [e.id for e in enrollments])
            )
            revenue, _ = participant_revenue(payments, index_unique(enrollments, lambda e: e.id))
            return city_details(participants, city, state or None, revenue)

        return await self._cached(cache_key("city_details", city, state), produce)

    async def license_analytics(
        self,
        now: Optional[datetime] = None,
        profession: Optional[str] = None,
    ) -> LicenseAnalytics:
        """
        Licenses with their holder and currency status.

        Holders are looked up in key batches since only a fraction of all
        participants hold a license.
        """

        moment = self._resolve_now(now)
        aggregation = self.settings.aggregation

        async def produce() -> LicenseAnalytics:
            filters = [Filter.ilike(records.PROFESSION, profession)] if profession else []
            licenses = records.licenses_from_rows(await self._licenses(filters))
            participants = records.participants_from_rows(
                await self._participants(keys=[lic.participant_id for lic in licenses])
            )
            joined = enrich_licenses(
                licenses,
                index_unique(participants, lambda p: p.id),
                moment,
                aggregation.license_current_years,
            )
            return LicenseAnalytics(
                licenses=joined.rows,
                metrics=license_metrics(
                    licenses,
                    moment,
                    aggregation.license_current_years,
                    aggregation.recent_update_days,
                ),
                profession_counts=profession_counts(licenses),
                dropped=joined.dropped,
            )

        key = cache_key("license_analytics", now, profession)
        return await self._cached(key, produce, self.settings.cache.license_ttl_seconds)

    async def enrollment_trends(self, date_range: Optional[DateRange] = None) -> EnrollmentTrends:
        _validate_range(date_range)

        async def produce() -> EnrollmentTrends:
            rows = await self._enrollments(_range_filters(records.REGISTRATION_DATE, date_range))
            trends = aggregations.enrollment_status_trends(records.enrollments_from_rows(rows), self.normalizer)
            if trends.excluded:
                logger.debug("%d enrollments without a registration date left out of trends", trends.excluded)
            return trends

        return await self._cached(cache_key("enrollment_trends", date_range), produce)

    async def dashboard_summary(self, now: Optional[datetime] = None) -> DashboardSummary:
        moment = self._resolve_now(now)

        async def produce() -> DashboardSummary:
            (
                participant_rows,
                course_rows,
                offering_rows,
                enrollment_rows,
                payment_rows,
                license_rows,
            ) = await asyncio.gather(
                self._participants(),
                self._courses(),
                self._fetch_offerings(),
                self._enrollments(),
                self._payments(),
                self._licenses(),
            )
            participants = records.participants_from_rows(participant_rows)
            courses = records.courses_from_rows(course_rows)
            enrollments = records.enrollments_from_rows(enrollment_rows)
            indexes = EntityIndexes.build(
                courses=courses,
                offerings=records.offerings_from_rows(offering_rows),
            )
            return aggregations.dashboard_summary(
                participants=participants,
                courses=courses,
                enrollments=enrollments,
                payments=records.payments_from_rows(payment_rows),
                license_count=len(license_rows),
                indexes=indexes,
                now=moment,
            )

        return await self._cached(cache_key("dashboard_summary", now), produce)

    async def enrollments_by_year(self, year: int) -> List[MonthlyValue]:
        _validate_year(year)

        async def produce() -> List[MonthlyValue]:
            rows = await self._enrollments(_range_filters(records.REGISTRATION_DATE, _year_range(year)))
            return aggregations.enrollments_per_month(records.enrollments_from_rows(rows), year)

        return await self._cached(cache_key("enrollments_by_year", year), produce, self.settings.cache.years_ttl_seconds)

    async def revenue_by_year(self, year: int) -> List[MonthlyValue]:
        """Monthly sum of positive ``Total Due`` amounts over registrations in ``year``."""

        _validate_year(year)

        async def produce() -> List[MonthlyValue]:
            rows = await self._enrollments(_range_filters(records.REGISTRATION_DATE, _year_range(year)))
            return aggregations.registration_revenue_per_month(records.enrollments_from_rows(rows), year)

        return await self._cached(cache_key("revenue_by_year", year), produce, self.settings.cache.years_ttl_seconds)

    async def courses_offered_by_year(self, year: int) -> List[MonthlyValue]:
        _validate_year(year)

        async def produce() -> List[MonthlyValue]:
            rows = await self._fetch_offerings(_range_filters(records.BEGIN_DATE, _year_range(year)))
            offerings = records.offerings_from_rows(rows)
            return aggregations.offerings_per_month((o.begin_date for o in offerings), year)

        return await self._cached(
            cache_key("courses_offered_by_year", year), produce, self.settings.cache.years_ttl_seconds
        )

    async def available_years(self) -> List[int]:
        """Years with at least one registration, most recent first."""

        async def produce() -> List[int]:
            rows = await self._enrollments([Filter.not_null(records.REGISTRATION_DATE)])
            return aggregations.available_years(e.registered_at for e in records.enrollments_from_rows(rows))

        return await self._cached(cache_key("available_years"), produce, self.settings.cache.years_ttl_seconds)
