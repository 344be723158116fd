from __future__ import annotations

from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .enrichment import link_payment_courses
from .errors import ConfigError
from .indexes import EntityIndexes
from .models import (
    ZERO,
    Course,
    CourseAnalytics,
    CourseId,
    DashboardSummary,
    Enrollment,
    EnrollmentTrends,
    LabelCount,
    MonthlyValue,
    Participant,
    Payment,
    PaymentMethodStats,
    RevenueAnalytics,
    RevenueBucket,
    RevenueMetrics,
    RevenueTrend,
    StatusTrendPoint,
    SummaryTrends,
)
from .parsing import bucket_key, ensure_utc, month_start, parse_currency_or_zero, previous_month_start, validate_granularity
from .statuses import StatusNormalizer, normalize_status

MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
UNKNOWN_PROGRAM_TYPE = -1
UNKNOWN_METHOD = "Unknown"
COMPLETED = "Completed"

T = TypeVar("T")


def _calc_delta(current: float, previous: float) -> Optional[float]:
    if previous == 0:
        return None
    return (current - previous) / previous * 100


def _identity(item: Any) -> Any:
    return item


def _mean(total: Decimal, count: int) -> Decimal:
    return total / count if count else ZERO


def aggregate_revenue(
    items: Iterable[T],
    key: Callable[[T], Optional[Hashable]],
    payment: Callable[[T], Payment] = _identity,
) -> List[RevenueBucket]:
    """
    Fold payments into revenue buckets.

    ``key`` maps an item to its bucket; items mapped to ``None`` are left out.
    ``payment`` extracts the payment from an item when items are join results.
    Amounts that do not parse count as 0. Buckets come back sorted by key.
    """

    if not callable(key):
        raise ConfigError("revenue bucket key must be callable")

    totals: Dict[Hashable, Decimal] = {}
    counts: Dict[Hashable, int] = {}
    methods: Dict[Hashable, Dict[str, Decimal]] = {}
    for item in items:
        bucket = key(item)
        if bucket is None:
            continue
        record = payment(item)
        amount = parse_currency_or_zero(record.amount)
        method = record.method or UNKNOWN_METHOD
        totals[bucket] = totals.get(bucket, ZERO) + amount
        counts[bucket] = counts.get(bucket, 0) + 1
        by_method = methods.setdefault(bucket, {})
        by_method[method] = by_method.get(method, ZERO) + amount

    return [
        RevenueBucket(
            key=bucket,
            total=totals[bucket],
            count=counts[bucket],
            mean=_mean(totals[bucket], counts[bucket]),
            by_method=dict(sorted(methods[bucket].items())),
        )
        for bucket in sorted(totals)
    ]


def calendar_revenue(payments: Iterable[Payment], granularity: str) -> List[RevenueBucket]:
    """Revenue per day/week/month/year; payments without a valid date are excluded."""

    validate_granularity(granularity)
    return aggregate_revenue(
        payments,
        key=lambda p: bucket_key(p.date, granularity) if p.date is not None else None,
    )


def cumulative_series(buckets: Sequence[RevenueBucket]) -> List[Decimal]:
    running = ZERO
    series: List[Decimal] = []
    for bucket in buckets:
        running += bucket.total
        series.append(running)
    return series


def moving_average(buckets: Sequence[RevenueBucket], window: int = 7) -> List[Decimal]:
    """
    Trailing average of bucket totals.

    The window shrinks at the start of the series instead of padding with zeros.
    """

    if window < 1:
        raise ConfigError(f"moving average window must be at least 1, got {window}")
    averages: List[Decimal] = []
    for index in range(len(buckets)):
        start = max(0, index - window + 1)
        chunk = buckets[start:index + 1]
        averages.append(sum((bucket.total for bucket in chunk), ZERO) / len(chunk))
    return averages


def revenue_trend(payments: Iterable[Payment], granularity: str = "day", window: int = 7) -> RevenueTrend:
    buckets = calendar_revenue(payments, granularity)
    return RevenueTrend(
        granularity=granularity,
        buckets=buckets,
        cumulative=cumulative_series(buckets),
        moving_average=moving_average(buckets, window),
    )


def revenue_analytics(payments: Sequence[Payment], indexes: EntityIndexes) -> RevenueAnalytics:
    """
    Revenue by program type (payments linked to a course) and by year (all payments).

    Payments whose course cannot be resolved are left out of the program-type
    view but still count towards their year.
    """

    linked = link_payment_courses(payments, indexes)
    by_type = aggregate_revenue(
        linked.rows,
        key=lambda pair: pair[1].program_type_id if pair[1].program_type_id is not None else UNKNOWN_PROGRAM_TYPE,
        payment=lambda pair: pair[0],
    )
    return RevenueAnalytics(
        by_program_type=by_type,
        by_year=calendar_revenue(payments, "year"),
        linked_payments=len(linked.rows),
        unlinked_payments=linked.dropped,
    )


def enrollment_status_trends(
    enrollments: Iterable[Enrollment],
    normalizer: Optional[StatusNormalizer] = None,
) -> EnrollmentTrends:
    """
    Enrollment counts per registration month and normalized status.

    Every month lists every status seen anywhere in the data, with 0 where the
    status did not occur that month.
    """

    months: Dict[str, Counter] = {}
    statuses = set()
    excluded = 0
    for enrollment in enrollments:
        if enrollment.registered_at is None:
            excluded += 1
            continue
        status = normalize_status(enrollment.status, normalizer)
        statuses.add(status)
        months.setdefault(bucket_key(enrollment.registered_at, "month"), Counter())[status] += 1

    ordered = sorted(statuses)
    points = [
        StatusTrendPoint(month=month, counts={status: months[month].get(status, 0) for status in ordered})
        for month in sorted(months)
    ]
    return EnrollmentTrends(statuses=ordered, points=points, excluded=excluded)


def course_analytics(
    courses: Iterable[Course],
    indexes: EntityIndexes,
    normalizer: Optional[StatusNormalizer] = None,
) -> List[CourseAnalytics]:
    """
    Enrollment and revenue per course, walking Course -> Offerings -> Enrollments -> Payments.
    """

    results: List[CourseAnalytics] = []
    for course in sorted(courses, key=lambda c: c.id):
        offerings = indexes.offerings_by_course.get(course.id, [])
        enrollment_count = 0
        completed_count = 0
        total_revenue = ZERO
        for offering in offerings:
            for enrollment in indexes.enrollments_by_offering.get(offering.id, []):
                enrollment_count += 1
                if normalize_status(enrollment.status, normalizer) == COMPLETED:
                    completed_count += 1
                for payment in indexes.payments_by_enrollment.get(enrollment.id, []):
                    total_revenue += parse_currency_or_zero(payment.amount)
        results.append(
            CourseAnalytics(
                course=course,
                enrollment_count=enrollment_count,
                completed_count=completed_count,
                total_revenue=total_revenue,
                average_revenue=_mean(total_revenue, enrollment_count),
                offerings=list(offerings),
            )
        )
    return results


def _revenue_between(payments: Iterable[Payment], start: datetime, end: Optional[datetime]) -> Decimal:
    total = ZERO
    for payment in payments:
        if payment.date is None:
            continue
        moment = ensure_utc(payment.date)
        if moment >= start and (end is None or moment < end):
            total += parse_currency_or_zero(payment.amount)
    return total


def payment_metrics(payments: Sequence[Payment], now: datetime) -> RevenueMetrics:
    now = ensure_utc(now)
    this_month = month_start(now)
    last_month = previous_month_start(now)

    amounts = [parse_currency_or_zero(payment.amount) for payment in payments]
    total = sum(amounts, ZERO)
    count = len(payments)

    def _described(word: str) -> int:
        return sum(1 for payment in payments if word in (payment.description or "").lower())

    methods = Counter(payment.method or UNKNOWN_METHOD for payment in payments).most_common(1)
    revenue_this_month = _revenue_between(payments, this_month, None)
    revenue_last_month = _revenue_between(payments, last_month, this_month)
    approved = sum(1 for payment in payments if payment.has_approval)

    return RevenueMetrics(
        total_revenue=total,
        transaction_count=count,
        average_transaction=_mean(total, count),
        full_payment_count=_described("full"),
        partial_payment_count=_described("partial"),
        revenue_this_month=revenue_this_month,
        revenue_last_month=revenue_last_month,
        growth_percentage=_calc_delta(float(revenue_this_month), float(revenue_last_month)),
        highest_transaction=max(amounts, default=ZERO),
        most_active_method=methods[0][0] if methods else UNKNOWN_METHOD,
        approval_rate=approved / count * 100 if count else 0.0,
    )


def payment_method_stats(payments: Sequence[Payment]) -> List[PaymentMethodStats]:
    counts: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    for payment in payments:
        method = payment.method or UNKNOWN_METHOD
        counts[method] = counts.get(method, 0) + 1
        revenue[method] = revenue.get(method, ZERO) + parse_currency_or_zero(payment.amount)

    total = len(payments)
    return [
        PaymentMethodStats(
            method=method,
            count=counts[method],
            revenue=revenue[method],
            percentage=counts[method] / total * 100 if total else 0.0,
        )
        for method in sorted(counts)
    ]


def monthly_totals(
    entries: Iterable[Tuple[Optional[datetime], Any]],
    year: int,
    zero: Any = 0,
) -> List[MonthlyValue]:
    """
    Sum ``(moment, value)`` pairs into the twelve months of ``year``.

    Months without data report ``zero``; entries without a date or outside the
    year are ignored.
    """

    totals = [zero] * 12
    for moment, value in entries:
        if moment is None or moment.year != year:
            continue
        totals[moment.month - 1] += value
    return [MonthlyValue(month=name, value=totals[index]) for index, name in enumerate(MONTH_NAMES)]


def enrollments_per_month(enrollments: Iterable[Enrollment], year: int) -> List[MonthlyValue]:
    return monthly_totals(((e.registered_at, 1) for e in enrollments), year)


def registration_revenue_per_month(enrollments: Iterable[Enrollment], year: int) -> List[MonthlyValue]:
    """Sum of positive ``Total Due`` amounts per registration month."""

    entries = []
    for enrollment in enrollments:
        amount = parse_currency_or_zero(enrollment.total_due)
        if amount > 0:
            entries.append((enrollment.registered_at, amount))
    return monthly_totals(entries, year, zero=ZERO)


def offerings_per_month(begin_dates: Iterable[Optional[datetime]], year: int) -> List[MonthlyValue]:
    return monthly_totals(((moment, 1) for moment in begin_dates), year)


def available_years(moments: Iterable[Optional[datetime]]) -> List[int]:
    return sorted({moment.year for moment in moments if moment is not None}, reverse=True)


def _top_course(enrollments: Iterable[Enrollment], indexes: EntityIndexes) -> Optional[LabelCount]:
    per_course: Counter = Counter()
    for enrollment in enrollments:
        offering = indexes.offerings_by_id.get(enrollment.offering_id) if enrollment.offering_id is not None else None
        if offering is None or offering.course_id is None:
            continue
        per_course[offering.course_id] += 1
    if not per_course:
        return None
    course_id, count = per_course.most_common(1)[0]
    course = indexes.courses_by_id.get(CourseId(course_id))
    name = course.name if course is not None and course.name else f"Course {course_id}"
    return LabelCount(label=name, count=count)


def _count_between(moments: Iterable[Optional[datetime]], start: datetime, end: Optional[datetime]) -> int:
    total = 0
    for moment in moments:
        if moment is None:
            continue
        moment = ensure_utc(moment)
        if moment >= start and (end is None or moment < end):
            total += 1
    return total


def dashboard_summary(
    participants: Sequence[Participant],
    courses: Sequence[Course],
    enrollments: Sequence[Enrollment],
    payments: Sequence[Payment],
    license_count: int,
    indexes: EntityIndexes,
    now: datetime,
) -> DashboardSummary:
    now = ensure_utc(now)
    this_month = month_start(now)
    last_month = previous_month_start(now)

    registered = [enrollment.registered_at for enrollment in enrollments]
    enrollments_this_month = _count_between(registered, this_month, None)
    enrollments_last_month = _count_between(registered, last_month, this_month)

    joined = [participant.created_at for participant in participants]
    joined_this_month = _count_between(joined, this_month, None)
    joined_last_month = _count_between(joined, last_month, this_month)

    revenue_this_month = _revenue_between(payments, this_month, None)
    revenue_last_month = _revenue_between(payments, last_month, this_month)

    completed = sum(1 for payment in payments if payment.has_approval)

    return DashboardSummary(
        total_participants=len(participants),
        active_courses=sum(1 for course in courses if course.is_active),
        total_revenue=sum((parse_currency_or_zero(payment.amount) for payment in payments), ZERO),
        enrollments_this_month=enrollments_this_month,
        geographic_reach={
            "states": len({p.state for p in participants if p.state}),
            "countries": len({p.country for p in participants if p.country}),
        },
        licensed_professionals=license_count,
        payment_status={"pending": len(payments) - completed, "completed": completed},
        top_course=_top_course(enrollments, indexes),
        trends=SummaryTrends(
            participants=_calc_delta(joined_this_month, joined_last_month),
            revenue=_calc_delta(float(revenue_this_month), float(revenue_last_month)),
            enrollments=_calc_delta(enrollments_this_month, enrollments_last_month),
        ),
    )
