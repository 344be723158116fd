from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, Mapping, NewType, Optional, Sequence, TypeVar

ParticipantId = NewType("ParticipantId", str)
EnrollmentId = NewType("EnrollmentId", int)
CourseId = NewType("CourseId", int)
OfferingId = NewType("OfferingId", int)
PaymentId = NewType("PaymentId", int)
LicenseId = NewType("LicenseId", int)

ZERO = Decimal("0")

T = TypeVar("T")


@dataclass(frozen=True)
class Participant:
    """
    A person registered with the organization, keyed by member number.

    ``status_id`` mirrors ``ParticipantStatusID`` where 1 marks an active
    participant. ``classes_taken`` is the lifetime enrollment count kept by the
    store and defaults to 0 when missing.
    """

    id: ParticipantId
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    prefix: Optional[str] = None
    middle_name: Optional[str] = None
    suffix: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    status_id: Optional[int] = None
    classes_taken: int = 0
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status_id == 1


@dataclass(frozen=True)
class Enrollment:
    """
    Link between a participant and a scheduled course offering.

    ``status`` is the raw free-text value from the store; normalize it with
    ``statuses.normalize_status`` before grouping.
    """

    id: EnrollmentId
    participant_id: Optional[ParticipantId] = None
    offering_id: Optional[OfferingId] = None
    status: Optional[str] = None
    registered_at: Optional[datetime] = None
    total_due: Optional[str] = None


@dataclass(frozen=True)
class Course:
    id: CourseId
    name: Optional[str] = None
    program_type_id: Optional[int] = None
    status: Optional[int] = None
    abroad: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class CourseOffering:
    """A scheduled instance of a course (location, dates, instructor)."""

    id: OfferingId
    course_id: Optional[CourseId] = None
    begin_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    location: Optional[str] = None
    instructor: Optional[str] = None
    home_study: bool = False


@dataclass(frozen=True)
class Payment:
    """
    A single payment against an enrollment.

    ``amount`` keeps the formatted string sent by the store (e.g. ``"$86.25"``);
    aggregations parse it with ``parse_currency_or_zero``.
    """

    id: PaymentId
    enrollment_id: Optional[EnrollmentId] = None
    date: Optional[datetime] = None
    description: Optional[str] = None
    method: Optional[str] = None
    card_number: Optional[str] = None
    amount: Optional[str] = None
    approval_number: Optional[str] = None

    @property
    def has_approval(self) -> bool:
        return bool(self.approval_number and self.approval_number.strip())


@dataclass(frozen=True)
class License:
    participant_id: Optional[ParticipantId]
    id: Optional[LicenseId] = None
    license_number: Optional[str] = None
    profession: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DateRange:
    """
    Optional inclusive bounds applied to the date column of a query.

    Either side may be ``None`` to leave that side open.
    """

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class JoinResult(Generic[T]):
    """
    Rows that resolved their full reference chain plus the number dropped.

    ``dropped`` counts primary rows excluded because one of their foreign keys
    did not resolve.
    """

    rows: Sequence[T]
    dropped: int = 0


@dataclass(frozen=True)
class EnrichedPayment:
    payment: Payment
    participant_id: ParticipantId
    participant_name: str
    participant_email: str
    participant_company: Optional[str]
    course_id: CourseId
    course_name: str
    program_type_id: Optional[int]
    enrollment_status: str
    amount: Decimal
    total_due: Decimal


@dataclass(frozen=True)
class EnrichedPaymentPage:
    """
    One page of enriched payments.

    ``total`` counts the payments that passed every filter, across all pages;
    ``dropped`` counts payments whose references did not resolve.
    """

    rows: Sequence[EnrichedPayment]
    dropped: int
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(frozen=True)
class EnrichedLicense:
    license: License
    participant_name: str
    participant_email: str
    participant_company: Optional[str]
    classes_taken: int
    status: str
    is_current: bool
    days_since_update: Optional[int] = None


@dataclass(frozen=True)
class RevenueBucket:
    """
    Revenue folded into one bucket (category or calendar period).

    ``mean`` is ``total / count`` and 0 for an empty bucket.
    """

    key: Any
    total: Decimal
    count: int
    mean: Decimal
    by_method: Dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class RevenueTrend:
    granularity: str
    buckets: Sequence[RevenueBucket]
    cumulative: Sequence[Decimal]
    moving_average: Sequence[Decimal]


@dataclass(frozen=True)
class RevenueAnalytics:
    by_program_type: Sequence[RevenueBucket]
    by_year: Sequence[RevenueBucket]
    linked_payments: int
    unlinked_payments: int


@dataclass(frozen=True)
class StatusTrendPoint:
    month: str
    counts: Dict[str, int]


@dataclass(frozen=True)
class EnrollmentTrends:
    statuses: Sequence[str]
    points: Sequence[StatusTrendPoint]
    excluded: int = 0


@dataclass(frozen=True)
class GeographicGroup:
    country: str
    state: Optional[str]
    city: Optional[str]
    participant_count: int
    active_count: int
    total_classes: int
    avg_classes: float
    total_revenue: Decimal = ZERO


@dataclass(frozen=True)
class StateMetrics:
    state: str
    participants: int
    licenses: int
    cities: Sequence[str]
    top_city: str
    profession_breakdown: Dict[str, int]


@dataclass(frozen=True)
class CityMetrics:
    city: str
    state: str
    participants: int
    classes_taken: int
    total_revenue: Decimal = ZERO


@dataclass(frozen=True)
class CityDetails:
    metrics: CityMetrics
    participants: Sequence[Participant]


@dataclass(frozen=True)
class LabelCount:
    label: str
    count: int


@dataclass(frozen=True)
class GeographicAnalytics:
    by_country: Sequence[GeographicGroup]
    by_state: Sequence[GeographicGroup]
    by_city: Sequence[GeographicGroup]
    state_metrics: Sequence[StateMetrics]
    diversity_index: float
    unique_countries: int
    unique_states: int
    unique_cities: int
    most_represented_state: Optional[StateMetrics]
    top_states: Sequence[LabelCount]
    international_count: int
    international_percentage: float
    complete_address_percentage: float
    total_participants: int


@dataclass(frozen=True)
class LicenseMetrics:
    total_licensed: int
    unique_professions: int
    top_profession: str
    multi_licensed: int
    recently_updated: int
    current_count: int
    needs_update_count: int


@dataclass(frozen=True)
class LicenseAnalytics:
    licenses: Sequence[EnrichedLicense]
    metrics: LicenseMetrics
    profession_counts: Dict[str, int]
    dropped: int = 0


@dataclass(frozen=True)
class CourseAnalytics:
    course: Course
    enrollment_count: int
    completed_count: int
    total_revenue: Decimal
    average_revenue: Decimal
    offerings: Sequence[CourseOffering] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentMethodStats:
    method: str
    count: int
    revenue: Decimal
    percentage: float


@dataclass(frozen=True)
class RevenueMetrics:
    total_revenue: Decimal
    transaction_count: int
    average_transaction: Decimal
    full_payment_count: int
    partial_payment_count: int
    revenue_this_month: Decimal
    revenue_last_month: Decimal
    growth_percentage: Optional[float]
    highest_transaction: Decimal
    most_active_method: str
    approval_rate: float


@dataclass(frozen=True)
class PaymentAnalytics:
    metrics: RevenueMetrics
    method_stats: Sequence[PaymentMethodStats]
    payments: Sequence[Payment] = field(default_factory=list)


@dataclass(frozen=True)
class MonthlyValue:
    month: str
    value: Any


@dataclass(frozen=True)
class SummaryTrends:
    participants: Optional[float]
    revenue: Optional[float]
    enrollments: Optional[float]


@dataclass(frozen=True)
class DashboardSummary:
    """
    Headline cards of the home dashboard.

    Trend values are month-over-month percentages and ``None`` when the
    previous month has nothing to compare against.
    """

    total_participants: int
    active_courses: int
    total_revenue: Decimal
    enrollments_this_month: int
    geographic_reach: Dict[str, int]
    licensed_professionals: int
    payment_status: Dict[str, int]
    top_course: Optional[LabelCount]
    trends: SummaryTrends


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def serialize(obj: Any) -> Any:
    """
    Convert result dataclasses into a JSON-serialisable structure.

    Field names become camelCase for the frontend, decimals become floats and
    datetimes are rendered in ISO 8601. Mapping keys supplied by the data
    (status labels, payment methods) are kept as-is.
    """

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {_camel(f.name): serialize(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Mapping):
        return {str(key): serialize(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [serialize(item) for item in obj]
    return obj
