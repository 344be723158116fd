"""
In-memory joins across entities.

The store offers no server-side joins, so related rows are resolved through
``EntityIndexes``. A row whose reference chain breaks at any hop is left out of
the output and counted in ``JoinResult.dropped``; a broken reference is a data
quality issue, never an error.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .indexes import EntityIndexes
from .licensing import days_since_update, license_status
from .models import (
    ZERO,
    Course,
    EnrichedLicense,
    EnrichedPayment,
    EnrichedPaymentPage,
    Enrollment,
    EnrollmentId,
    JoinResult,
    License,
    Participant,
    ParticipantId,
    Payment,
)
from .parsing import parse_currency_or_zero
from .statuses import StatusNormalizer, normalize_status

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"
UNKNOWN_COURSE = "Unknown Course"


def display_name(participant: Optional[Participant]) -> str:
    if participant is None:
        return UNKNOWN_NAME
    parts = (
        participant.prefix,
        participant.first_name,
        participant.middle_name,
        participant.last_name,
        participant.suffix,
    )
    name = " ".join(part.strip() for part in parts if part and part.strip())
    return name or UNKNOWN_NAME


def _resolve_course(
    payment: Payment, indexes: EntityIndexes
) -> Optional[Tuple[Enrollment, Course]]:
    if payment.enrollment_id is None:
        return None
    enrollment = indexes.enrollments_by_id.get(payment.enrollment_id)
    if enrollment is None or enrollment.offering_id is None:
        return None
    offering = indexes.offerings_by_id.get(enrollment.offering_id)
    if offering is None or offering.course_id is None:
        return None
    course = indexes.courses_by_id.get(offering.course_id)
    if course is None:
        return None
    return enrollment, course


def enrich_payments(
    payments: Iterable[Payment],
    indexes: EntityIndexes,
    normalizer: Optional[StatusNormalizer] = None,
) -> JoinResult[EnrichedPayment]:
    """
    Resolve Payment -> Enrollment -> (Participant, Offering -> Course).
    """

    rows: List[EnrichedPayment] = []
    dropped = 0
    for payment in payments:
        resolved = _resolve_course(payment, indexes)
        if resolved is None:
            dropped += 1
            continue
        enrollment, course = resolved
        participant = (
            indexes.participants_by_id.get(enrollment.participant_id)
            if enrollment.participant_id is not None
            else None
        )
        if participant is None:
            dropped += 1
            continue
        rows.append(
            EnrichedPayment(
                payment=payment,
                participant_id=participant.id,
                participant_name=display_name(participant),
                participant_email=participant.email or "",
                participant_company=participant.company,
                course_id=course.id,
                course_name=course.name or UNKNOWN_COURSE,
                program_type_id=course.program_type_id,
                enrollment_status=normalize_status(enrollment.status, normalizer),
                amount=parse_currency_or_zero(payment.amount),
                total_due=parse_currency_or_zero(enrollment.total_due),
            )
        )

    logger.debug("Enriched %d payments, dropped %d with broken references", len(rows), dropped)
    return JoinResult(rows=rows, dropped=dropped)


def link_payment_courses(
    payments: Iterable[Payment], indexes: EntityIndexes
) -> JoinResult[Tuple[Payment, Course]]:
    """Resolve Payment -> Enrollment -> Offering -> Course, without the participant hop."""

    rows: List[Tuple[Payment, Course]] = []
    dropped = 0
    for payment in payments:
        resolved = _resolve_course(payment, indexes)
        if resolved is None:
            dropped += 1
            continue
        rows.append((payment, resolved[1]))

    logger.debug("Linked %d payments to courses, %d unlinked", len(rows), dropped)
    return JoinResult(rows=rows, dropped=dropped)


def enrich_licenses(
    licenses: Iterable[License],
    participants_by_id: Mapping[ParticipantId, Participant],
    now: datetime,
    current_years: int = 2,
) -> JoinResult[EnrichedLicense]:
    rows: List[EnrichedLicense] = []
    dropped = 0
    for license_ in licenses:
        participant = (
            participants_by_id.get(license_.participant_id)
            if license_.participant_id is not None
            else None
        )
        if participant is None:
            dropped += 1
            continue
        status = license_status(license_.updated_at, now, current_years)
        rows.append(
            EnrichedLicense(
                license=license_,
                participant_name=display_name(participant),
                participant_email=participant.email or "",
                participant_company=participant.company,
                classes_taken=participant.classes_taken,
                status=status,
                is_current=status == "current",
                days_since_update=days_since_update(license_.updated_at, now),
            )
        )

    logger.debug("Enriched %d licenses, dropped %d without a participant", len(rows), dropped)
    return JoinResult(rows=rows, dropped=dropped)


def participant_revenue(
    payments: Iterable[Payment],
    enrollments_by_id: Mapping[EnrollmentId, Enrollment],
) -> Tuple[Dict[ParticipantId, Decimal], int]:
    """
    Total parsed payment amount per participant.

    Returns the totals and the number of payments whose enrollment (or its
    participant reference) could not be resolved.
    """

    totals: Dict[ParticipantId, Decimal] = {}
    dropped = 0
    for payment in payments:
        enrollment = (
            enrollments_by_id.get(payment.enrollment_id) if payment.enrollment_id is not None else None
        )
        if enrollment is None or enrollment.participant_id is None:
            dropped += 1
            continue
        member = enrollment.participant_id
        totals[member] = totals.get(member, ZERO) + parse_currency_or_zero(payment.amount)
    return totals, dropped


def filter_enriched_payments(
    rows: Sequence[EnrichedPayment],
    amount_range: Optional[Tuple[Decimal, Decimal]] = None,
    payment_types: Sequence[str] = (),
) -> List[EnrichedPayment]:
    """
    Apply the filters the store cannot evaluate (amounts are stored as text).

    ``payment_types`` keeps rows whose description contains any of the given
    words, case-insensitively.
    """

    wanted = [word.lower() for word in payment_types if word]
    result: List[EnrichedPayment] = []
    for row in rows:
        if amount_range is not None and not (amount_range[0] <= row.amount <= amount_range[1]):
            continue
        if wanted:
            description = (row.payment.description or "").lower()
            if not any(word in description for word in wanted):
                continue
        result.append(row)
    return result


def paginate_payments(
    rows: Sequence[EnrichedPayment],
    dropped: int,
    page: int = 1,
    page_size: Optional[int] = None,
) -> EnrichedPaymentPage:
    """Cut one page out of filtered payments; without ``page_size`` the first page holds them all."""

    total = len(rows)
    if page_size is None:
        return EnrichedPaymentPage(
            rows=list(rows) if page == 1 else [],
            dropped=dropped,
            total=total,
            page=page,
            page_size=total,
            total_pages=1 if total else 0,
        )
    start = (page - 1) * page_size
    return EnrichedPaymentPage(
        rows=list(rows[start:start + page_size]),
        dropped=dropped,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),
    )
