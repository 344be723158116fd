"""
Conversion of raw store rows into entity dataclasses.

Column names follow the remote tables verbatim. Conversion is tolerant:
missing or malformed numeric fields become ``None`` (or 0 for counts) and
dates go through ``parse_date_or_none``. Rows lacking their own primary key are
skipped by the ``*_from_rows`` helpers since nothing can reference them.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional, TypeVar

from .models import (
    Course,
    CourseId,
    CourseOffering,
    Enrollment,
    EnrollmentId,
    License,
    LicenseId,
    OfferingId,
    Participant,
    ParticipantId,
    Payment,
    PaymentId,
)
from .parsing import parse_date_or_none

logger = logging.getLogger(__name__)

PARTICIPANT_ID = "DAS Number"
ENROLLMENT_ID = "Participant Course ID"
OFFERING_ID = "Location Date ID"
COURSE_ID = "Course ID"
PAYMENT_ID = "Payment ID"
LICENSE_ID = "ParticipantLicenseID"

REGISTRATION_DATE = "Date/Time Registration Entered"
TOTAL_DUE = "Total Due"
PAYMENT_DATE = "Date"
PAYMENT_METHOD = "Payment Method"
PAYMENT_AMOUNT = "Amount"
PAYMENT_DESCRIPTION = "Payment Description"
APPROVAL_NUMBER = "Approval Number"
BEGIN_DATE = "Begin Date"
LICENSE_UPDATED = "DateUpdated"
STATE = "State/Province"
CITY = "City"
PROFESSION = "Profession/Organization"
COURSE_STATUS = "CourseStatus"

E = TypeVar("E")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _member_number(value: Any) -> Optional[ParticipantId]:
    text = _text(value)
    return ParticipantId(text) if text is not None else None


def _flag(value: Any) -> bool:
    # Access-style booleans: -1 (or any non-zero) means yes.
    number = _int(value)
    return bool(number)


def participant_from_row(row: Mapping[str, Any]) -> Optional[Participant]:
    member = _member_number(row.get(PARTICIPANT_ID))
    if member is None:
        return None
    return Participant(
        id=member,
        first_name=_text(row.get("First Name")),
        last_name=_text(row.get("Last Name")),
        prefix=_text(row.get("Prefix")),
        middle_name=_text(row.get("Middle Name")),
        suffix=_text(row.get("Suffix")),
        email=_text(row.get("Email Address")),
        company=_text(row.get("Company")),
        city=_text(row.get(CITY)),
        state=_text(row.get(STATE)),
        country=_text(row.get("Country")),
        status_id=_int(row.get("ParticipantStatusID")),
        classes_taken=_int(row.get("Classes Taken")) or 0,
        created_at=parse_date_or_none(row.get("created_at")),
    )


def enrollment_from_row(row: Mapping[str, Any]) -> Optional[Enrollment]:
    enrollment_id = _int(row.get(ENROLLMENT_ID))
    if enrollment_id is None:
        return None
    offering_id = _int(row.get(OFFERING_ID))
    return Enrollment(
        id=EnrollmentId(enrollment_id),
        participant_id=_member_number(row.get(PARTICIPANT_ID)),
        offering_id=OfferingId(offering_id) if offering_id is not None else None,
        status=row.get("Status"),
        registered_at=parse_date_or_none(row.get(REGISTRATION_DATE)),
        total_due=_text(row.get(TOTAL_DUE)),
    )


def course_from_row(row: Mapping[str, Any]) -> Optional[Course]:
    course_id = _int(row.get(COURSE_ID))
    if course_id is None:
        return None
    return Course(
        id=CourseId(course_id),
        name=_text(row.get("Course Name")),
        program_type_id=_int(row.get("ProgramTypeID")),
        status=_int(row.get(COURSE_STATUS)),
        abroad=_flag(row.get("Abroad")),
    )


def offering_from_row(row: Mapping[str, Any]) -> Optional[CourseOffering]:
    offering_id = _int(row.get(OFFERING_ID))
    if offering_id is None:
        return None
    course_id = _int(row.get(COURSE_ID))
    return CourseOffering(
        id=OfferingId(offering_id),
        course_id=CourseId(course_id) if course_id is not None else None,
        begin_date=parse_date_or_none(row.get(BEGIN_DATE)),
        end_date=parse_date_or_none(row.get("End Date")),
        location=_text(row.get("Location")),
        instructor=_text(row.get("Instructor")),
        home_study=_flag(row.get("Home Study")),
    )


def payment_from_row(row: Mapping[str, Any]) -> Optional[Payment]:
    payment_id = _int(row.get(PAYMENT_ID))
    if payment_id is None:
        return None
    enrollment_id = _int(row.get(ENROLLMENT_ID))
    amount = row.get(PAYMENT_AMOUNT)
    return Payment(
        id=PaymentId(payment_id),
        enrollment_id=EnrollmentId(enrollment_id) if enrollment_id is not None else None,
        date=parse_date_or_none(row.get(PAYMENT_DATE)),
        description=_text(row.get(PAYMENT_DESCRIPTION)),
        method=_text(row.get(PAYMENT_METHOD)),
        card_number=_text(row.get("Number")),
        amount=None if amount is None else str(amount),
        approval_number=_text(row.get(APPROVAL_NUMBER)),
    )


def license_from_row(row: Mapping[str, Any]) -> Optional[License]:
    license_id = _int(row.get(LICENSE_ID))
    return License(
        id=LicenseId(license_id) if license_id is not None else None,
        participant_id=_member_number(row.get(PARTICIPANT_ID)),
        license_number=_text(row.get("License Number")),
        profession=_text(row.get(PROFESSION)),
        state=_text(row.get(STATE)),
        country=_text(row.get("Country")),
        updated_at=parse_date_or_none(row.get(LICENSE_UPDATED)),
    )


def _convert(rows: Iterable[Mapping[str, Any]], convert: Callable[[Mapping[str, Any]], Optional[E]], kind: str) -> List[E]:
    converted: List[E] = []
    skipped = 0
    for row in rows:
        entity = convert(row)
        if entity is None:
            skipped += 1
            continue
        converted.append(entity)
    if skipped:
        logger.warning("Skipped %d %s row(s) without a usable primary key", skipped, kind)
    return converted


def participants_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[Participant]:
    return _convert(rows, participant_from_row, "participant")


def enrollments_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[Enrollment]:
    return _convert(rows, enrollment_from_row, "enrollment")


def courses_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[Course]:
    return _convert(rows, course_from_row, "course")


def offerings_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[CourseOffering]:
    return _convert(rows, offering_from_row, "course offering")


def payments_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[Payment]:
    return _convert(rows, payment_from_row, "payment")


def licenses_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[License]:
    return _convert(rows, license_from_row, "license")
