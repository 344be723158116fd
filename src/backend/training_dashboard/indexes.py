from __future__ import annotations

from collections.abc import Iterable as IterableABC
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence, TypeVar

from .models import (
    Course,
    CourseId,
    CourseOffering,
    Enrollment,
    EnrollmentId,
    License,
    OfferingId,
    Participant,
    ParticipantId,
    Payment,
)

K = TypeVar("K", bound=Hashable)
R = TypeVar("R")


def _check(rows: Iterable[R], key: Callable[[R], Optional[K]]) -> None:
    if not isinstance(rows, IterableABC) or isinstance(rows, (str, bytes)):
        raise TypeError(f"rows must be an iterable of records, got {type(rows).__name__}")
    if not callable(key):
        raise TypeError("key must be callable")


def index_unique(rows: Iterable[R], key: Callable[[R], Optional[K]]) -> Dict[K, R]:
    """
    Map each key to its row.

    Duplicate keys keep the last row seen in input order. Rows whose key is
    ``None`` are left out since nothing can join against them.
    """

    _check(rows, key)
    index: Dict[K, R] = {}
    for row in rows:
        value = key(row)
        if value is not None:
            index[value] = row
    return index


def index_grouped(rows: Iterable[R], key: Callable[[R], Optional[K]]) -> Dict[K, List[R]]:
    """Map each key to the rows sharing it, in input order."""

    _check(rows, key)
    index: Dict[K, List[R]] = {}
    for row in rows:
        value = key(row)
        if value is not None:
            index.setdefault(value, []).append(row)
    return index


@dataclass
class EntityIndexes:
    """
    The lookup tables the join stage works from.

    Build it with ``EntityIndexes.build`` from whichever collections a query
    fetched; indexes for collections that were not supplied stay empty.
    """

    participants_by_id: Dict[ParticipantId, Participant] = field(default_factory=dict)
    enrollments_by_id: Dict[EnrollmentId, Enrollment] = field(default_factory=dict)
    enrollments_by_offering: Dict[OfferingId, List[Enrollment]] = field(default_factory=dict)
    offerings_by_id: Dict[OfferingId, CourseOffering] = field(default_factory=dict)
    offerings_by_course: Dict[CourseId, List[CourseOffering]] = field(default_factory=dict)
    courses_by_id: Dict[CourseId, Course] = field(default_factory=dict)
    payments_by_enrollment: Dict[EnrollmentId, List[Payment]] = field(default_factory=dict)
    licenses_by_participant: Dict[ParticipantId, List[License]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        participants: Sequence[Participant] = (),
        enrollments: Sequence[Enrollment] = (),
        offerings: Sequence[CourseOffering] = (),
        courses: Sequence[Course] = (),
        payments: Sequence[Payment] = (),
        licenses: Sequence[License] = (),
    ) -> "EntityIndexes":
        return cls(
            participants_by_id=index_unique(participants, lambda p: p.id),
            enrollments_by_id=index_unique(enrollments, lambda e: e.id),
            enrollments_by_offering=index_grouped(enrollments, lambda e: e.offering_id),
            offerings_by_id=index_unique(offerings, lambda o: o.id),
            offerings_by_course=index_grouped(offerings, lambda o: o.course_id),
            courses_by_id=index_unique(courses, lambda c: c.id),
            payments_by_enrollment=index_grouped(payments, lambda p: p.enrollment_id),
            licenses_by_participant=index_grouped(licenses, lambda lic: lic.participant_id),
        )
