from datetime import datetime, timezone
from decimal import Decimal

from backend.training_dashboard.enrichment import (
    display_name,
    enrich_licenses,
    enrich_payments,
    filter_enriched_payments,
    link_payment_courses,
    paginate_payments,
    participant_revenue,
)
from backend.training_dashboard.indexes import EntityIndexes
from backend.training_dashboard.models import (
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
    PaymentId,
)

NOW = datetime(2024, 5, 25, tzinfo=timezone.utc)


def _indexes() -> EntityIndexes:
    return EntityIndexes.build(
        participants=[Participant(id=ParticipantId("A1"), first_name="Jane", last_name="Doe", email="j@x.org")],
        enrollments=[
            Enrollment(
                id=EnrollmentId(1),
                participant_id=ParticipantId("A1"),
                offering_id=OfferingId(7),
                status="completed",
                total_due="$40.00",
            ),
            Enrollment(id=EnrollmentId(2), participant_id=ParticipantId("GONE"), offering_id=OfferingId(7)),
        ],
        offerings=[CourseOffering(id=OfferingId(7), course_id=CourseId(3))],
        courses=[Course(id=CourseId(3), name="Ethics", program_type_id=4)],
    )


def _payments(linked: int, missing: int):
    payments = [
        Payment(id=PaymentId(index), enrollment_id=EnrollmentId(1), amount="$10.00", description="Full")
        for index in range(linked)
    ]
    payments += [
        Payment(id=PaymentId(100 + index), enrollment_id=EnrollmentId(404), amount="$10.00")
        for index in range(missing)
    ]
    return payments


def test_enrich_payments_counts_dropped_rows():
    """Test that 10 payments with 3 broken enrollment references yield 7 rows and 3 drops."""
    result = enrich_payments(_payments(7, 3), _indexes())

    assert len(result.rows) == 7
    assert result.dropped == 3
    row = result.rows[0]
    assert row.participant_name == "Jane Doe"
    assert row.course_name == "Ethics"
    assert row.program_type_id == 4
    assert row.enrollment_status == "Completed"
    assert row.amount == Decimal("10.00")
    assert row.total_due == Decimal("40.00")


def test_enrich_payments_drops_payment_without_participant():
    """Test that a missing participant breaks the chain like any other hop."""
    payments = [Payment(id=PaymentId(1), enrollment_id=EnrollmentId(2), amount="$5")]

    result = enrich_payments(payments, _indexes())

    assert result.rows == []
    assert result.dropped == 1


def test_link_payment_courses_ignores_participant_hop():
    """Test the shorter course chain used for program-type revenue."""
    payments = [
        Payment(id=PaymentId(1), enrollment_id=EnrollmentId(2), amount="$5"),
        Payment(id=PaymentId(2), enrollment_id=None, amount="$5"),
    ]

    result = link_payment_courses(payments, _indexes())

    assert [(payment.id, course.id) for payment, course in result.rows] == [(1, 3)]
    assert result.dropped == 1


def test_display_name_skips_blank_parts():
    """Test name assembly from the non-empty parts."""
    participant = Participant(
        id=ParticipantId("A1"), prefix="Dr.", first_name=" Jane ", middle_name="  ", last_name="Doe", suffix="III"
    )
    assert display_name(participant) == "Dr. Jane Doe III"
    assert display_name(Participant(id=ParticipantId("A2"))) == "Unknown"
    assert display_name(None) == "Unknown"


def test_enrich_licenses_classifies_currency():
    """Test license enrichment with holder details and status."""
    participants = {ParticipantId("A1"): Participant(id=ParticipantId("A1"), first_name="Jane", classes_taken=4)}
    licenses = [
        License(participant_id=ParticipantId("A1"), profession="Nurse", updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        License(participant_id=ParticipantId("A1"), profession="Nurse", updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc)),
        License(participant_id=ParticipantId("A1"), profession="Nurse"),
        License(participant_id=ParticipantId("NOPE"), profession="Nurse"),
    ]

    result = enrich_licenses(licenses, participants, NOW)

    assert [row.status for row in result.rows] == ["current", "needs_update", "no_date"]
    assert [row.is_current for row in result.rows] == [True, False, False]
    assert result.rows[0].days_since_update == 145
    assert result.rows[0].classes_taken == 4
    assert result.dropped == 1


def test_participant_revenue_sums_per_participant():
    """Test revenue attribution through the enrollment."""
    totals, dropped = participant_revenue(_payments(3, 2), _indexes().enrollments_by_id)

    assert totals == {"A1": Decimal("30.00")}
    assert dropped == 2


def test_filter_enriched_payments_by_amount_and_type():
    """Test the post-join filters on parsed amount and description words."""
    rows = enrich_payments(
        [
            Payment(id=PaymentId(1), enrollment_id=EnrollmentId(1), amount="$10", description="Full payment"),
            Payment(id=PaymentId(2), enrollment_id=EnrollmentId(1), amount="$50", description="Partial payment"),
            Payment(id=PaymentId(3), enrollment_id=EnrollmentId(1), amount="$90", description="Deposit"),
        ],
        _indexes(),
    ).rows

    assert [r.payment.id for r in filter_enriched_payments(rows, (Decimal("20"), Decimal("100")))] == [2, 3]
    assert [r.payment.id for r in filter_enriched_payments(rows, payment_types=["FULL", "partial"])] == [1, 2]
    assert filter_enriched_payments(rows) == rows


def test_paginate_payments():
    """Test page slicing and page counts over filtered payments."""
    rows = enrich_payments(
        [Payment(id=PaymentId(index), enrollment_id=EnrollmentId(1), amount="$1") for index in range(1, 6)],
        _indexes(),
    ).rows

    second = paginate_payments(rows, dropped=2, page=2, page_size=2)
    everything = paginate_payments(rows, dropped=0)

    assert [r.payment.id for r in second.rows] == [3, 4]
    assert (second.total, second.total_pages, second.dropped) == (5, 3, 2)
    assert len(everything.rows) == 5
    assert (everything.page_size, everything.total_pages) == (5, 1)
    assert paginate_payments([], dropped=0).total_pages == 0
