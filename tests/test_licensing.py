from datetime import datetime, timedelta, timezone

from backend.training_dashboard.licensing import (
    days_since_update,
    is_license_current,
    license_metrics,
    license_status,
    profession_counts,
)
from backend.training_dashboard.models import License, ParticipantId

NOW = datetime(2024, 5, 25, 12, 0, tzinfo=timezone.utc)


def _license(member, profession=None, updated=None):
    return License(participant_id=ParticipantId(member), profession=profession, updated_at=updated)


def test_two_year_boundary():
    """Test that a license updated just inside two years is current and just outside is not."""
    two_years_ago = datetime(2022, 5, 25, 12, 0, tzinfo=timezone.utc)

    assert is_license_current(two_years_ago + timedelta(days=1), NOW)
    assert is_license_current(two_years_ago, NOW)
    assert not is_license_current(two_years_ago - timedelta(days=1), NOW)


def test_leap_day_evaluation_time():
    """Test that evaluating on 29 February compares against 28 February."""
    now = datetime(2024, 2, 29, tzinfo=timezone.utc)

    assert is_license_current(datetime(2022, 2, 28, tzinfo=timezone.utc), now)
    assert not is_license_current(datetime(2022, 2, 27, tzinfo=timezone.utc), now)


def test_license_status_labels():
    """Test the three currency labels."""
    assert license_status(None, NOW) == "no_date"
    assert license_status(NOW - timedelta(days=10), NOW) == "current"
    assert license_status(NOW - timedelta(days=1000), NOW) == "needs_update"
    assert days_since_update(NOW - timedelta(days=10), NOW) == 10
    assert days_since_update(None, NOW) is None


def test_license_metrics():
    """Test the headline license numbers."""
    licenses = [
        _license("A", "Nurse", NOW - timedelta(days=3)),
        _license("A", "Pharmacist", NOW - timedelta(days=400)),
        _license("B", "Nurse", NOW - timedelta(days=1000)),
        _license("C", None),
    ]

    metrics = license_metrics(licenses, NOW)

    assert metrics.total_licensed == 4
    assert metrics.unique_professions == 2
    assert metrics.top_profession == "Nurse"
    assert metrics.multi_licensed == 1
    assert metrics.recently_updated == 1
    assert metrics.current_count == 2
    assert metrics.needs_update_count == 1


def test_license_metrics_empty():
    """Test that no licenses reports N/A as the top profession."""
    metrics = license_metrics([], NOW)

    assert metrics.top_profession == "N/A"
    assert metrics.total_licensed == 0


def test_profession_counts_group_missing_as_unknown():
    """Test profession tallies."""
    counts = profession_counts([_license("A", "Nurse"), _license("B"), _license("C", "Nurse")])

    assert counts == {"Nurse": 2, "Unknown": 1}
