from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from backend.training_dashboard.cache import ResultCache
from backend.training_dashboard.service import AnalyticsService
from backend.training_dashboard.settings import AnalyticsSettings, FetchConfig
from backend.training_dashboard.source import InMemoryTableSource

NOW = datetime(2024, 5, 25, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def sample_tables() -> Dict[str, List[Dict[str, Any]]]:
    """A small but fully linked snapshot of the dashboard tables."""
    return {
        "participant": [
            {
                "DAS Number": "A100",
                "Prefix": "Dr.",
                "First Name": "Jane",
                "Last Name": "Doe",
                "Email Address": "jane@example.com",
                "Company": "Acme",
                "City": "Los Angeles",
                "State/Province": "CA",
                "Country": "USA",
                "ParticipantStatusID": 1,
                "Classes Taken": 3,
                "created_at": "2024-05-10T09:00:00Z",
            },
            {
                "DAS Number": "A200",
                "First Name": "John",
                "Last Name": "Smith",
                "Email Address": "john@example.com",
                "City": "Austin",
                "State/Province": "TX",
                "Country": "USA",
                "ParticipantStatusID": 2,
                "Classes Taken": 1,
                "created_at": "2024-04-12T09:00:00Z",
            },
            {
                "DAS Number": "B300",
                "First Name": "Ana",
                "Last Name": "Lima",
                "City": "Sao Paulo",
                "State/Province": "SP",
                "Country": "Brazil",
                "ParticipantStatusID": 1,
                "Classes Taken": 0,
            },
        ],
        "course": [
            {"Course ID": 10, "Course Name": "Intro Safety", "ProgramTypeID": 1, "CourseStatus": 1, "Abroad": 0},
            {"Course ID": 20, "Course Name": "Advanced Practice", "ProgramTypeID": 2, "CourseStatus": 0, "Abroad": -1},
        ],
        "course_location_date": [
            {"Location Date ID": 100, "Course ID": 10, "Begin Date": "2024-03-04", "Location": "Denver"},
            {"Location Date ID": 200, "Course ID": 20, "Begin Date": "2024-05-06", "Location": "Online", "Home Study": -1},
        ],
        "participant_course": [
            {
                "Participant Course ID": 1000,
                "DAS Number": "A100",
                "Location Date ID": 100,
                "Status": "Completed",
                "Date/Time Registration Entered": "2024-05-02T10:00:00",
                "Total Due": "$100.00",
            },
            {
                "Participant Course ID": 1001,
                "DAS Number": "A200",
                "Location Date ID": 100,
                "Status": "enrolled",
                "Date/Time Registration Entered": "2024-04-15T10:00:00",
                "Total Due": "$50.00",
            },
            {
                "Participant Course ID": 1002,
                "DAS Number": "B300",
                "Location Date ID": 200,
                "Status": "EXPIRED ",
                "Date/Time Registration Entered": "2024-05-20T10:00:00",
                "Total Due": "$0.00",
            },
        ],
        "payment": [
            {
                "Payment ID": 5000,
                "Participant Course ID": 1000,
                "Date": "2024-05-03",
                "Payment Description": "Full payment",
                "Payment Method": "Visa",
                "Amount": "$100.00",
                "Approval Number": "AP1",
            },
            {
                "Payment ID": 5001,
                "Participant Course ID": 1001,
                "Date": "2024-04-16",
                "Payment Description": "Partial payment",
                "Payment Method": "Cash",
                "Amount": "$25.00",
            },
            {
                "Payment ID": 5002,
                "Participant Course ID": 1002,
                "Date": "2024-05-21",
                "Payment Description": "Full payment",
                "Payment Method": "Visa",
                "Amount": "$1,000.50",
                "Approval Number": "AP2",
            },
            {
                "Payment ID": 5003,
                "Participant Course ID": 9999,
                "Date": "2024-05-22",
                "Payment Description": "Full",
                "Payment Method": "Check",
                "Amount": "$10.00",
            },
        ],
        "participant_license": [
            {
                "ParticipantLicenseID": 1,
                "DAS Number": "A100",
                "Profession/Organization": "Nurse",
                "State/Province": "CA",
                "Country": "USA",
                "DateUpdated": "2024-01-15",
            },
            {
                "ParticipantLicenseID": 2,
                "DAS Number": "A100",
                "Profession/Organization": "Pharmacist",
                "State/Province": "CA",
                "Country": "USA",
                "DateUpdated": "2021-01-01",
            },
            {
                "ParticipantLicenseID": 3,
                "DAS Number": "ZZZ",
                "Profession/Organization": "Nurse",
                "State/Province": "TX",
                "Country": "USA",
            },
        ],
    }


@pytest.fixture
def tables() -> Dict[str, List[Dict[str, Any]]]:
    """Fixture for the sample table snapshot."""
    return sample_tables()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> AnalyticsSettings:
    """Default settings with small pages so pagination is exercised."""
    return AnalyticsSettings(fetch=FetchConfig(page_size=2, max_concurrency=2))


@pytest.fixture
def service(tables, settings, clock) -> AnalyticsService:
    """Analytics service over the sample snapshot with a fixed wall clock."""
    return AnalyticsService(
        InMemoryTableSource(tables),
        settings=settings,
        cache=ResultCache(clock=clock),
        now_fn=lambda: NOW,
    )
