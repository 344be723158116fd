from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Sequence

from .models import License, LicenseMetrics
from .parsing import ensure_utc, years_before

CURRENT = "current"
NEEDS_UPDATE = "needs_update"
NO_DATE = "no_date"


def is_license_current(updated_at: Optional[datetime], now: datetime, years: int = 2) -> bool:
    """A license is current when it was updated within the last ``years`` calendar years."""

    if updated_at is None:
        return False
    now = ensure_utc(now)
    return ensure_utc(updated_at) >= years_before(now, years)


def license_status(updated_at: Optional[datetime], now: datetime, years: int = 2) -> str:
    if updated_at is None:
        return NO_DATE
    return CURRENT if is_license_current(updated_at, now, years) else NEEDS_UPDATE


def days_since_update(updated_at: Optional[datetime], now: datetime) -> Optional[int]:
    if updated_at is None:
        return None
    return (ensure_utc(now) - ensure_utc(updated_at)).days


def profession_counts(licenses: Iterable[License]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for license_ in licenses:
        profession = license_.profession or "Unknown"
        counts[profession] = counts.get(profession, 0) + 1
    return counts


def license_metrics(
    licenses: Sequence[License],
    now: datetime,
    current_years: int = 2,
    recent_days: int = 30,
) -> LicenseMetrics:
    """
    Headline license numbers.

    The top profession is the most frequent one; ties go to whichever was
    counted first, which callers should not depend on.
    """

    now = ensure_utc(now)
    recent_cutoff = now - timedelta(days=recent_days)

    professions = Counter(license_.profession for license_ in licenses if license_.profession)
    top = Counter(license_.profession or "Unknown" for license_ in licenses).most_common(1)
    holders = Counter(license_.participant_id for license_ in licenses if license_.participant_id is not None)

    current = 0
    needs_update = 0
    recent = 0
    for license_ in licenses:
        status = license_status(license_.updated_at, now, current_years)
        if status == CURRENT:
            current += 1
        elif status == NEEDS_UPDATE:
            needs_update += 1
        if license_.updated_at is not None and ensure_utc(license_.updated_at) >= recent_cutoff:
            recent += 1

    return LicenseMetrics(
        total_licensed=len(licenses),
        unique_professions=len(professions),
        top_profession=top[0][0] if top else "N/A",
        multi_licensed=sum(1 for count in holders.values() if count > 1),
        recently_updated=recent,
        current_count=current,
        needs_update_count=needs_update,
    )
