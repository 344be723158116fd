from __future__ import annotations

import math
from collections import Counter
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError
from .models import (
    ZERO,
    CityDetails,
    CityMetrics,
    GeographicAnalytics,
    GeographicGroup,
    LabelCount,
    License,
    Participant,
    ParticipantId,
    StateMetrics,
)

UNKNOWN = "Unknown"
LEVELS = ("country", "state", "city")
DOMESTIC_COUNTRIES = frozenset({"USA", "United States"})
TOP_STATES = 3


def _place(participant: Participant, level: str) -> Tuple[str, Optional[str], Optional[str]]:
    country = participant.country or UNKNOWN
    state = participant.state or UNKNOWN
    city = participant.city or UNKNOWN
    if level == "country":
        return country, None, None
    if level == "state":
        return country, state, None
    return country, state, city


def aggregate_by_geography(
    participants: Iterable[Participant],
    level: str,
    revenue_by_participant: Optional[Mapping[ParticipantId, Decimal]] = None,
) -> List[GeographicGroup]:
    """
    Group participants by country, (country, state) or (country, state, city).

    Missing address parts are grouped under ``"Unknown"``. Groups are ordered by
    participant count, largest first, then by place.
    """

    if level not in LEVELS:
        raise ConfigError(f"Unknown geographic level '{level}', expected one of {', '.join(LEVELS)}")

    revenue = revenue_by_participant or {}
    counts: Dict[Tuple, int] = {}
    active: Dict[Tuple, int] = {}
    classes: Dict[Tuple, int] = {}
    totals: Dict[Tuple, Decimal] = {}
    for participant in participants:
        key = _place(participant, level)
        counts[key] = counts.get(key, 0) + 1
        active[key] = active.get(key, 0) + (1 if participant.is_active else 0)
        classes[key] = classes.get(key, 0) + participant.classes_taken
        totals[key] = totals.get(key, ZERO) + revenue.get(participant.id, ZERO)

    ordered = sorted(counts, key=lambda k: (-counts[k], tuple(part or "" for part in k)))
    return [
        GeographicGroup(
            country=key[0],
            state=key[1],
            city=key[2],
            participant_count=counts[key],
            active_count=active[key],
            total_classes=classes[key],
            avg_classes=classes[key] / counts[key] if counts[key] else 0.0,
            total_revenue=totals[key],
        )
        for key in ordered
    ]


def diversity_index(groups: Sequence[GeographicGroup]) -> float:
    """
    Shannon entropy of the participant distribution, normalized to 0-100.

    A single group, or no participants at all, scores 0; an even spread over
    every group scores 100.
    """

    total = sum(group.participant_count for group in groups)
    if len(groups) < 2 or total == 0:
        return 0.0

    entropy = 0.0
    for group in groups:
        if group.participant_count > 0:
            share = group.participant_count / total
            entropy -= share * math.log2(share)
    return entropy / math.log2(len(groups)) * 100


def state_metrics(participants: Iterable[Participant], licenses: Iterable[License] = ()) -> List[StateMetrics]:
    """
    Per-state participant and license figures, most participants first.

    Licenses are attributed by their own state; a license whose state has no
    participants still feeds that state's profession breakdown but is not
    reported since the state itself is not.
    """

    participant_counts: Dict[str, int] = {}
    cities: Dict[str, Counter] = {}
    for participant in participants:
        state = participant.state or UNKNOWN
        participant_counts[state] = participant_counts.get(state, 0) + 1
        cities.setdefault(state, Counter())[participant.city or UNKNOWN] += 1

    license_counts: Dict[str, int] = {}
    professions: Dict[str, Dict[str, int]] = {}
    for license_ in licenses:
        state = license_.state or UNKNOWN
        if state in participant_counts:
            license_counts[state] = license_counts.get(state, 0) + 1
        breakdown = professions.setdefault(state, {})
        profession = license_.profession or UNKNOWN
        breakdown[profession] = breakdown.get(profession, 0) + 1

    metrics = []
    for state, count in participant_counts.items():
        top = cities[state].most_common(1)
        metrics.append(
            StateMetrics(
                state=state,
                participants=count,
                licenses=license_counts.get(state, 0),
                cities=list(cities[state]),
                top_city=top[0][0] if top else "N/A",
                profession_breakdown=professions.get(state, {}),
            )
        )
    return sorted(metrics, key=lambda m: -m.participants)


def compare_states(
    participants: Iterable[Participant],
    licenses: Sequence[License],
    states: Sequence[str],
) -> List[StateMetrics]:
    """
    Side-by-side metrics for the requested states, in the order requested.

    Every requested state is reported; a state without participants gets zero
    participants and no cities, but still counts the licenses issued there.
    """

    computed = {metrics.state: metrics for metrics in state_metrics(participants, licenses)}
    result = []
    for state in dict.fromkeys(state for state in states if state):
        if state in computed:
            result.append(computed[state])
            continue
        held = [license_ for license_ in licenses if license_.state == state]
        result.append(
            StateMetrics(
                state=state,
                participants=0,
                licenses=len(held),
                cities=[],
                top_city="N/A",
                profession_breakdown=dict(Counter(license_.profession or UNKNOWN for license_ in held)),
            )
        )
    return result


def city_details(
    participants: Iterable[Participant],
    city: str,
    state: Optional[str] = None,
    revenue_by_participant: Optional[Mapping[ParticipantId, Decimal]] = None,
) -> Optional[CityDetails]:
    """Participants of one city (optionally within one state), or None when there are none."""

    residents = [p for p in participants if p.city == city and (state is None or p.state == state)]
    if not residents:
        return None
    revenue = revenue_by_participant or {}
    metrics = CityMetrics(
        city=city,
        state=state or residents[0].state or UNKNOWN,
        participants=len(residents),
        classes_taken=sum(p.classes_taken for p in residents),
        total_revenue=sum((revenue.get(p.id, ZERO) for p in residents), ZERO),
    )
    return CityDetails(metrics=metrics, participants=residents)


def geographic_summary(
    participants: Sequence[Participant],
    licenses: Sequence[License] = (),
    revenue_by_participant: Optional[Mapping[ParticipantId, Decimal]] = None,
) -> GeographicAnalytics:
    by_state = aggregate_by_geography(participants, "state", revenue_by_participant)
    states = state_metrics(participants, licenses)
    total = len(participants)

    # Participants without a country count as international.
    international = sum(1 for p in participants if p.country not in DOMESTIC_COUNTRIES)
    complete = sum(1 for p in participants if p.city and p.state and p.country)

    return GeographicAnalytics(
        by_country=aggregate_by_geography(participants, "country", revenue_by_participant),
        by_state=by_state,
        by_city=aggregate_by_geography(participants, "city", revenue_by_participant),
        state_metrics=states,
        diversity_index=diversity_index(by_state),
        unique_countries=len({p.country for p in participants if p.country}),
        unique_states=len({p.state for p in participants if p.state}),
        unique_cities=len({p.city for p in participants if p.city}),
        most_represented_state=states[0] if states else None,
        top_states=[LabelCount(label=m.state, count=m.participants) for m in states[:TOP_STATES]],
        international_count=international,
        international_percentage=international / total * 100 if total else 0.0,
        complete_address_percentage=complete / total * 100 if total else 0.0,
        total_participants=total,
    )
