# techdispatch/core/dispatch/scoring.py
"""
Ranking score for one (technician, job) pair.

The score is a plain sum of independent terms; only the total is floored
at zero:

    rating          rating x 10                         0..50
    skill match     matched / max(required, 1) x 30     0..30
    experience      min(completed_jobs / 10, 20)        0..20
    complaints      - complaints_count                  unbounded
    availability    +5 if available and online          0 | 5
    response rate   response_rate x 10                  0..10
    distance        - km to the technician's live spot  unbounded

``rejection_count`` is deliberately absent: a technician who rejected a
job is excluded from that job's later pools, nothing more.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from techdispatch.core.dispatch.geo import AVERAGE_CITY_SPEED_KMH, distance_between, estimate_eta
from techdispatch.core.domain import EtaEstimate, JobLocation, Technician

__all__ = [
    "SKILL_SYNONYMS", "required_skills", "count_matched_skills",
    "ScoredTechnician", "evaluate_technician", "score_technician",
]


# ---------------------------------------------------------------------------
# Appliance category -> skills a technician needs to list
# ---------------------------------------------------------------------------

_COOLING = ("AC", "Air Conditioner", "HVAC", "Cooling")
_HEATING = ("Geyser", "Water Heater", "Heating")
_PURIFIER = ("RO", "Water Purifier", "Filter")

SKILL_SYNONYMS: dict[str, tuple[str, ...]] = {
    "AC": _COOLING,
    "Air Conditioner": _COOLING,
    "Refrigerator": ("Refrigerator", "Fridge", "Cooling", "Compressor"),
    "Washing Machine": ("Washing Machine", "Washer", "Laundry"),
    "TV": ("TV", "Television", "Display", "Electronics"),
    "Microwave": ("Microwave", "Oven", "Kitchen Appliance"),
    "Fan": ("Fan", "Motor", "Electrical"),
    "Geyser": _HEATING,
    "Water Heater": _HEATING,
    "RO": _PURIFIER,
    "Water Purifier": _PURIFIER,
}


def required_skills(appliance_type: str) -> tuple[str, ...]:
    """Skills for a category; an unknown category requires only itself."""
    return SKILL_SYNONYMS.get(appliance_type, (appliance_type,))


def count_matched_skills(technician_skills: Iterable[str], required: Sequence[str]) -> int:
    """
    Number of required skills covered by the technician.

    A required skill counts when any technician skill contains it,
    case-insensitively ("Split AC repair" covers "AC").
    """
    lowered = [s.lower() for s in technician_skills]
    return sum(
        1 for skill in required
        if any(skill.lower() in ts for ts in lowered)
    )


# ---------------------------------------------------------------------------
# Score
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoredTechnician:
    """Score plus the distance/ETA computed on the way, for reuse by the ranker."""

    technician: Technician
    score: float
    distance_km: Optional[float] = None
    eta: Optional[EtaEstimate] = None


def evaluate_technician(
    technician: Technician,
    job_location: Optional[JobLocation],
    skills_needed: Sequence[str],
    *,
    speed_kmh: float = AVERAGE_CITY_SPEED_KMH,
) -> ScoredTechnician:
    """Score a technician for a job and keep the distance/ETA used."""
    score = 0.0

    score += technician.average_rating * 10

    matched = count_matched_skills(technician.skills, skills_needed)
    score += matched / max(len(skills_needed), 1) * 30

    score += min(technician.completed_jobs_count / 10, 20)

    score -= technician.complaints_count

    if technician.is_available and technician.is_online:
        score += 5

    score += technician.response_rate * 10

    # Only the live position counts here; the working-location fallback is
    # used for radius filtering, not for the penalty.
    eta = None
    job_point = job_location.point() if job_location is not None else None
    distance_km = distance_between(job_point, technician.current_location)
    if distance_km is not None:
        eta = estimate_eta(distance_km, speed_kmh=speed_kmh)
        score -= distance_km

    return ScoredTechnician(
        technician=technician,
        score=max(0.0, score),
        distance_km=distance_km,
        eta=eta,
    )


def score_technician(
    technician: Technician,
    job_location: Optional[JobLocation],
    skills_needed: Sequence[str],
) -> float:
    """Ranking score, never negative."""
    return evaluate_technician(technician, job_location, skills_needed).score
