# techdispatch/core/dispatch/ranker.py
"""
Candidate ranker — directory query, radius/city filter, score, top-N.

Two search modes:
- job with coordinates: every active technician, measured to their live
  position (working location as fallback), kept within ``radius_km``;
- job without coordinates: available technicians whose working city is
  the job's city, no radius filter.

Results are sorted by score descending; equal scores are ordered by
technician id so repeated searches return the same list.
"""
from __future__ import annotations

from dataclasses import replace

from techdispatch.core.dispatch.geo import distance_between, estimate_eta
from techdispatch.core.dispatch.policy import DispatchPolicy, default_dispatch_policy
from techdispatch.core.dispatch.scoring import ScoredTechnician, evaluate_technician, required_skills
from techdispatch.core.dispatch.views import CandidateView, Coordinates, Eta
from techdispatch.core.domain import Job, JobLocation, Technician
from techdispatch.core.ports import AsyncTechnicianDirectory
from techdispatch.infra.logging_config import get_logger
from techdispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def to_candidate_view(ranked: ScoredTechnician) -> CandidateView:
    """Project a scored technician onto the public candidate view."""
    tech = ranked.technician
    return CandidateView(
        id=tech.id,
        full_name=tech.full_name,
        phone_number=tech.phone_number,
        email=tech.email,
        profile_picture_url=tech.profile_picture_url,
        average_rating=tech.average_rating,
        completed_jobs_count=tech.completed_jobs_count,
        skills=list(tech.skills),
        distance_km=ranked.distance_km,
        eta=Eta.from_estimate(ranked.eta),
        score=ranked.score,
        current_location=Coordinates.from_point(tech.current_location),
        is_online=tech.is_online,
    )


class CandidateRanker:
    """Builds the bounded, ordered candidate list for one search."""

    def __init__(
        self,
        technicians: AsyncTechnicianDirectory,
        policy: DispatchPolicy | None = None,
    ):
        self.technicians = technicians
        self.policy = policy or default_dispatch_policy()

    async def rank(
        self,
        location: JobLocation,
        appliance_type: str,
        radius_km: float,
    ) -> list[ScoredTechnician]:
        """
        Scored technicians for a location, best first, at most ``top_candidates``.

        ``distance_km``/``eta`` on each result are measured to the position
        used for the radius filter (None in city-fallback mode).
        """
        skills = required_skills(appliance_type)

        with DispatchMetrics.track_search_time("rank"):
            if location.has_coordinates:
                pool = await self._within_radius(location, skills, radius_km)
            else:
                pool = await self._in_city(location, skills)

        pool.sort(key=lambda r: (-r.score, r.technician.id))
        top = pool[: self.policy.top_candidates]

        logger.debug(
            f"Ranked {len(pool)} technicians for {appliance_type} "
            f"(radius={radius_km}km, returned={len(top)})",
            extra={"radius_km": radius_km},
        )
        return top

    async def rank_technicians(self, job: Job, radius_km: float) -> list[CandidateView]:
        """Public candidate views for a job at a search radius."""
        ranked = await self.rank(job.location, job.appliance_type, radius_km)
        return [to_candidate_view(r) for r in ranked]

    async def _within_radius(
        self,
        location: JobLocation,
        skills: tuple[str, ...],
        radius_km: float,
    ) -> list[ScoredTechnician]:
        job_point = location.point()
        result: list[ScoredTechnician] = []

        for tech in await self.technicians.list_active():
            distance_km = distance_between(job_point, tech.search_location())
            if distance_km is None or distance_km > radius_km:
                continue
            scored = self._score(tech, location, skills)
            result.append(replace(
                scored,
                distance_km=distance_km,
                eta=estimate_eta(distance_km, speed_kmh=self.policy.average_speed_kmh),
            ))
        return result

    async def _in_city(
        self,
        location: JobLocation,
        skills: tuple[str, ...],
    ) -> list[ScoredTechnician]:
        if not location.city:
            logger.debug("Job has neither coordinates nor city; nothing to rank")
            return []

        technicians = await self.technicians.list_available_in_city(location.city)
        return [self._score(tech, location, skills) for tech in technicians]

    def _score(
        self,
        tech: Technician,
        location: JobLocation,
        skills: tuple[str, ...],
    ) -> ScoredTechnician:
        return evaluate_technician(
            tech, location, skills, speed_kmh=self.policy.average_speed_kmh,
        )
