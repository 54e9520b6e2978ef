# techdispatch/core/dispatch/controller.py
"""
Dispatch controller — search loop, radius expansion, accept/reject.

Search lifecycle of a job:

    no candidates -> searching(r) -> all rejected / timed out -> searching(r + step)
                                  -> accepted
                                  -> exhausted (max radius, operator follow-up)

Every job mutation is one ``compare_and_swap`` guarded by the version read
just before it (and by ``status = Pending`` where the transition needs it).
There are no timers here: ``expand_radius_for_job`` checks the response
timeout when it is called, and callers decide when to call it.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from techdispatch.core.dispatch.policy import DispatchPolicy, default_dispatch_policy
from techdispatch.core.dispatch.pool import (
    RankedCandidate,
    accept_candidate,
    mark_counted,
    merge_expanded_pool,
    new_pool,
    reject_candidate,
    uncounted_response,
)
from techdispatch.core.dispatch.ranker import CandidateRanker, to_candidate_view
from techdispatch.core.dispatch.scoring import ScoredTechnician
from techdispatch.core.dispatch.versioned import CONFLICT, run_versioned
from techdispatch.core.dispatch.views import CandidateView
from techdispatch.core.domain import CandidateStatus, Job, JobLocation, JobStatus, Technician, utcnow
from techdispatch.core.errors import InvalidStateError, NoCapacityError, NotFoundError
from techdispatch.core.ports import AsyncJobStore, AsyncTechnicianDirectory
from techdispatch.infra.logging_config import LogContext, get_logger
from techdispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


# ============================================================================
# RESULTS
# ============================================================================

class ExpansionStatus(str, Enum):
    EXPANDED = "expanded"
    NOT_PENDING = "not_pending"
    NOT_YET_DUE = "not_yet_due"
    MAX_RADIUS_REACHED = "max_radius_reached"


@dataclass(frozen=True)
class AssignmentResult:
    job_id: str
    radius_km: float
    candidates: list[CandidateView] = field(default_factory=list)


@dataclass(frozen=True)
class ExpansionResult:
    """
    Outcome of one expansion attempt.

    Only ``EXPANDED`` changed the job; the other statuses say why nothing
    happened (``remaining_wait`` is set for ``NOT_YET_DUE``).
    """
    job_id: str
    status: ExpansionStatus
    radius_km: Optional[float] = None
    candidates: list[CandidateView] = field(default_factory=list)
    remaining_wait: Optional[timedelta] = None
    reason: str = ""

    @property
    def expanded(self) -> bool:
        return self.status == ExpansionStatus.EXPANDED


@dataclass(frozen=True)
class RejectionResult:
    job_id: str
    technician_id: str
    pending_remaining: int
    # Set when the rejection emptied the pending pool
    expansion: Optional[ExpansionResult] = None


def _pool_rows(ranked: list[ScoredTechnician]) -> list[RankedCandidate]:
    return [(r.technician.id, r.distance_km, r.eta) for r in ranked]


# ============================================================================
# CONTROLLER
# ============================================================================

class DispatchController:
    """Owns the job/candidate state machine."""

    def __init__(
        self,
        jobs: AsyncJobStore,
        technicians: AsyncTechnicianDirectory,
        policy: DispatchPolicy | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.technicians = technicians
        self.policy = policy or default_dispatch_policy()
        self.ranker = CandidateRanker(technicians, self.policy)
        self.clock = clock

    # ------------------------------------------------------------------
    # Initial search
    # ------------------------------------------------------------------

    async def dispatch_new_job(self, job: Job) -> AssignmentResult:
        """Store a new job and run its first search."""
        created = await self.jobs.create(job)
        logger.info(
            f"Job created: appliance={created.appliance_type}",
            extra={"job_id": created.id},
        )
        return await self.assign_job_to_technicians(created.id)

    async def assign_job_to_technicians(self, job_id: str) -> AssignmentResult:
        """
        Search outward from the job's current radius until someone is in
        range and write the ranked set as a fresh pending pool.

        Raises NoCapacityError when nobody is found up to the maximum
        radius; the job is left untouched in that case.
        """
        log = LogContext(logger, job_id=job_id)

        async def attempt(job: Job):
            if job.status != JobStatus.PENDING:
                raise InvalidStateError(f"Job is {job.status.value}, cannot search for technicians")

            radius = job.current_radius_km or self.policy.initial_radius_km
            ranked: list[ScoredTechnician] = []
            while radius <= self.policy.max_radius_km:
                ranked = await self.ranker.rank(job.location, job.appliance_type, radius)
                if ranked:
                    break
                log.debug(f"No technicians within {radius}km, widening search")
                radius += self.policy.radius_increment_km

            if not ranked:
                DispatchMetrics.no_capacity("exhausted")
                log.warning(f"No technicians available up to {self.policy.max_radius_km}km")
                raise NoCapacityError(
                    "No technicians available", radius_km=self.policy.max_radius_km,
                )

            now = self.clock()
            updated = replace(
                job,
                candidates=new_pool(_pool_rows(ranked), now),
                current_radius_km=radius,
                radius_expanded_at=now,
            )
            stored = await self.jobs.compare_and_swap(
                updated, expected_version=job.version, require_status=JobStatus.PENDING,
            )
            if stored is None:
                return CONFLICT

            DispatchMetrics.pool_created(radius, len(ranked))
            log.info(
                f"Candidate pool created: {len(ranked)} technicians at {radius}km",
                extra={"radius_km": radius},
            )
            return AssignmentResult(
                job_id=job_id,
                radius_km=radius,
                candidates=[to_candidate_view(r) for r in ranked],
            )

        return await run_versioned(
            self.jobs, job_id, "assign", attempt, max_attempts=self.policy.max_cas_retries,
        )

    # ------------------------------------------------------------------
    # Radius expansion
    # ------------------------------------------------------------------

    async def expand_radius_for_job(self, job_id: str) -> ExpansionResult:
        """
        Widen the search by one step if the response timeout has elapsed.

        Not pending / not yet due come back as a result with the reason.
        Raises NoCapacityError when the next step would pass the maximum
        radius.
        """
        result = await self._expand(job_id)
        if result.status == ExpansionStatus.MAX_RADIUS_REACHED:
            raise NoCapacityError("Maximum search radius reached", radius_km=result.radius_km)
        return result

    async def _expand(self, job_id: str) -> ExpansionResult:
        log = LogContext(logger, job_id=job_id)

        async def attempt(job: Job):
            if job.status != JobStatus.PENDING:
                DispatchMetrics.expansion_skipped("not_pending")
                log.debug(f"Expansion skipped: job is {job.status.value}")
                return ExpansionResult(
                    job_id=job_id,
                    status=ExpansionStatus.NOT_PENDING,
                    radius_km=job.current_radius_km,
                    reason=f"Job is {job.status.value}",
                )

            now = self.clock()
            last_search = job.radius_expanded_at or job.created_at
            due_at = last_search + timedelta(minutes=self.policy.response_timeout_minutes)
            if now < due_at:
                remaining = due_at - now
                DispatchMetrics.expansion_skipped("not_yet_due")
                log.debug(f"Expansion not due yet ({int(remaining.total_seconds())}s remaining)")
                return ExpansionResult(
                    job_id=job_id,
                    status=ExpansionStatus.NOT_YET_DUE,
                    radius_km=job.current_radius_km,
                    remaining_wait=remaining,
                    reason="Response timeout has not elapsed",
                )

            current = job.current_radius_km or self.policy.initial_radius_km
            new_radius = current + self.policy.radius_increment_km
            if new_radius > self.policy.max_radius_km:
                DispatchMetrics.no_capacity("max_radius")
                log.warning(
                    f"Maximum radius reached ({current}km), operator follow-up needed",
                    extra={"radius_km": current},
                )
                return ExpansionResult(
                    job_id=job_id,
                    status=ExpansionStatus.MAX_RADIUS_REACHED,
                    radius_km=current,
                    reason="Maximum search radius reached",
                )

            rejected = job.rejected_technician_ids()
            ranked = [
                r for r in await self.ranker.rank(job.location, job.appliance_type, new_radius)
                if r.technician.id not in rejected
            ]
            updated = replace(
                job,
                candidates=merge_expanded_pool(job.candidates, _pool_rows(ranked), now),
                current_radius_km=new_radius,
                radius_expanded_at=now,
            )
            stored = await self.jobs.compare_and_swap(
                updated, expected_version=job.version, require_status=JobStatus.PENDING,
            )
            if stored is None:
                return CONFLICT

            DispatchMetrics.radius_expanded(new_radius, len(ranked))
            log.info(
                f"Search radius expanded {current}km -> {new_radius}km, "
                f"{len(ranked)} new candidates",
                extra={"radius_km": new_radius},
            )
            return ExpansionResult(
                job_id=job_id,
                status=ExpansionStatus.EXPANDED,
                radius_km=new_radius,
                candidates=[to_candidate_view(r) for r in ranked],
            )

        return await run_versioned(
            self.jobs, job_id, "expand", attempt, max_attempts=self.policy.max_cas_retries,
        )

    # ------------------------------------------------------------------
    # Technician responses
    # ------------------------------------------------------------------

    async def handle_technician_accept(self, job_id: str, technician_id: str) -> Job:
        """
        Assign the job to the first technician who accepts it.

        Raises InvalidStateError for every accept after the first.  A repeat
        by the winner whose first call failed before the active-jobs counter
        was bumped finishes that step instead.
        """
        await self._require_technician(technician_id)
        log = LogContext(logger, job_id=job_id, technician_id=technician_id)

        async def attempt(job: Job):
            if (
                job.assigned_technician_id == technician_id
                and uncounted_response(job.candidates, technician_id, CandidateStatus.ACCEPTED)
            ):
                log.info("Resuming accept: active jobs counter not yet applied")
                return job

            if job.status != JobStatus.PENDING:
                DispatchMetrics.accept_conflict()
                log.info(f"Accept refused: job is {job.status.value}")
                raise InvalidStateError("Job is no longer available")

            try:
                pool = accept_candidate(job.candidates, technician_id)
            except ValueError:
                raise InvalidStateError("Technician has no pending offer for this job") from None

            updated = replace(
                job,
                status=JobStatus.ACCEPTED,
                accepted_at=self.clock(),
                assigned_technician_id=technician_id,
                candidates=pool,
            )
            stored = await self.jobs.compare_and_swap(
                updated, expected_version=job.version, require_status=JobStatus.PENDING,
            )
            return CONFLICT if stored is None else stored

        stored = await run_versioned(
            self.jobs, job_id, "accept", attempt, max_attempts=self.policy.max_cas_retries,
        )

        stored = await self._settle_counter(
            stored, technician_id, CandidateStatus.ACCEPTED, self.technicians.increment_active_jobs,
        )
        DispatchMetrics.job_accepted()
        log.info("Job accepted")
        return stored

    async def handle_technician_reject(self, job_id: str, technician_id: str) -> RejectionResult:
        """
        Record a rejection.  When it leaves no pending candidates, one
        expansion attempt follows and its result is returned with it.
        A repeat after a failed rejections-counter write finishes that step.
        """
        await self._require_technician(technician_id)
        log = LogContext(logger, job_id=job_id, technician_id=technician_id)

        async def attempt(job: Job):
            if uncounted_response(job.candidates, technician_id, CandidateStatus.REJECTED):
                log.info("Resuming reject: rejections counter not yet applied")
                return job

            if job.status != JobStatus.PENDING:
                raise InvalidStateError(f"Job is {job.status.value}, cannot reject")

            try:
                pool = reject_candidate(job.candidates, technician_id)
            except ValueError:
                raise InvalidStateError("Technician has no pending offer for this job") from None

            stored = await self.jobs.compare_and_swap(
                replace(job, candidates=pool),
                expected_version=job.version,
                require_status=JobStatus.PENDING,
            )
            return CONFLICT if stored is None else stored

        stored = await run_versioned(
            self.jobs, job_id, "reject", attempt, max_attempts=self.policy.max_cas_retries,
        )

        stored = await self._settle_counter(
            stored, technician_id, CandidateStatus.REJECTED, self.technicians.increment_rejections,
        )
        DispatchMetrics.job_rejected()

        remaining = len(stored.pending_candidates())
        log.info(f"Job rejected, {remaining} pending candidates left")

        expansion = None
        if remaining == 0:
            expansion = await self._expand(job_id)

        return RejectionResult(
            job_id=job_id,
            technician_id=technician_id,
            pending_remaining=remaining,
            expansion=expansion,
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def find_nearby_technicians(
        self,
        latitude: float,
        longitude: float,
        appliance_type: str = "General",
        radius_km: float = 10.0,
    ) -> list[CandidateView]:
        """Rank technicians around a point without touching any job."""
        location = JobLocation(latitude=latitude, longitude=longitude)
        ranked = await self.ranker.rank(location, appliance_type, radius_km)
        return [to_candidate_view(r) for r in ranked]

    # ------------------------------------------------------------------

    async def _settle_counter(
        self,
        job: Job,
        technician_id: str,
        status: CandidateStatus,
        increment: Callable[[str], Awaitable[None]],
    ) -> Job:
        """
        Bump the technician counter owed by an accepted/rejected entry and
        flag the entry as counted.

        The flag is cleared by the transition and set only after the
        counter write returns, so a failed write leaves the debt on the job
        for the next accept/reject call to pick up.
        """
        if uncounted_response(job.candidates, technician_id, status) is None:
            return job

        await increment(technician_id)

        async def attempt(current: Job):
            if uncounted_response(current.candidates, technician_id, status) is None:
                return current
            stored = await self.jobs.compare_and_swap(
                replace(current, candidates=mark_counted(current.candidates, technician_id, status)),
                expected_version=current.version,
            )
            return CONFLICT if stored is None else stored

        return await run_versioned(
            self.jobs, job.id, "settle_counter", attempt, max_attempts=self.policy.max_cas_retries,
        )

    async def _require_technician(self, technician_id: str) -> Technician:
        tech = await self.technicians.get(technician_id)
        if tech is None:
            raise NotFoundError(f"Technician {technician_id} not found")
        return tech
