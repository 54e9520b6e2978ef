# techdispatch/core/dispatch/tracking.py
"""
Location tracker — technician position ingest and job tracking views.

A position ping fans out to every job the technician is assigned to in
``Accepted`` or ``In Progress``.  Snapshot writes go through
``AsyncJobStore.update_tracking`` which re-checks the job status in the
same write, so a job that was completed or cancelled meanwhile keeps
its last snapshot.  Jobs already marked arrived keep the arrival
snapshot.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from techdispatch.core.dispatch.geo import distance_between, estimate_eta
from techdispatch.core.dispatch.policy import DispatchPolicy, default_dispatch_policy
from techdispatch.core.dispatch.versioned import CONFLICT, load_job, run_versioned
from techdispatch.core.dispatch.views import (
    Coordinates,
    Eta,
    JobEta,
    LocationUpdate,
    TechnicianProfile,
    TrackingInfo,
    destination_of,
)
from techdispatch.core.domain import (
    ACTIVE_JOB_STATUSES,
    TRACKABLE_STATUSES,
    EtaEstimate,
    GeoPoint,
    Job,
    JobStatus,
    Technician,
    TrackingSnapshot,
    TrackingStatus,
    utcnow,
)
from techdispatch.core.errors import InvalidStateError, NotFoundError
from techdispatch.core.ports import AsyncJobStore, AsyncTechnicianDirectory
from techdispatch.infra.logging_config import LogContext, get_logger, mask_coordinates
from techdispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

ARRIVED_ETA = EtaEstimate(minutes=0, text="Arrived")


class LocationTracker:
    """Ingests technician positions and serves tracking views."""

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
        self.clock = clock

    # ------------------------------------------------------------------
    # Position ingest
    # ------------------------------------------------------------------

    async def update_technician_location(self, technician_id: str, update: LocationUpdate) -> int:
        """
        Store the technician's position and refresh tracking on their
        active jobs.

        Returns the number of job snapshots written.
        """
        now = self.clock()
        point = GeoPoint(update.latitude, update.longitude, updated_at=now)
        log = LogContext(logger, technician_id=technician_id)

        if not await self.technicians.update_location(technician_id, point):
            raise NotFoundError(f"Technician {technician_id} not found")

        log.debug(f"Location updated: {mask_coordinates(point.latitude, point.longitude)}")

        written = 0
        for job in await self.jobs.list_for_technician(technician_id, TRACKABLE_STATUSES):
            if job.tracking_status == TrackingStatus.ARRIVED:
                # Keep the zero-distance arrival snapshot
                continue
            snapshot = self._snapshot(job, point, now)
            if snapshot is None:
                continue
            if await self.jobs.update_tracking(job.id, snapshot, TRACKABLE_STATUSES):
                written += 1
            else:
                DispatchMetrics.tracking_stale_skipped()
                log.debug("Tracking write skipped, job left tracking", extra={"job_id": job.id})

        DispatchMetrics.tracking_updated(written)
        return written

    async def set_technician_online_status(self, technician_id: str, is_online: bool) -> None:
        if not await self.technicians.set_online(technician_id, is_online, self.clock()):
            raise NotFoundError(f"Technician {technician_id} not found")
        LogContext(logger, technician_id=technician_id).info(
            f"Technician is now {'online' if is_online else 'offline'}"
        )

    # ------------------------------------------------------------------
    # Journey
    # ------------------------------------------------------------------

    async def start_journey(
        self,
        job_id: str,
        technician_id: str,
        location: Optional[LocationUpdate] = None,
    ) -> Job:
        """Accepted -> In Progress for the assigned technician; tracking goes 'onway'."""
        if location is not None:
            await self.update_technician_location(technician_id, location)
        tech = await self._require_technician(technician_id)
        log = LogContext(logger, job_id=job_id, technician_id=technician_id)

        async def attempt(job: Job):
            self._require_assignee(job, technician_id)
            if job.status != JobStatus.ACCEPTED:
                raise InvalidStateError(f"Job is {job.status.value}, cannot start journey")

            now = self.clock()
            snapshot = job.technician_tracking
            if tech.current_location is not None:
                snapshot = self._snapshot(job, tech.current_location, now) or snapshot

            stored = await self.jobs.compare_and_swap(
                replace(
                    job,
                    status=JobStatus.IN_PROGRESS,
                    tracking_status=TrackingStatus.ONWAY,
                    journey_started_at=now,
                    technician_tracking=snapshot,
                ),
                expected_version=job.version,
                require_status=JobStatus.ACCEPTED,
            )
            return CONFLICT if stored is None else stored

        stored = await run_versioned(
            self.jobs, job_id, "start_journey", attempt, max_attempts=self.policy.max_cas_retries,
        )
        log.info("Journey started")
        return stored

    async def mark_arrived(self, job_id: str, technician_id: str) -> Job:
        """Tracking goes 'arrived'; remaining distance and ETA drop to zero."""
        tech = await self._require_technician(technician_id)
        log = LogContext(logger, job_id=job_id, technician_id=technician_id)

        async def attempt(job: Job):
            self._require_assignee(job, technician_id)
            if job.status not in TRACKABLE_STATUSES:
                raise InvalidStateError(f"Job is {job.status.value}, cannot mark arrived")

            now = self.clock()
            position = tech.current_location or job.location.point()
            snapshot = None
            if position is not None:
                snapshot = TrackingSnapshot(
                    location=position,
                    distance_remaining_km=0.0,
                    eta=ARRIVED_ETA,
                    last_updated=now,
                )

            stored = await self.jobs.compare_and_swap(
                replace(
                    job,
                    tracking_status=TrackingStatus.ARRIVED,
                    arrived_at=now,
                    technician_tracking=snapshot,
                ),
                expected_version=job.version,
            )
            return CONFLICT if stored is None else stored

        stored = await run_versioned(
            self.jobs, job_id, "mark_arrived", attempt, max_attempts=self.policy.max_cas_retries,
        )
        log.info("Technician arrived")
        return stored

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def get_job_tracking_info(self, job_id: str) -> TrackingInfo:
        job = await load_job(self.jobs, job_id)
        tech = None
        if job.assigned_technician_id:
            tech = await self.technicians.get(job.assigned_technician_id)
        return self._tracking_view(job, tech)

    async def get_job_eta(self, job_id: str) -> JobEta:
        job = await load_job(self.jobs, job_id)
        if not job.assigned_technician_id:
            return JobEta(job_id=job_id, message="No technician assigned yet")

        if job.tracking_status == TrackingStatus.ARRIVED:
            return JobEta(
                job_id=job_id,
                distance_km=0.0,
                eta=Eta.from_estimate(ARRIVED_ETA),
                message="Technician has arrived",
            )

        tech = await self.technicians.get(job.assigned_technician_id)
        position = tech.current_location if tech is not None else None
        distance_km = distance_between(job.location.point(), position)
        if distance_km is None:
            return JobEta(job_id=job_id, message="Location data not available")

        return JobEta(
            job_id=job_id,
            distance_km=round(distance_km, 2),
            eta=Eta.from_estimate(self._eta(distance_km)),
        )

    async def get_technician_active_job(self, technician_id: str) -> Optional[TrackingInfo]:
        """Tracking view of the technician's current job, or None."""
        tech = await self._require_technician(technician_id)
        jobs = await self.jobs.list_for_technician(technician_id, ACTIVE_JOB_STATUSES)
        if not jobs:
            return None

        # Most recently accepted first
        latest = max(jobs, key=lambda j: (j.accepted_at or j.created_at, j.id))
        return self._tracking_view(latest, tech)

    # ------------------------------------------------------------------

    def _eta(self, distance_km: float) -> EtaEstimate:
        return estimate_eta(distance_km, speed_kmh=self.policy.average_speed_kmh)

    def _snapshot(self, job: Job, position: GeoPoint, now: datetime) -> Optional[TrackingSnapshot]:
        distance_km = distance_between(job.location.point(), position)
        if distance_km is None:
            return None
        return TrackingSnapshot(
            location=position,
            distance_remaining_km=round(distance_km, 2),
            eta=self._eta(distance_km),
            last_updated=now,
        )

    def _tracking_view(self, job: Job, tech: Optional[Technician]) -> TrackingInfo:
        position = tech.current_location if tech is not None else None
        distance_km = distance_between(job.location.point(), position)

        last_updated = None
        if job.technician_tracking is not None:
            last_updated = job.technician_tracking.last_updated
        elif position is not None:
            last_updated = position.updated_at

        return TrackingInfo(
            job_id=job.id,
            status=job.status,
            tracking_status=job.tracking_status,
            technician=TechnicianProfile.from_technician(tech) if tech is not None else None,
            destination=destination_of(job.location),
            destination_address=job.location.address,
            technician_location=Coordinates.from_point(position),
            distance_km=round(distance_km, 2) if distance_km is not None else None,
            eta=Eta.from_estimate(self._eta(distance_km)) if distance_km is not None else None,
            last_updated=last_updated,
            journey_started_at=job.journey_started_at,
            arrived_at=job.arrived_at,
        )

    async def _require_technician(self, technician_id: str) -> Technician:
        tech = await self.technicians.get(technician_id)
        if tech is None:
            raise NotFoundError(f"Technician {technician_id} not found")
        return tech

    @staticmethod
    def _require_assignee(job: Job, technician_id: str) -> None:
        if job.assigned_technician_id != technician_id:
            raise InvalidStateError("Job is not assigned to this technician")
