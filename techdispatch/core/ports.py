from __future__ import annotations
from datetime import datetime
from typing import Protocol, Optional, Sequence

from techdispatch.core.domain import GeoPoint, Job, JobStatus, Technician, TrackingSnapshot


# ============================================================================
# TECHNICIAN DIRECTORY
# ============================================================================

class AsyncTechnicianDirectory(Protocol):
    async def get(self, technician_id: str) -> Optional[Technician]: ...

    async def list_active(self) -> list[Technician]:
        """Technicians with an active account, ordered by id."""
        ...

    async def list_available_in_city(self, city: str) -> list[Technician]:
        """Active, available technicians whose working city matches, ordered by id."""
        ...

    async def increment_active_jobs(self, technician_id: str) -> None: ...

    async def increment_rejections(self, technician_id: str) -> None: ...

    async def update_location(self, technician_id: str, location: GeoPoint) -> bool:
        """
        Store the live position (with its timestamp) and mark the technician
        online.  False => unknown technician.
        """
        ...

    async def set_online(self, technician_id: str, is_online: bool, at: datetime) -> bool: ...


# ============================================================================
# JOB STORE
# ============================================================================

class AsyncJobStore(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...

    async def create(self, job: Job) -> Job: ...

    async def compare_and_swap(
        self,
        job: Job,
        *,
        expected_version: int,
        require_status: Optional[JobStatus] = None,
    ) -> Optional[Job]:
        """
        Persist ``job`` only if the stored row still has ``expected_version``
        (and ``require_status`` when given).

        Returns the stored job (version bumped) on success,
        None if the guard failed and nothing was written.
        """
        ...

    async def update_tracking(
        self,
        job_id: str,
        snapshot: TrackingSnapshot,
        allowed_statuses: Sequence[JobStatus],
    ) -> bool:
        """
        Overwrite the tracking snapshot only while the job status is one of
        ``allowed_statuses``.  False => job left tracking (write skipped).
        """
        ...

    async def list_for_technician(
        self,
        technician_id: str,
        statuses: Sequence[JobStatus],
    ) -> list[Job]: ...

    async def list_due_for_expansion(
        self,
        before: datetime,
        limit: int,
        *,
        max_current_radius_km: Optional[float] = None,
    ) -> list[Job]:
        """
        Pending jobs whose last search (or creation) is older than ``before``,
        oldest first.  ``max_current_radius_km`` leaves out jobs already
        searched wider than that (never-searched jobs always qualify).
        """
        ...
