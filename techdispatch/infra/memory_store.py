# techdispatch/infra/memory_store.py
"""
In-memory job store and technician directory.

Same contracts as the asyncpg implementations, for single-process
deployments (``STORE_BACKEND=memory``) and tests.

NOT horizontally scalable: state lives in this process only.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Sequence

from techdispatch.core.domain import (
    GeoPoint,
    Job,
    JobStatus,
    Technician,
    TechnicianAccountStatus,
    TrackingSnapshot,
)
from techdispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryJobStore:
    """
    Job store backed by a dict.

    Writes to one job are serialized by a per-job ``asyncio.Lock``; the
    version/status guard is checked inside the lock, which gives the same
    compare-and-swap semantics as the conditional UPDATE in Postgres.

    Jobs and their locks are never evicted: memory grows with every job
    id seen for the life of the process.  Fine for tests and short-lived
    single-process deployments; use the Postgres backend for anything
    long-running.
    """

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: dict[str, Job] = {job.id: job for job in jobs}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def create(self, job: Job) -> Job:
        async with self._locks[job.id]:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
            return job

    async def compare_and_swap(
        self,
        job: Job,
        *,
        expected_version: int,
        require_status: Optional[JobStatus] = None,
    ) -> Optional[Job]:
        async with self._locks[job.id]:
            current = self._jobs.get(job.id)
            if current is None or current.version != expected_version:
                return None
            if require_status is not None and current.status != require_status:
                return None

            stored = replace(job, version=current.version + 1)
            self._jobs[job.id] = stored
            return stored

    async def update_tracking(
        self,
        job_id: str,
        snapshot: TrackingSnapshot,
        allowed_statuses: Sequence[JobStatus],
    ) -> bool:
        async with self._locks[job_id]:
            current = self._jobs.get(job_id)
            if current is None or current.status not in allowed_statuses:
                return False
            self._jobs[job_id] = replace(
                current, technician_tracking=snapshot, version=current.version + 1,
            )
            return True

    async def list_for_technician(
        self,
        technician_id: str,
        statuses: Sequence[JobStatus],
    ) -> list[Job]:
        return [
            job for job in self._jobs.values()
            if job.assigned_technician_id == technician_id and job.status in statuses
        ]

    async def list_due_for_expansion(
        self,
        before: datetime,
        limit: int,
        *,
        max_current_radius_km: Optional[float] = None,
    ) -> list[Job]:
        def last_search(job: Job) -> datetime:
            return job.radius_expanded_at or job.created_at

        def within(job: Job) -> bool:
            return (
                max_current_radius_km is None
                or job.current_radius_km is None
                or job.current_radius_km <= max_current_radius_km
            )

        due = [
            job for job in self._jobs.values()
            if job.status == JobStatus.PENDING and last_search(job) <= before and within(job)
        ]
        due.sort(key=lambda j: (last_search(j), j.id))
        return due[:limit]


class InMemoryTechnicianDirectory:
    """Technician directory backed by a dict."""

    def __init__(self, technicians: Iterable[Technician] = ()):
        self._technicians: dict[str, Technician] = {}
        self._lock = asyncio.Lock()
        for tech in technicians:
            self.add(tech)

    def add(self, technician: Technician) -> None:
        self._technicians[technician.id] = technician

    async def get(self, technician_id: str) -> Optional[Technician]:
        return self._technicians.get(technician_id)

    async def list_active(self) -> list[Technician]:
        return sorted(
            (t for t in self._technicians.values() if t.status == TechnicianAccountStatus.ACTIVE),
            key=lambda t: t.id,
        )

    async def list_available_in_city(self, city: str) -> list[Technician]:
        wanted = city.lower()
        return sorted(
            (
                t for t in self._technicians.values()
                if t.status == TechnicianAccountStatus.ACTIVE
                and t.is_available
                and (t.working_location.city or "").lower() == wanted
            ),
            key=lambda t: t.id,
        )

    async def increment_active_jobs(self, technician_id: str) -> None:
        await self._update(technician_id, lambda t: replace(t, active_jobs_count=t.active_jobs_count + 1))

    async def increment_rejections(self, technician_id: str) -> None:
        await self._update(technician_id, lambda t: replace(t, rejection_count=t.rejection_count + 1))

    async def update_location(self, technician_id: str, location: GeoPoint) -> bool:
        return await self._update(
            technician_id, lambda t: replace(t, current_location=location, is_online=True),
        )

    async def set_online(self, technician_id: str, is_online: bool, at: datetime) -> bool:
        return await self._update(technician_id, lambda t: replace(t, is_online=is_online))

    async def _update(self, technician_id: str, change) -> bool:
        async with self._lock:
            tech = self._technicians.get(technician_id)
            if tech is None:
                return False
            self._technicians[technician_id] = change(tech)
            return True
