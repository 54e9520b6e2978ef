# techdispatch/core/dispatch/versioned.py
"""
Optimistic read-decide-write loop over a versioned job.

Each attempt reads the job, decides, and writes with
``compare_and_swap(expected_version=...)``.  An attempt that loses the
race returns ``CONFLICT`` and the loop starts over from a fresh read, so
the decision is always made against the latest state.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

from techdispatch.core.domain import Job
from techdispatch.core.errors import InvalidStateError, NotFoundError
from techdispatch.core.ports import AsyncJobStore
from techdispatch.infra.logging_config import get_logger
from techdispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

T = TypeVar("T")


class _Conflict:
    def __repr__(self) -> str:
        return "CONFLICT"


CONFLICT: Any = _Conflict()


async def load_job(jobs: AsyncJobStore, job_id: str) -> Job:
    job = await jobs.get(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job


async def run_versioned(
    jobs: AsyncJobStore,
    job_id: str,
    operation: str,
    attempt: Callable[[Job], Awaitable[T]],
    *,
    max_attempts: int,
) -> T:
    """
    Run ``attempt`` against fresh reads of the job until it stops
    returning ``CONFLICT``.

    Raises InvalidStateError when every attempt conflicted.
    """
    for n in range(1, max_attempts + 1):
        job = await load_job(jobs, job_id)
        outcome = await attempt(job)
        if outcome is not CONFLICT:
            return outcome

        DispatchMetrics.write_conflict(operation)
        logger.warning(
            f"Concurrent update on {operation} (attempt {n}/{max_attempts}), re-reading",
            extra={"job_id": job_id},
        )

    raise InvalidStateError(
        f"Job {job_id} is being modified concurrently, please retry"
    )
