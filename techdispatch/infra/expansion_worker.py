# techdispatch/infra/expansion_worker.py
"""
In-process expansion sweeper.

Polls the job store for Pending jobs whose last search is older than the
response timeout and calls ``expand_radius_for_job`` on each.  The
controller re-checks status and timeout itself, so running the sweeper
next to admin-triggered or rejection-triggered expansions is safe.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

from techdispatch.core.dispatch.controller import DispatchController, ExpansionStatus
from techdispatch.core.errors import DispatchError, NoCapacityError
from techdispatch.infra.logging_config import get_logger
from techdispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


class ExpansionSweeper:
    """
    Periodic caller of ``DispatchController.expand_radius_for_job``.

    Usage:
        sweeper = ExpansionSweeper(controller, poll_interval=60)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        controller: DispatchController,
        *,
        poll_interval: float = 60.0,
        batch_size: int = 50,
    ):
        self._controller = controller
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the sweep loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="expansion_sweeper")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Expansion sweeper started: poll={self._poll_interval}s, batch={self._batch_size}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Expansion sweeper stopped")

    async def sweep_once(self) -> dict[str, int]:
        """
        One pass over the jobs that are due.

        Returns a count per outcome (expanded, not_yet_due, not_pending,
        exhausted, failed).
        """
        policy = self._controller.policy
        cutoff = self._controller.clock() - timedelta(minutes=policy.response_timeout_minutes)
        # Jobs already at the last step stay with the operator, not the sweeper
        due = await self._controller.jobs.list_due_for_expansion(
            cutoff,
            self._batch_size,
            max_current_radius_km=policy.max_radius_km - policy.radius_increment_km,
        )

        outcome = {"expanded": 0, "not_yet_due": 0, "not_pending": 0, "exhausted": 0, "failed": 0}
        for job in due:
            try:
                result = await self._controller.expand_radius_for_job(job.id)
            except NoCapacityError:
                # Stays Pending at max radius; operator follow-up
                outcome["exhausted"] += 1
                continue
            except DispatchError as exc:
                outcome["failed"] += 1
                logger.warning(
                    f"Expansion failed: {exc.detail}",
                    extra={"job_id": job.id},
                )
                continue

            if result.status == ExpansionStatus.EXPANDED:
                outcome["expanded"] += 1
            elif result.status == ExpansionStatus.NOT_YET_DUE:
                outcome["not_yet_due"] += 1
            else:
                outcome["not_pending"] += 1

        if due:
            logger.info(f"Expansion sweep: {len(due)} due, {outcome}")
        return outcome

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Expansion sweeper loop error: {exc}", exc_info=True)
                inc_counter("expansion_sweeper_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected sweeper death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Expansion sweeper task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
