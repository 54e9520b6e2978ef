# tests/test_expansion_worker.py
"""
Tests for the in-process expansion sweeper.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from techdispatch.core.dispatch.controller import DispatchController
from techdispatch.core.domain import JobStatus
from techdispatch.core.errors import InvalidStateError, NoCapacityError
from techdispatch.infra.expansion_worker import ExpansionSweeper


@pytest.fixture
def controller(job_store, directory, policy, clock):
    return DispatchController(job_store, directory, policy, clock=clock)


class TestSweepOnce:
    @pytest.mark.asyncio
    async def test_expands_only_due_jobs(self, controller, job_store, directory, make_technician, make_job, clock):
        directory.add(make_technician("t1", km=8.0))
        hour_ago = clock() - timedelta(hours=1)
        await job_store.create(make_job("due", created_at=hour_ago, current_radius_km=5.0))
        await job_store.create(make_job("recent", created_at=clock() - timedelta(minutes=10), current_radius_km=5.0))
        await job_store.create(make_job("maxed", created_at=hour_ago, current_radius_km=50.0))
        await job_store.create(make_job("taken", created_at=hour_ago, status=JobStatus.ACCEPTED))

        outcome = await ExpansionSweeper(controller).sweep_once()

        assert outcome == {"expanded": 1, "not_yet_due": 0, "not_pending": 0, "exhausted": 0, "failed": 0}
        due = await job_store.get("due")
        assert due.current_radius_km == 10.0
        assert [c.technician_id for c in due.pending_candidates()] == ["t1"]
        assert (await job_store.get("recent")).current_radius_km == 5.0
        assert (await job_store.get("maxed")).radius_expanded_at is None

    @pytest.mark.asyncio
    async def test_expanded_job_not_picked_again(self, controller, job_store, make_job, clock):
        await job_store.create(make_job(created_at=clock() - timedelta(hours=1), current_radius_km=5.0))
        sweeper = ExpansionSweeper(controller)

        first = await sweeper.sweep_once()
        second = await sweeper.sweep_once()

        assert first["expanded"] == 1
        assert second["expanded"] == 0

        clock.advance(minutes=30)
        third = await sweeper.sweep_once()
        assert third["expanded"] == 1
        assert (await job_store.get("job-1")).current_radius_km == 15.0

    @pytest.mark.asyncio
    async def test_batch_size(self, controller, job_store, make_job, clock):
        for i in range(4):
            await job_store.create(make_job(f"j{i}", created_at=clock() - timedelta(hours=i + 1)))

        outcome = await ExpansionSweeper(controller, batch_size=3).sweep_once()

        assert outcome["expanded"] == 3
        # Oldest first
        assert (await job_store.get("j0")).radius_expanded_at is None

    @pytest.mark.asyncio
    async def test_errors_counted_not_raised(self, controller, job_store, make_job, clock):
        hour_ago = clock() - timedelta(hours=1)
        await job_store.create(make_job("a", created_at=hour_ago))
        await job_store.create(make_job("b", created_at=hour_ago))

        failures = [NoCapacityError(radius_km=50.0), InvalidStateError("Job changed concurrently")]
        with patch.object(controller, "expand_radius_for_job", new=AsyncMock(side_effect=failures)):
            outcome = await ExpansionSweeper(controller).sweep_once()

        assert outcome["exhausted"] == 1
        assert outcome["failed"] == 1
        assert outcome["expanded"] == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, controller):
        sweeper = ExpansionSweeper(controller, poll_interval=3600)

        with patch.object(sweeper, "sweep_once", new=AsyncMock(return_value={})) as sweep:
            await sweeper.start()
            await asyncio.sleep(0)
            await sweeper.stop()

        sweep.assert_awaited_once()
        assert sweeper._task.cancelled()

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, controller):
        sweeper = ExpansionSweeper(controller, poll_interval=0)
        calls = 0

        async def flaky_sweep():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db down")
            return {}

        with patch.object(sweeper, "sweep_once", new=AsyncMock(side_effect=flaky_sweep)) as sweep:
            await sweeper.start()
            for _ in range(10):
                await asyncio.sleep(0)
            await sweeper.stop()

        assert sweep.await_count >= 2
