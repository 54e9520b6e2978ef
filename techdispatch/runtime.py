# techdispatch/runtime.py
"""
Engine wiring and lifecycle.

``dispatch_engine()`` is what a host process (web app, worker, CLI) enters
once at startup:

    async with dispatch_engine() as engine:
        await engine.controller.assign_job_to_technicians(job_id)
        await engine.tracker.update_technician_location(tech_id, update)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable

from techdispatch.config import Settings, settings
from techdispatch.core.dispatch.controller import DispatchController
from techdispatch.core.dispatch.policy import DispatchPolicy
from techdispatch.core.dispatch.tracking import LocationTracker
from techdispatch.core.domain import utcnow
from techdispatch.core.ports import AsyncJobStore, AsyncTechnicianDirectory
from techdispatch.infra.expansion_worker import ExpansionSweeper
from techdispatch.infra.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


@dataclass
class DispatchEngine:
    controller: DispatchController
    tracker: LocationTracker
    sweeper: ExpansionSweeper | None = None


def build_engine(
    jobs: AsyncJobStore,
    technicians: AsyncTechnicianDirectory,
    policy: DispatchPolicy,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchEngine:
    """Controller and tracker over one pair of stores."""
    return DispatchEngine(
        controller=DispatchController(jobs, technicians, policy, clock=clock),
        tracker=LocationTracker(jobs, technicians, policy, clock=clock),
    )


def _stores(cfg: Settings) -> tuple[AsyncJobStore, AsyncTechnicianDirectory]:
    if cfg.store_backend == "memory":
        from techdispatch.infra.memory_store import InMemoryJobStore, InMemoryTechnicianDirectory
        return InMemoryJobStore(), InMemoryTechnicianDirectory()

    from techdispatch.infra.pg_job_store_async import get_job_store
    from techdispatch.infra.pg_technician_directory_async import get_technician_directory
    return get_job_store(), get_technician_directory()


@asynccontextmanager
async def dispatch_engine(
    cfg: Settings | None = None,
    *,
    configure_logging: bool = True,
) -> AsyncIterator[DispatchEngine]:
    """
    Start the engine (pool, stores, optional sweeper) and tear it down on exit.

    Pass ``configure_logging=False`` when the host process already owns
    the root logger.
    """
    cfg = cfg or settings

    if configure_logging:
        setup_logging(level=cfg.log_level, use_json=cfg.is_production)

    # STARTUP
    logger.info(f"Starting dispatch engine: env={cfg.app_env}, store={cfg.store_backend}")

    missing = cfg.validate_required_for_production()
    if missing:
        logger.critical(f"Missing required production settings: {missing}")
        raise RuntimeError(f"Missing production config: {missing}")

    policy = cfg.dispatch_policy()

    uses_postgres = cfg.store_backend == "postgres"
    if uses_postgres:
        from techdispatch.infra.db_async import init_pool
        await init_pool(cfg)

    jobs, technicians = _stores(cfg)
    engine = build_engine(jobs, technicians, policy)

    if cfg.expansion_sweeper_enabled:
        engine.sweeper = ExpansionSweeper(
            engine.controller,
            poll_interval=cfg.expansion_sweeper_poll_interval,
            batch_size=cfg.expansion_sweeper_batch_size,
        )
        await engine.sweeper.start()
    else:
        logger.info("Expansion sweeper skipped (expansion_sweeper_enabled=false)")

    logger.info("Dispatch engine startup complete")

    try:
        yield engine
    finally:
        # SHUTDOWN
        if engine.sweeper is not None:
            await engine.sweeper.stop()

        if uses_postgres:
            from techdispatch.infra.db_async import close_pool
            await close_pool()

        logger.info("Dispatch engine shutdown complete")
