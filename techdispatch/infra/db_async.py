# techdispatch/infra/db_async.py
"""
Shared asyncpg pool behind the Postgres job store and technician
directory.

Dispatch traffic is many short statements: the versioned job UPDATE, a
counter bump, a ranking read.  The client-side ``command_timeout``
matches the server ``statement_timeout``.
"""
from __future__ import annotations
from typing import AsyncIterator, Optional
from contextlib import asynccontextmanager

import asyncpg
from techdispatch.config import Settings, settings
from techdispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

APPLICATION_NAME = "techdispatch"

# Seconds an idle pooled connection is kept before it is closed
MAX_INACTIVE_CONNECTION_LIFETIME = 300.0

_pool: asyncpg.Pool | None = None


def command_timeout_for(cfg: Settings) -> float:
    """Client-side statement timeout in seconds."""
    return cfg.pg_statement_timeout_ms / 1000


async def init_pool(cfg: Optional[Settings] = None) -> None:
    """Open the pool for ``cfg`` (module settings by default); no-op when already open."""
    global _pool

    if _pool is not None:
        return

    cfg = cfg or settings
    logger.info(f"Opening dispatch store pool: {cfg.pghost}:{cfg.pgport}/{cfg.pgdatabase}")

    _pool = await asyncpg.create_pool(
        dsn=cfg.database_dsn,
        min_size=cfg.pg_pool_min,
        max_size=cfg.pg_pool_max,
        command_timeout=command_timeout_for(cfg),
        max_inactive_connection_lifetime=MAX_INACTIVE_CONNECTION_LIFETIME,
        server_settings={"application_name": APPLICATION_NAME},
    )

    logger.info(f"Dispatch store pool ready: min={cfg.pg_pool_min}, max={cfg.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return

    pool, _pool = _pool, None
    await pool.close()
    logger.info("Dispatch store pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With ``autocommit=False`` the block is one transaction: committed on a
    clean exit, rolled back when the block raises.  Migrations use this;
    job writes do not need it because each is a single conditional UPDATE.
    """
    if _pool is None:
        raise RuntimeError("Dispatch store pool is not open; call init_pool() first")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
