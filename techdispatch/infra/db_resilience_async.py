# techdispatch/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry on transient asyncpg errors and a circuit breaker for the stores.
"""
from __future__ import annotations
import time
import asyncio
from typing import TypeVar, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from techdispatch.infra.db_async import db_conn
from techdispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    True for errors worth retrying: lost/refused connections, pool
    exhaustion, deadlocks, serialization failures.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    # Constraint violations and syntax errors never fix themselves
    if isinstance(exc, (asyncpg.IntegrityConstraintViolationError, asyncpg.PostgresSyntaxError)):
        return False

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator: retry an async function on transient database errors with
    exponential backoff.  Use it on reads and on writes that are safe to
    repeat.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get(self, job_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}"
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    ``db_conn()`` with retry while acquiring the connection.

    Only acquisition is retried; errors raised inside the block propagate
    (wrap the whole operation in ``retry_on_transient_error`` to repeat it).

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM technicians")
    """
    delay = 0.1

    async with AsyncExitStack() as stack:
        for attempt in range(max_retries + 1):
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc):
                    raise

                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                    raise

                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )

                await asyncio.sleep(delay)
                delay = min(delay * 2.0, 5.0)

        yield conn


class CircuitBreakerOpenError(RuntimeError):
    """Raised instead of touching the database while the breaker is open."""


class CircuitBreaker:
    """
    Simple circuit breaker for database connections.

    States:
    - CLOSED: Normal operation
    - OPEN: Too many failures, reject requests
    - HALF_OPEN: Testing if service recovered
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def is_available(self) -> bool:
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if self._clock() - self.last_failure_time >= self.timeout:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                self.state = "HALF_OPEN"
                return True
            return False

        # HALF_OPEN: let a probe through
        return True

    def record_success(self) -> None:
        if self.state == "HALF_OPEN":
            logger.info(f"Circuit breaker '{self.name}' closing (recovered)")
            self.state = "CLOSED"
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            if self.state != "OPEN":
                logger.error(
                    f"Circuit breaker '{self.name}' opening "
                    f"(failures: {self.failure_count}/{self.failure_threshold})"
                )
                self.state = "OPEN"


_circuit_breaker = CircuitBreaker(
    failure_threshold=5,
    timeout=60.0,
    name="database"
)


def get_db_circuit_breaker() -> CircuitBreaker:
    return _circuit_breaker


@asynccontextmanager
async def protected_db_conn(autocommit: bool = True):
    """
    ``safe_db_conn()`` behind the database circuit breaker.

    Only transient (infrastructure) errors count as failures; a constraint
    violation says nothing about database health.
    """
    if not _circuit_breaker.is_available():
        raise CircuitBreakerOpenError("Circuit breaker is OPEN (database unavailable)")

    try:
        async with safe_db_conn(autocommit=autocommit) as conn:
            yield conn
    except Exception as exc:
        if is_transient_error(exc):
            _circuit_breaker.record_failure()
        raise
    else:
        _circuit_breaker.record_success()
