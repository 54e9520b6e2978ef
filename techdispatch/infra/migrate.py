# techdispatch/infra/migrate.py
"""
Standalone migration runner.

    python -m techdispatch.infra.migrate

Run it before starting the service (CI/CD step, init container or by
hand); the service itself never migrates on startup.
"""
import asyncio
import sys

from techdispatch.config import settings
from techdispatch.infra.db_async import close_pool, init_pool
from techdispatch.infra.logging_config import get_logger, setup_logging
from techdispatch.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.error(f"Migration failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    for version in result["applied"]:
        logger.info(f"  applied {version}")
    logger.info(f"Migrations applied: {result['count']}")
    return 0


if __name__ == "__main__":
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    sys.exit(asyncio.run(main()))
