"""Script to create the visit lifecycle schema without Alembic (local development)."""

import asyncio

import structlog

from visitflow.database import dispose_engine, get_engine
from visitflow.middleware.logging import configure_logging
from visitflow.models import metadata

logger = structlog.get_logger()


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    async with get_engine().begin() as conn:
        await conn.run_sync(metadata.create_all)

    logger.info("database_initialized", tables=sorted(metadata.tables))
    await dispose_engine()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(init_db())
