"""
Database initialization.

Creates the NDR schema and seeds the packaged default workflow definitions.
Run this module to initialize a fresh database; the application lifespan
calls `init_db` on startup as well.
"""

import asyncio
import sys

from sqlalchemy.ext.asyncio import AsyncEngine

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import Base, async_session_maker, engine as default_engine
from ndr_backend.app.core.logging import get_logger
import ndr_backend.app.models  # noqa: F401  registers all tables on Base
from ndr_backend.app.services.workflow_repository import WorkflowRepository

logger = get_logger(__name__)
settings = get_settings()


async def init_db(engine: AsyncEngine = default_engine, session_factory=async_session_maker, seed: bool = True) -> None:
    """Create tables, then insert default workflows for categories that have none."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready at {engine.url.render_as_string(hide_password=True)}")

    if seed:
        created, skipped = await WorkflowRepository(session_factory).seed_defaults()
        logger.info(f"Default workflows: created={created} skipped={skipped}")


async def drop_all_tables(engine: AsyncEngine = default_engine) -> None:
    """Drop all tables (use with caution!)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("All NDR tables dropped")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "--drop":
        print("WARNING: This will drop all tables!")
        confirm = input("Type 'yes' to confirm: ")
        if confirm == "yes":
            asyncio.run(drop_all_tables())
        else:
            print("Aborted.")
    else:
        asyncio.run(init_db())
