#!/usr/bin/env python3
"""
Create the pgvector extension and all tables / indexes.

Usage:
    python scripts/init_db.py
"""

import asyncio
import logging

from sqlalchemy import text

from docrag.db.engine import async_engine
from docrag.db.models import Base

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def init_db() -> None:
    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    await async_engine.dispose()
    logger.info("Database initialised: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    asyncio.run(init_db())
