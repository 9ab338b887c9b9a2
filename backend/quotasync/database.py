"""Engine and session lifecycle for the relational store.

Connectivity failures leave this module as ``StoreUnavailableError`` so the
scheduler, the API and the orchestrator treat a dead database the same way
whether it failed inside a store method or while opening and committing the
session around it.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quotasync.config import settings
from quotasync.exceptions import StoreUnavailableError
from quotasync.models import Base
from quotasync.services.store import store_errors

logger = logging.getLogger("quotasync.database")

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_recycle=settings.database_pool_recycle,
    pool_pre_ping=settings.database_pool_pre_ping,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Wait for the store to accept connections; create tables in debug mode.

    Only connectivity failures are retried. Anything else (a broken model, a
    DDL error) is raised on the first attempt.
    """
    total_attempts = settings.database_init_retries + 1
    for attempt in range(1, total_attempts + 1):
        try:
            with store_errors():
                async with engine.begin() as conn:
                    if settings.debug:
                        await conn.run_sync(Base.metadata.create_all)
                    else:
                        logger.info("Schema is managed by Alembic; skipping create_all")
        except StoreUnavailableError as exc:
            if attempt >= total_attempts:
                logger.error("Relational store still unavailable after %d attempts: %s", attempt, exc)
                raise
            delay_seconds = min(settings.database_init_retry_delay_seconds * attempt, 10.0)
            logger.warning(
                "Relational store unavailable (attempt %d/%d): %s. Retrying in %.1fs.",
                attempt,
                total_attempts,
                exc,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)
        else:
            if attempt > 1:
                logger.info("Relational store reachable after %d attempts", attempt)
            return


async def close_db() -> None:
    await engine.dispose()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits when the block succeeds and rolls back otherwise."""
    async with async_session_maker() as session:
        try:
            with store_errors():
                yield session
                await session.commit()
        except Exception:
            with store_errors():
                await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency form of ``get_db_context``."""
    async with get_db_context() as session:
        yield session
