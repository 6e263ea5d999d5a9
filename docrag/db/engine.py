# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines against the same PostgreSQL database:
#
#   async (asyncpg)  → FastAPI handlers: listing, details, retrieval
#   sync  (psycopg2) → Celery workers: status updates, chunk inserts
#
# Celery tasks are synchronous and cannot drive the async engine, so the
# ingestion path goes through `get_sync_session()` while the read path goes
# through `get_async_session()` / `async_session_factory`.
#
# COMMIT POLICY:
#   - get_async_session (Depends): commits when the handler returns.
#   - async_session_factory() used directly (repository reads): the caller
#     commits explicitly when it writes.
#   - get_sync_session: commits on context exit, rolls back on exception.
#     The chunk-insert path opens one session per sub-batch so a failing
#     sub-batch never rolls back the ones before it.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from docrag.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# echo mirrors debug so SQL shows up in development logs only.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: ORM objects stay readable after commit, which
# async code needs because lazy refreshes cannot run outside a session.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# Built on first use so the API process never needs psycopg2 loaded.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage:
        with get_sync_session() as session:
            session.execute(update(Document).where(...).values(...))
            # Auto-commits on exit, rolls back on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Commits when the handler returns, rolls back if it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
