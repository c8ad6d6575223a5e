# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy engine (asyncpg) for everything that
# runs on an event loop: FastAPI handlers, the orchestration loop's tool
# calls, and the batch embedding pipeline.
#
# THREE WAYS TO GET A SESSION:
#
# 1. get_async_session (FastAPI dependency):
#    One session per request. Auto-commits when the handler returns,
#    rolls back on exception.
#
# 2. async_session_factory() directly:
#    Used by the pipeline repository, which opens one short session per
#    page read and per record write so concurrent writers never share a
#    session.
#
# 3. get_sync_session (Celery bookkeeping):
#    Celery tasks are synchronous. They update embedding_runs rows through
#    a lazily created psycopg2 engine.
#
# Celery tasks also execute the async pipeline via asyncio.run(). Each
# asyncio.run() creates a fresh event loop, and asyncpg connections are
# bound to the loop that opened them, so those runs use a NullPool engine
# created per run (create_worker_session_factory) instead of the shared
# pooled engine below.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# pool_size + max_overflow must cover the widest pipeline concurrency gate
# (pipeline_incremental_concurrency=20) plus the interactive traffic.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=10,
    max_overflow=20,
)

# expire_on_commit=False: loaded rows stay readable after commit, which
# async sessions cannot lazily refresh.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def create_worker_session_factory() -> tuple[AsyncEngine, async_sessionmaker]:
    """
    Build a non-pooled async engine + session factory for one worker run.

    The caller owns the engine and must `await engine.dispose()` when the
    run finishes.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        poolclass=NullPool,
    )
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, factory


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# Lazy so that importing this module never requires psycopg2 (the API
# process does not need it).
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
            pool_size=2,
            max_overflow=2,
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
            run = session.get(EmbeddingRun, run_id)
            run.status = EmbeddingRunStatus.COMPLETED
            # Auto-commits on exit, auto-rollbacks on exception
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

    The session commits when the request completes and rolls back if the
    handler raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
