"""Database connection module.

Provides:
- init_engine(): create the AsyncEngine and session factory (called at startup)
- get_db(): async context manager for use in request and background code
- dispose_engine(): close the pool on shutdown
"""
import asyncio
import functools
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from db.models import Base
from errors import TransientInfrastructureError

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def init_engine(database_url: str, **engine_kwargs) -> AsyncEngine:
    """Create the engine and session factory for ``database_url``."""
    global _engine, _session_factory

    url = make_url(database_url)
    if url.get_backend_name() == "postgresql":
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_size", 5)
        engine_kwargs.setdefault("max_overflow", 10)
        engine_kwargs.setdefault("pool_timeout", 30)

    _engine = create_async_engine(url, echo=False, **engine_kwargs)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info(f"Database engine initialized ({url.get_backend_name()})")
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine is not initialized; call init_engine() first")
    return _engine


async def create_schema() -> None:
    """Create tables that do not exist yet (development and tests)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error.

    Connection and timeout failures, including those raised by the commit
    itself, surface as TransientInfrastructureError.

    Usage:
        async with get_db() as db:
            lead = await leads_repo.get_by_id(db, lead_id)
    """
    if _session_factory is None:
        raise RuntimeError("Database engine is not initialized; call init_engine() first")
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            transient = _as_transient(e, "session")
            if transient is not None:
                raise transient from e
            raise


def _as_transient(error: BaseException, where: str) -> Optional[TransientInfrastructureError]:
    if isinstance(error, (OperationalError, InterfaceError)):
        logger.warning(f"Database unavailable in {where}: {error.orig or error}")
        return TransientInfrastructureError("database", str(error.orig or error))
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        logger.warning(f"Database connection failed in {where}: {error}")
        return TransientInfrastructureError("database", str(error) or type(error).__name__)
    return None


def translate_db_errors(func):
    """Re-raise driver connection and timeout failures as TransientInfrastructureError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (OperationalError, InterfaceError, asyncio.TimeoutError, ConnectionError) as e:
            raise _as_transient(e, func.__name__) from e

    return wrapper


async def dispose_engine() -> None:
    """Dispose the engine connection pool. Call once on application shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
