"""
Database connection, session management and the mutation transaction.
"""

from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tolk.core.config import get_settings
from tolk.core.errors import StorageUnavailable

log = structlog.get_logger()

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    future=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker | None = None):
    """Run a unit of work in a single database transaction.

    Commits when the block exits normally and rolls back on any exception.
    Driver errors (connection loss, deadlock and serialization aborts, lock
    timeouts) surface as ``StorageUnavailable`` so callers can retry the
    original request. ``IntegrityError`` passes through for the services to
    map.
    """
    factory = session_factory or async_session_factory
    try:
        async with factory() as session:
            async with session.begin():
                yield session
    except IntegrityError:
        raise
    except DBAPIError as exc:
        log.warning("storage.unavailable", error_type=type(exc.orig).__name__)
        raise StorageUnavailable() from exc


@asynccontextmanager
async def read_session(session_factory: async_sessionmaker | None = None):
    """Session for queries that run outside a mutation transaction."""
    factory = session_factory or async_session_factory
    try:
        async with factory() as session:
            yield session
    except IntegrityError:
        raise
    except DBAPIError as exc:
        log.warning("storage.unavailable", error_type=type(exc.orig).__name__)
        raise StorageUnavailable() from exc
