"""
Database infrastructure

Async SQLAlchemy engine, session factory and the storage-error boundary.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from kinship.core.config import settings
from kinship.core.errors import ConstraintViolationError, NetworkError
from kinship.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite gets a busy timeout and FK enforcement."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30

    engine = create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if database_url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine(settings.database_url, echo=settings.db_echo)
AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session"""
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


async def init_models(target: Optional[AsyncEngine] = None) -> None:
    """Create all tables (development and tests; production uses managed schema)."""
    from kinship.models import Base

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db_connection() -> None:
    await engine.dispose()


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """Map driver exceptions onto the application taxonomy.

    Callers that handle a specific uniqueness conflict themselves catch
    IntegrityError before it reaches this boundary.
    """
    try:
        yield
    except IntegrityError as exc:
        logger.warning("db.constraint_violation", operation=operation, error=str(exc.orig))
        raise ConstraintViolationError(
            f"{operation} conflicts with existing data",
            details={"operation": operation},
        ) from exc
    except DBAPIError as exc:
        if not is_transient(exc):
            raise
        logger.warning("db.transient_error", operation=operation, error=str(exc.orig))
        raise NetworkError(
            f"{operation} failed: backend unavailable",
            details={"operation": operation},
        ) from exc


async def with_read_retry(
    func: Callable[[], Awaitable[T]],
    operation: str,
    attempts: Optional[int] = None,
    base_delay: float = 0.05,
) -> T:
    """Run a read, retrying on NetworkError. Never use for writes."""
    retries = max(0, settings.db_read_retries if attempts is None else attempts)
    for attempt in range(retries + 1):
        try:
            return await func()
        except NetworkError:
            if attempt >= retries:
                raise
            delay = base_delay * (2**attempt)
            logger.info("db.read_retry", operation=operation, attempt=attempt + 1, delay_s=delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
