import logging
from typing import Any, AsyncGenerator

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from dripline.settings import settings

# Declared before Base so model modules can import it without cycles.
UUID_TYPE = sa.Uuid(as_uuid=True)

Base = declarative_base()

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool and driver options for the configured backend."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout_seconds,
        "connect_args": {"options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"},
    }


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))
        event.listen(_engine.sync_engine, "handle_error", _log_pool_timeout)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _log_pool_timeout(context) -> None:  # noqa: ANN001
    exc = context.original_exception or context.sqlalchemy_exception
    if isinstance(exc, PoolTimeoutError):
        logger.warning(
            "db_pool_timeout",
            extra={"extra": {"operation": str(context.statement) if context.statement else None}},
        )
