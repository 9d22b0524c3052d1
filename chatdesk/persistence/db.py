from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chatdesk.core.config import get_settings
from chatdesk.core.errors import DatabaseError


def _engine_options(database_url: str) -> dict[str, Any]:
    # Pool sizing only applies to server databases; sqlite uses a static pool.
    settings = get_settings()
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        return options
    options["pool_size"] = max(1, int(settings.api_db_pool_size))
    options["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


_database_url = get_settings().database_url
# Engine creation is lazy about connecting; nothing touches Postgres until first use.
engine = create_async_engine(_database_url, **_engine_options(_database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(operation: str) -> AsyncIterator[AsyncSession]:
    # Short-lived unit of work for stores; detached tasks must never share a request session.
    async with SessionLocal() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise DatabaseError(f"{operation} failed") from exc
