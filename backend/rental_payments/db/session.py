"""Async engines and sessions, one engine per database URL."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rental_payments.core.config import get_settings

_engines: dict[str, AsyncEngine] = {}
_sessionmakers: dict[str, async_sessionmaker[AsyncSession]] = {}


def _database_url(override: str | None = None) -> str:
    return override or get_settings().database_url


def _engine_options(url: str) -> dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        # Writers queue on the file lock while the expiry sweep runs.
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True}


def get_sessionmaker(
    database_url: str | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Sessions never expire on commit: services read rows after committing."""
    url = _database_url(database_url)
    sessionmaker = _sessionmakers.get(url)
    if sessionmaker is None:
        engine = create_async_engine(url, **_engine_options(url))
        sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
        _engines[url] = engine
        _sessionmakers[url] = sessionmaker
    return sessionmaker


@asynccontextmanager
async def background_session(database_url: str | None = None) -> AsyncIterator[AsyncSession]:
    """Session for work outside a request; an open transaction is rolled back on error."""
    async with get_sessionmaker(database_url)() as session:
        try:
            yield session
        except Exception:
            if session.in_transaction():
                await session.rollback()
            raise


async def get_session() -> AsyncIterator[AsyncSession]:
    async with background_session() as session:
        yield session


async def dispose_engine(database_url: str | None = None) -> None:
    url = _database_url(database_url)
    _sessionmakers.pop(url, None)
    engine = _engines.pop(url, None)
    if engine is not None:
        await engine.dispose()
