"""Async engine and session factory."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardpool_api.core.settings import settings

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a scoped session."""

    async with async_session() as session:
        yield session


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    """Resolve a session from a sync or async factory."""

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


__all__ = ["SessionFactory", "async_session", "engine", "get_session", "open_session"]
