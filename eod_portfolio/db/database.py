"""Database engine and session utilities.

Components receive a :class:`Database` explicitly; nothing in the package
creates an engine at import time.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from eod_portfolio.db.base import Base


class Database:
    """Engine plus session factory for one database URL (Postgres or SQLite)."""

    def __init__(self, url: str, *, echo: bool = False):
        self._url = url
        self._engine: AsyncEngine = create_async_engine(url, future=True, echo=echo)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)

    @property
    def url(self) -> str:
        return self._url

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create the close, queue and ledger tables if they are missing."""

        # Registers every table on Base.metadata.
        import eod_portfolio.models  # noqa: F401  # pylint: disable=unused-import

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a single transaction, committed on exit."""

        async with self._session_factory() as session:
            async with session.begin():
                yield session


__all__ = ["Database"]
