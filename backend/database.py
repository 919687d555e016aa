"""Database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.models.base import Base

if TYPE_CHECKING:
    from pathlib import Path

    from backend.config import Settings


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


class LocalDatabase:
    """The single-file local database and the engine bound to it.

    The sync engine only needs ``path()`` (the file is an opaque blob to it)
    and ``release_connections()`` after it replaced the file's contents.
    """

    def __init__(self, settings: Settings) -> None:
        self._path = settings.database_path
        self.engine, self.session_factory = create_engine(settings)

    def path(self) -> Path:
        """Return the path of the database file."""
        return self._path

    async def create_schema(self) -> None:
        """Create missing tables."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def release_connections(self) -> None:
        """Close pooled connections so new sessions reopen the (replaced) file."""
        await self.engine.dispose()

    async def dispose(self) -> None:
        """Dispose the engine on shutdown."""
        await self.engine.dispose()
