"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from yieldbridge.errors import PersistenceUnavailable
from yieldbridge.ledger.models import Base

logger = logging.getLogger(__name__)


def normalize_url(db_url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:/// if needed."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return db_url


class Database:
    """Engine and session factory owned by whoever builds it."""

    def __init__(self, database_url: str, echo: bool = False):
        self.url = normalize_url(database_url)
        self.engine: AsyncEngine = create_async_engine(self.url, echo=echo, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create all tables."""
        self._ensure_sqlite_dir()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug(f"Tables ready on {self.url.split('://', 1)[0]}")

    def _ensure_sqlite_dir(self) -> None:
        if self.url.startswith("sqlite") and ":memory:" not in self.url and ":///" in self.url:
            Path(self.url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)

    async def ping(self) -> None:
        """Round-trip a trivial query.

        Raises:
            PersistenceUnavailable: database not reachable
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            raise PersistenceUnavailable(f"Database unreachable: {e}") from e

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
