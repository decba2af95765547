"""
Async database handle.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Owns the engine and session factory for the lifetime of the process."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    async def connect(self):
        """Create the engine and session factory."""
        self._engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            pool_pre_ping=True
        )
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info("Database engine created")

    async def create_all(self):
        """Create tables that do not exist yet."""
        from . import models  # noqa: F401  register tables on Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self):
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("Database engine disposed")

    @property
    def engine(self) -> AsyncEngine:
        if not self._engine:
            raise RuntimeError("Database not connected")
        return self._engine

    def session(self) -> AsyncSession:
        """Open a new session; use as ``async with db.session() as session``."""
        if not self._sessions:
            raise RuntimeError("Database not connected")
        return self._sessions()
