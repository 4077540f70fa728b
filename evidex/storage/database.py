"""
Evidex Database Manager

Handles database connections, initialization, and session management.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from .models import Base
from ..config import get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages the async SQLite engine and its sessions.
    """

    def __init__(self, db_path: Optional[str] = None, echo: Optional[bool] = None):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file. If None, uses config.
            echo: Log SQL statements. If None, uses config.
        """
        if db_path is None or echo is None:
            settings = get_settings()
            if db_path is None:
                db_path = str(settings.resolve_path(settings.database.path))
            if echo is None:
                echo = settings.database.echo

        self.db_path = db_path
        self._ensure_directory()

        self.async_engine = create_async_engine(
            f"sqlite+aiosqlite:///{self.db_path}",
            echo=echo,
            connect_args={"check_same_thread": False},
        )

        self.async_session_factory = async_sessionmaker(
            self.async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        # WAL lets the API read results while a run writes them
        @event.listens_for(self.async_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    def _ensure_directory(self):
        """Ensure database directory exists."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

    async def init_db(self):
        """Initialize database tables."""
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session."""
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self):
        """Close database connections."""
        await self.async_engine.dispose()
