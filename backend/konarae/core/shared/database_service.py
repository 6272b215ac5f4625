# backend/konarae/core/shared/database_service.py
"""
Async SQLAlchemy engine and session management for the crawler catalog.

PostgreSQL (asyncpg + pgvector) backs production. SQLite (aiosqlite) runs
local experiments and the test suite; on SQLite the vector and keyword
columns fall back to JSON (see ``konarae.core.database.models``).

Usage:
    from konarae.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        job = await session.get(CrawlJob, job_id)
        job.status = "running"
    # committed here; rolled back if the block raised

Pool sizing (PostgreSQL, API process only):
    DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_RECYCLE
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from konarae.config import settings
from konarae.core.database.base import Base

CATALOG_TABLES = (
    "crawl_sources",
    "crawl_jobs",
    "support_projects",
    "project_attachments",
    "project_groups",
    "document_embeddings",
)


def _in_worker_process() -> bool:
    """Celery prefork children run each task under a fresh ``asyncio.run`` loop."""
    return os.getenv("CELERY_WORKER") == "1" or os.getenv("FORKED_BY_MULTIPROCESSING") == "1"


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"echo": settings.debug}

    application_name = "konarae-worker" if _in_worker_process() else "konarae-api"
    options: Dict[str, Any] = {
        "echo": settings.debug,
        "connect_args": {"server_settings": {"application_name": application_name, "jit": "off"}},
    }
    if _in_worker_process():
        # Pooled connections are bound to the loop that opened them
        options["poolclass"] = NullPool
    else:
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
    return options


class DatabaseService:
    """Owns the engine and hands out committed-or-rolled-back sessions."""

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("konarae.database")
        self._database_url = database_url or settings.database_url
        self._engine: AsyncEngine = create_async_engine(
            self._database_url, **_engine_options(self._database_url)
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        target = self._database_url.rsplit("@", 1)[-1]
        self._logger.info(f"Database engine ready ({self.dialect}): {target}")

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits when the block exits cleanly and rolls back otherwise."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """Create missing tables; on PostgreSQL also the ``vector`` extension."""
        from konarae.core.database import models  # noqa: F401

        async with self._engine.begin() as conn:
            if self.dialect == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
        self._logger.info(f"Catalog schema ensured ({len(Base.metadata.tables)} tables)")

    async def health_check(self) -> Dict[str, Any]:
        """
        Connectivity check with per-table row counts.

        Returns:
            {"status": "healthy", "connected": True, "database_type": ..., "tables": {...}}
            or {"status": "unhealthy", "connected": False, "database_type": ..., "error": ...}
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                tables = {}
                for table_name in CATALOG_TABLES:
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0
        except Exception as e:
            self._logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect,
                "error": str(e),
            }

        return {
            "status": "healthy",
            "connected": True,
            "database_type": self.dialect,
            "tables": tables,
        }

    async def close(self) -> None:
        await self._engine.dispose()
        self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect})>"


# Global singleton instance
database_service = DatabaseService()
