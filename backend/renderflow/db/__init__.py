"""
Database module for renderflow.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from renderflow.db.engine import async_session, build_engine, build_session_factory, engine, shutdown
from renderflow.db.models import Base, PlanVersion, Project, Run, Scene

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine | None = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ready")


__all__ = [
    "Base",
    "PlanVersion",
    "Project",
    "Run",
    "Scene",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "init_database",
    "shutdown",
]
