"""Async database engine and session management.

Provides:
    - build_engine: Create an async engine for a URL (pool options follow the dialect).
    - build_session_factory: A sessionmaker bound to an engine.
    - get_session_factory: Lazy process-wide factory built from Settings.
    - create_tables: Run create_all on an engine.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

EscrowService opens one session per public call from the factory, so the
factory (not a session) is what gets injected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tiered_escrow.config import get_settings
from tiered_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from tiered_escrow.config import Settings

logger = get_logger(__name__)

# Module-level singletons (initialized lazily or in init_db)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine.

    In-memory SQLite gets a StaticPool so every session sees the same
    database; other URLs get the pool sizing from settings.
    """
    settings = settings or get_settings()
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.endswith("://"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=settings.db_echo_sql, **kwargs)

    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=settings.db_echo_sql,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, settings)
        logger.info("database.engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(_get_engine())
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    from tiered_escrow.infrastructure.database.orm_models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize the engine and create tables in development or on SQLite."""
    engine = _get_engine()
    settings = get_settings()

    if settings.is_development or settings.is_sqlite:
        await create_tables(engine)
        logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
