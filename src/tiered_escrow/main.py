"""FastAPI application entry point for the Tiered Escrow service.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, build the escrow service
       and bootstrap the protocol row.
    2. Running: Serve the REST API on a single Uvicorn process.
    3. Shutdown: Close database and Redis connections gracefully.

Run with:
    uv run uvicorn tiered_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from tiered_escrow.config import get_settings
from tiered_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from tiered_escrow.domain.ports import EventSink


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from tiered_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Initialize Redis (optional: only event fan-out depends on it)
    from tiered_escrow.infrastructure.event_sinks import (
        FanOutEventSink,
        LoggingEventSink,
        RedisEventSink,
    )
    from tiered_escrow.infrastructure.redis_client import close_redis, init_redis

    sinks: list[EventSink] = [LoggingEventSink()]
    try:
        sinks.append(RedisEventSink(await init_redis(), settings.redis_event_channel))
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Build the escrow service
    from tiered_escrow.services.asset_transfer import build_asset_transfer
    from tiered_escrow.services.escrow_service import EscrowService

    assets = build_asset_transfer(settings)
    service = EscrowService(
        get_session_factory(),
        assets,
        events=FanOutEventSink(sinks),
        settings=settings,
    )
    await service.bootstrap()
    app.state.asset_transfer = assets
    app.state.escrow_service = service

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory - creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Tiered Escrow",
        description=(
            "Two-party escrow with custody, deadlines, disputes and "
            "volume-tiered protocol fees."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from tiered_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from tiered_escrow.api.routes.escrow import router as escrow_router
    from tiered_escrow.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(escrow_router)

    if settings.is_development:
        from tiered_escrow.api.routes.sandbox import router as sandbox_router

        app.include_router(sandbox_router)

    return app


# The app instance used by Uvicorn
app = create_app()
