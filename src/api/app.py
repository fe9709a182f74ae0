"""
FastAPI Application Factory
==============================
Main entry-point for the trade backtester REST API.

Run with::

    uvicorn src.api.app:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.config import ConfigurationError, get_settings

from .error_handlers import register_error_handlers

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
# Lifespan (startup / shutdown hooks)
# ══════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: load and validate configuration.
    Shutdown: nothing to release – the engine holds no connections.
    """
    logger.info("Backtester API starting up …")

    app.state.startup_time = time.time()
    app.state.ready = False

    try:
        app.state.settings = get_settings()
        logger.info(
            "Settings loaded (min_data_quality=%s, gap_multiplier=%s)",
            app.state.settings.min_data_quality,
            app.state.settings.gap_multiplier,
        )
        app.state.ready = True
        logger.info("Backtester API ready")
    except ConfigurationError as exc:
        app.state.settings = None
        logger.error("Startup failed: %s", exc, exc_info=True)

    yield  # ── Application runs ──

    logger.info("Backtester API shutting down …")


# ══════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    """
    Build and return the fully-configured FastAPI application.
    """
    app = FastAPI(
        title="Trade Signal Backtester API",
        description=(
            "Replays generated crypto trade signals (entry, three take-profits, "
            "stop-loss, validity window) against historical OHLCV candles."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── CORS ──────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],           # tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Request-timing middleware ─────────────────────────────────
    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
        return response

    # ── Error handlers ────────────────────────────────────────────
    register_error_handlers(app)

    # ── Routers ───────────────────────────────────────────────────
    from .routes import backtest_router, health_router

    app.include_router(
        backtest_router,
        prefix="/api/v1",
        tags=["backtest"],
    )
    app.include_router(
        health_router,
        prefix="/api/v1",
        tags=["health"],
    )

    return app


# ── Module-level app for ``uvicorn src.api.app:app`` ─────────────
app = create_app()
