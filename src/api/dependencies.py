"""
FastAPI Dependencies
======================
Shared dependency-injection functions for the API routes.

Provides:
  - ``get_settings``  → BacktestSettings loaded at startup
  - ``get_engine``    → BacktestEngine bound to those settings
"""

from __future__ import annotations

import logging

from fastapi import Request

from src.backtesting import BacktestEngine
from src.config import BacktestSettings, get_settings as load_settings

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
# Configuration
# ══════════════════════════════════════════════════════════════════

async def get_settings(request: Request) -> BacktestSettings:
    """
    Return the settings stored on ``app.state`` during startup, loading
    them on demand when the lifespan hook has not run.
    """
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        logger.debug("Settings not on app.state – loading from config files")
        settings = load_settings()
        request.app.state.settings = settings
    return settings


# ══════════════════════════════════════════════════════════════════
# Backtest Engine
# ══════════════════════════════════════════════════════════════════

async def get_engine(request: Request) -> BacktestEngine:
    """Build a ``BacktestEngine`` for the current settings."""
    settings = await get_settings(request)
    return BacktestEngine(settings=settings, logger=logging.getLogger("src.backtesting.api"))
