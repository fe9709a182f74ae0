"""
Backtester – API Integration Layer
=====================================
HTTP surface over the trade backtesting engine.

Public API::

    from src.api import create_app

    app = create_app()
    # uvicorn src.api.app:app --reload
"""

from .app import create_app
from .dependencies import get_engine, get_settings
from .error_handlers import register_error_handlers

__all__ = [
    "create_app",
    "get_engine",
    "get_settings",
    "register_error_handlers",
]
