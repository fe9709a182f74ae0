"""
Backtester – API Route Modules
=================================
All FastAPI routers are registered from here.
"""

from .backtest import router as backtest_router
from .health import router as health_router

__all__ = [
    "backtest_router",
    "health_router",
]
