"""
Trade Signal Backtester
========================
Replays a generated trade signal (entry, three take-profits with
allocations, one stop-loss, validity window) against historical OHLCV
candles and returns a single auditable ``BacktestResult``.

Public API
----------
>>> from src.backtesting import run_backtest, DataQuality
>>> result = run_backtest(signal, candles, DataQuality(score=95))
>>> result.status, result.profit_loss_usd
"""

# ── Models ────────────────────────────────────────────────────────
from .models import (
    BacktestEvent,
    BacktestRequest,
    BacktestResult,
    BacktestStatus,
    Candle,
    DataQuality,
    DataQualityReport,
    EventKind,
    EventLevel,
    GapInfo,
    OHLCViolation,
    PriceMovement,
    QualityRecommendation,
    ScanState,
    Timeframe,
    TradeSignal,
    TradeValidationError,
    ValidationRule,
)

# ── Components ────────────────────────────────────────────────────
from .validator import validate_signal
from .data_quality import assess_data_quality, is_data_quality_acceptable
from .engine import BacktestEngine, run_backtest

__all__ = [
    # Engine
    "BacktestEngine",
    "run_backtest",
    # Components
    "validate_signal",
    "assess_data_quality",
    "is_data_quality_acceptable",
    # Models – Enums
    "BacktestStatus",
    "EventKind",
    "EventLevel",
    "QualityRecommendation",
    "ScanState",
    "Timeframe",
    "ValidationRule",
    # Models – Data classes
    "BacktestEvent",
    "BacktestRequest",
    "BacktestResult",
    "Candle",
    "DataQuality",
    "DataQualityReport",
    "GapInfo",
    "OHLCViolation",
    "PriceMovement",
    "TradeSignal",
    "TradeValidationError",
]
