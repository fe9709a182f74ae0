"""
Backtesting – Data Models
==========================
Pydantic models for the trade backtester: trade signals, OHLCV candles,
data-quality inputs, validation errors, diagnostic events and the final
backtest result.

All models are frozen: a ``BacktestResult`` is produced once per call and
handed to the caller, never mutated afterwards.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────

class Timeframe(str, Enum):
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    W1 = "1w"

    @property
    def interval(self) -> timedelta:
        """Expected spacing between consecutive candles."""
        return TIMEFRAME_INTERVALS[self]


TIMEFRAME_INTERVALS: Dict[Timeframe, timedelta] = {
    Timeframe.M15: timedelta(minutes=15),
    Timeframe.H1: timedelta(hours=1),
    Timeframe.H4: timedelta(hours=4),
    Timeframe.D1: timedelta(days=1),
    Timeframe.W1: timedelta(weeks=1),
}


def as_utc(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC so aware and naive inputs compare."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class BacktestStatus(str, Enum):
    COMPLETED_SUCCESS = "completed_success"
    COMPLETED_FAILURE = "completed_failure"
    EXPIRED = "expired"
    INCOMPLETE_DATA = "incomplete_data"


STATUS_DESCRIPTIONS: Dict[BacktestStatus, str] = {
    BacktestStatus.COMPLETED_SUCCESS: "Trade completed successfully",
    BacktestStatus.COMPLETED_FAILURE: "Trade stopped out (loss)",
    BacktestStatus.EXPIRED: "Trade expired without hitting targets",
    BacktestStatus.INCOMPLETE_DATA: "Insufficient data for backtesting",
}


class ScanState(str, Enum):
    """States of the chronological candle scan."""
    SCANNING = "scanning"
    STOPPED_BY_SL = "stopped_by_sl"
    STOPPED_BY_FULL_TP = "stopped_by_full_tp"
    EXHAUSTED = "exhausted"


class ValidationRule(str, Enum):
    POSITIVE_PRICES = "positive_prices"
    ALLOCATION_SUM = "allocation_sum"
    ALLOCATION_NON_NEGATIVE = "allocation_non_negative"
    TARGET_ORDER = "target_order"
    STOP_BELOW_ENTRY = "stop_below_entry"
    POSITIVE_TIMEFRAME = "positive_timeframe"


class EventKind(str, Enum):
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    DATA_REJECTED = "data_rejected"
    DATA_GAP = "data_gap"
    TARGET_HIT = "target_hit"
    STOP_LOSS_HIT = "stop_loss_hit"
    WINDOW_CLOSED = "window_closed"
    COMPLETED = "completed"


class EventLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class QualityRecommendation(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"


# ─────────────────────────────────────────────────────────────────
# Inputs
# ─────────────────────────────────────────────────────────────────

class TradeSignal(BaseModel):
    """
    A long trade produced by the signal generator.

    Economic sanity (ordering of targets, allocation sum, ...) is checked
    by ``validate_signal`` and reported inline, not by the model.
    """
    model_config = ConfigDict(frozen=True)

    trade_id: Optional[str] = None
    symbol: str
    entry_price: float
    tp1_price: float
    tp1_allocation: float
    tp2_price: float
    tp2_allocation: float
    tp3_price: float
    tp3_allocation: float
    stop_loss_price: float
    timeframe: Timeframe
    timeframe_hours: float
    generated_at: datetime

    @property
    def expires_at(self) -> datetime:
        return self.generated_at + timedelta(hours=self.timeframe_hours)

    @property
    def targets(self) -> List[Tuple[str, float, float]]:
        """``(label, price, allocation)`` for TP1..TP3 in ascending order."""
        return [
            ("TP1", self.tp1_price, self.tp1_allocation),
            ("TP2", self.tp2_price, self.tp2_allocation),
            ("TP3", self.tp3_price, self.tp3_allocation),
        ]


class Candle(BaseModel):
    """One OHLCV bar."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class DataQuality(BaseModel):
    """Completeness/continuity score of a candle window (0-100)."""
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0, le=100)


class BacktestRequest(BaseModel):
    """
    One unit of work for the engine. When ``data_quality`` is omitted the
    engine scores the candle window itself.
    """
    model_config = ConfigDict(frozen=True)

    signal: TradeSignal
    candles: List[Candle] = Field(default_factory=list)
    data_quality: Optional[DataQuality] = None


class TradeValidationError(BaseModel):
    """First failed validation rule for a trade signal."""
    model_config = ConfigDict(frozen=True)

    rule: ValidationRule
    message: str


class BacktestEvent(BaseModel):
    """Structured diagnostic emitted while evaluating a backtest."""
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    level: EventLevel = EventLevel.INFO
    message: str
    timestamp: Optional[datetime] = None
    detail: Dict[str, Any] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────
# Data quality report
# ─────────────────────────────────────────────────────────────────

class GapInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    duration_minutes: float
    missed_data_points: int


class OHLCViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    violation: str
    open: float
    high: float
    low: float
    close: float


class PriceMovement(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    price_change: float
    percentage_change: float
    from_price: float
    to_price: float


class DataQualityReport(BaseModel):
    """Breakdown of how a candle window scored (0-100 overall)."""
    model_config = ConfigDict(frozen=True)

    overall_score: int = 0
    completeness: float = 0.0
    validity_score: float = 0.0
    consistency_score: float = 0.0
    total_data_points: int = 0
    expected_data_points: int = 0
    gaps: List[GapInfo] = Field(default_factory=list)
    ohlc_violations: List[OHLCViolation] = Field(default_factory=list)
    suspicious_price_movements: List[PriceMovement] = Field(default_factory=list)
    recommendation: QualityRecommendation = QualityRecommendation.POOR

    def to_data_quality(self) -> DataQuality:
        return DataQuality(score=self.overall_score)


# ─────────────────────────────────────────────────────────────────
# Output
# ─────────────────────────────────────────────────────────────────

class BacktestResult(BaseModel):
    """Terminal outcome of one backtested trade signal."""
    model_config = ConfigDict(frozen=True)

    status: BacktestStatus
    trade_id: Optional[str] = None
    symbol: str = ""
    data_resolution: Optional[Timeframe] = None
    actual_entry_price: float = 0.0

    # Target hits
    tp1_hit: bool = False
    tp1_hit_at: Optional[datetime] = None
    tp1_hit_price: Optional[float] = None
    tp2_hit: bool = False
    tp2_hit_at: Optional[datetime] = None
    tp2_hit_price: Optional[float] = None
    tp3_hit: bool = False
    tp3_hit_at: Optional[datetime] = None
    tp3_hit_price: Optional[float] = None
    stop_loss_hit: bool = False
    stop_loss_hit_at: Optional[datetime] = None
    stop_loss_hit_price: Optional[float] = None

    # Profit / loss
    profit_loss_usd: float = 0.0
    profit_loss_percentage: float = 0.0
    trade_duration_minutes: int = 0
    remaining_allocation: float = 100.0   # % still open at SL / expiry

    data_quality_score: float = 0.0
    error_message: Optional[str] = None
    warning_message: Optional[str] = None
    events: Tuple[BacktestEvent, ...] = ()

    @property
    def targets_hit(self) -> List[str]:
        flags = (("TP1", self.tp1_hit), ("TP2", self.tp2_hit), ("TP3", self.tp3_hit))
        return [label for label, hit in flags if hit]

    @property
    def is_terminal_success(self) -> bool:
        return self.status == BacktestStatus.COMPLETED_SUCCESS
