"""
Backtest Routes
=================
POST /api/v1/backtest        – Replay one trade signal against candles.
POST /api/v1/backtest/batch  – Replay several independent trade signals.
POST /api/v1/data-quality    – Score a candle window without backtesting.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Sequence

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api.dependencies import get_engine, get_settings
from src.api.error_handlers import BatchTooLargeError, CandleOrderError
from src.backtesting import (
    BacktestEngine,
    BacktestRequest,
    BacktestResult,
    Candle,
    DataQualityReport,
    Timeframe,
    assess_data_quality,
)
from src.backtesting.models import as_utc
from src.config import BacktestSettings

router = APIRouter()
logger = logging.getLogger(__name__)


def _ensure_sorted(candles: Sequence[Candle]) -> None:
    """The engine scans candles as given, so reject out-of-order payloads."""
    for i in range(1, len(candles)):
        if as_utc(candles[i].timestamp) < as_utc(candles[i - 1].timestamp):
            raise CandleOrderError(
                index=i,
                previous=candles[i - 1].timestamp.isoformat(),
                current=candles[i].timestamp.isoformat(),
            )


# ══════════════════════════════════════════════════════════════════
# Single backtest
# ══════════════════════════════════════════════════════════════════

@router.post(
    "/backtest",
    response_model=BacktestResult,
    summary="Backtest a trade signal",
    description=(
        "Replay a trade signal against chronological OHLCV candles. "
        "Invalid parameters or poor data return status ``incomplete_data`` "
        "rather than an HTTP error."
    ),
)
def backtest(
    body: BacktestRequest,
    engine: BacktestEngine = Depends(get_engine),
):
    """
    **POST /api/v1/backtest**

    Returns: status, target hits, P/L, duration, warnings and event trail.
    """
    _ensure_sorted(body.candles)
    return engine.run_request(body)


# ══════════════════════════════════════════════════════════════════
# Batch
# ══════════════════════════════════════════════════════════════════

class BatchBacktestRequest(BaseModel):
    """Request body for the batch endpoint."""
    backtests: List[BacktestRequest] = Field(
        ...,
        min_length=1,
        description="Independent backtests; each is evaluated on its own.",
    )


class BatchBacktestResponse(BaseModel):
    results: List[BacktestResult] = Field(default_factory=list)
    count: int = 0


@router.post(
    "/backtest/batch",
    response_model=BatchBacktestResponse,
    summary="Backtest several trade signals",
    description="Evaluate up to ``max_batch_size`` independent backtests in order.",
)
def backtest_batch(
    body: BatchBacktestRequest,
    engine: BacktestEngine = Depends(get_engine),
    settings: BacktestSettings = Depends(get_settings),
):
    if len(body.backtests) > settings.max_batch_size:
        raise BatchTooLargeError(len(body.backtests), settings.max_batch_size)
    for item in body.backtests:
        _ensure_sorted(item.candles)

    results = engine.run_many(body.backtests)
    logger.info("Batch backtest: %d trades evaluated", len(results))
    return BatchBacktestResponse(results=results, count=len(results))


# ══════════════════════════════════════════════════════════════════
# Data quality
# ══════════════════════════════════════════════════════════════════

class DataQualityRequest(BaseModel):
    """Request body for the data-quality endpoint."""
    candles: List[Candle] = Field(default_factory=list)
    start: datetime
    end: datetime
    timeframe: Timeframe


@router.post(
    "/data-quality",
    response_model=DataQualityReport,
    summary="Score a candle window",
    description="Completeness, validity and consistency of an OHLCV window (0-100).",
)
def data_quality(
    body: DataQualityRequest,
    settings: BacktestSettings = Depends(get_settings),
):
    _ensure_sorted(body.candles)
    return assess_data_quality(body.candles, body.start, body.end, body.timeframe, settings)
