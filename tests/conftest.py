"""
Shared Test Fixtures & Configuration
=======================================
Pytest conftest with reusable fixtures for the entire test suite.
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest
from fastapi.testclient import TestClient

# ── Ensure project root is on sys.path ────────────────────────────
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


GENERATED_AT = datetime(2025, 1, 1, tzinfo=timezone.utc)


# ══════════════════════════════════════════════════════════════════
# FastAPI Test Client
# ══════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """Create the FastAPI app once for all tests."""
    from src.api.app import create_app
    return create_app()


@pytest.fixture(scope="session")
def client(app):
    """Sync TestClient wrapping the FastAPI app."""
    with TestClient(app) as c:
        yield c


# ══════════════════════════════════════════════════════════════════
# Signal & Candle Fixtures
# ══════════════════════════════════════════════════════════════════

@pytest.fixture()
def generated_at():
    return GENERATED_AT


@pytest.fixture()
def make_signal():
    """
    Factory for a BTC long: entry 100k, TP 102k/104k/106k at 30/40/30 %,
    SL 98k, 1h candles, 24h window. Keyword overrides replace fields.
    """
    from src.backtesting.models import Timeframe, TradeSignal

    def _make(**overrides):
        fields = dict(
            trade_id="test-trade-123",
            symbol="BTC",
            entry_price=100_000,
            tp1_price=102_000,
            tp1_allocation=30,
            tp2_price=104_000,
            tp2_allocation=40,
            tp3_price=106_000,
            tp3_allocation=30,
            stop_loss_price=98_000,
            timeframe=Timeframe.H1,
            timeframe_hours=24,
            generated_at=GENERATED_AT,
        )
        fields.update(overrides)
        return TradeSignal(**fields)

    return _make


@pytest.fixture()
def sample_signal(make_signal):
    return make_signal()


@pytest.fixture()
def make_candles():
    """
    Build candles from ``(hours_after_generation, high, low)`` tuples.
    Open/close sit between low and high so the bars are valid OHLC.
    """
    from src.backtesting.models import Candle

    def _make(rows: List[Tuple[float, float, float]], start: datetime = GENERATED_AT):
        candles = []
        for hours, high, low in rows:
            mid = (high + low) / 2
            candles.append(Candle(
                timestamp=start + timedelta(hours=hours),
                open=mid,
                high=high,
                low=low,
                close=mid,
                volume=1_000,
            ))
        return candles

    return _make


@pytest.fixture()
def flat_candles(make_candles):
    """24 hourly bars that never reach a target or the stop."""
    return make_candles([(h, 101_000, 99_000) for h in range(1, 25)])


@pytest.fixture()
def full_success_candles(make_candles):
    """Three bars hitting TP1, TP2, TP3 in order."""
    return make_candles([
        (1, 102_500, 99_500),
        (2, 104_500, 101_000),
        (3, 106_500, 103_000),
    ])


@pytest.fixture()
def good_quality():
    from src.backtesting.models import DataQuality
    return DataQuality(score=95)
