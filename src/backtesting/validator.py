"""
Trade Signal Validator
========================
Structural and economic sanity checks run before any candle is scanned.

Checks run in order and the first failure wins:
  1. Entry, TP1-3 and stop-loss are positive numbers
  2. Allocations sum to 100% (± tolerance)
  3. No allocation is negative
  4. entry < TP1 < TP2 < TP3
  5. stop-loss < entry
  6. timeframe_hours > 0 and the expiry is a representable datetime
"""

from __future__ import annotations

import math
from typing import Callable, List, Optional, Tuple

from src.config import BacktestSettings

from .models import TradeSignal, TradeValidationError, ValidationRule

# A check returns a failure message, or None when the signal passes.
Check = Callable[[TradeSignal, BacktestSettings], Optional[str]]


def _positive(value: float) -> bool:
    return math.isfinite(value) and value > 0


def _fmt(value: float) -> str:
    return f"{value:g}"


# ── Individual checks ────────────────────────────────────────────

def _check_positive_prices(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    prices = [
        ("Entry", signal.entry_price),
        ("TP1", signal.tp1_price),
        ("TP2", signal.tp2_price),
        ("TP3", signal.tp3_price),
        ("Stop loss", signal.stop_loss_price),
    ]
    for label, price in prices:
        if not _positive(price):
            return f"{label} price must be a positive number (got {_fmt(price)})"
    return None


def _check_allocation_sum(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    total = signal.tp1_allocation + signal.tp2_allocation + signal.tp3_allocation
    if not math.isfinite(total) or abs(total - 100) > settings.allocation_tolerance:
        return f"Allocations must sum to 100% (got {_fmt(total)}%)"
    return None


def _check_allocation_non_negative(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    for label, _price, allocation in signal.targets:
        if allocation < 0:
            return f"Allocations must be non-negative ({label} allocation is {_fmt(allocation)}%)"
    return None


def _check_target_order(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    previous_label, previous_price = "entry", signal.entry_price
    for label, price, _allocation in signal.targets:
        if price <= previous_price:
            return f"{label} price must be above {previous_label} price"
        previous_label, previous_price = label, price
    return None


def _check_stop_below_entry(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    if signal.stop_loss_price >= signal.entry_price:
        return "Stop loss price must be below entry price"
    return None


def _check_positive_timeframe(signal: TradeSignal, settings: BacktestSettings) -> Optional[str]:
    if not _positive(signal.timeframe_hours):
        return f"Timeframe hours must be positive (got {_fmt(signal.timeframe_hours)})"
    try:
        signal.expires_at
    except OverflowError:
        return f"Timeframe hours too large (got {_fmt(signal.timeframe_hours)})"
    return None


VALIDATION_CHECKS: List[Tuple[ValidationRule, Check]] = [
    (ValidationRule.POSITIVE_PRICES, _check_positive_prices),
    (ValidationRule.ALLOCATION_SUM, _check_allocation_sum),
    (ValidationRule.ALLOCATION_NON_NEGATIVE, _check_allocation_non_negative),
    (ValidationRule.TARGET_ORDER, _check_target_order),
    (ValidationRule.STOP_BELOW_ENTRY, _check_stop_below_entry),
    (ValidationRule.POSITIVE_TIMEFRAME, _check_positive_timeframe),
]


# ── Public ───────────────────────────────────────────────────────

def validate_signal(
    signal: TradeSignal,
    settings: Optional[BacktestSettings] = None,
) -> Optional[TradeValidationError]:
    """
    Return the first failed rule for ``signal``, or ``None`` if it is valid.

    Pure function: no logging, no I/O.
    """
    settings = settings or BacktestSettings()
    for rule, check in VALIDATION_CHECKS:
        message = check(signal, settings)
        if message is not None:
            return TradeValidationError(rule=rule, message=message)
    return None
