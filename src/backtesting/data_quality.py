"""
Candle Window Data Quality
============================
Scores a historical OHLCV window before it is handed to the backtester.

Quality Score:
    overall = 0.6 × completeness + 0.3 × validity + 0.1 × consistency

    completeness  % of expected candles present (capped at 100)
    validity      100 − (OHLC violations/n × 100 + price spikes/n × 50)
    consistency   100 − (candles missed inside gaps / n × 100)

Recommendation:
    ≥ 90 excellent · ≥ 70 good · ≥ 50 acceptable · otherwise poor
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence

from src.config import BacktestSettings

from .models import (
    Candle,
    DataQualityReport,
    GapInfo,
    OHLCViolation,
    PriceMovement,
    QualityRecommendation,
    Timeframe,
    as_utc,
)

logger = logging.getLogger(__name__)

COMPLETENESS_WEIGHT = 0.6
VALIDITY_WEIGHT = 0.3
CONSISTENCY_WEIGHT = 0.1
PRICE_SPIKE_PENALTY_WEIGHT = 50.0   # spikes count half as much as OHLC violations


# ══════════════════════════════════════════════════════════════════
# Public API
# ══════════════════════════════════════════════════════════════════

def assess_data_quality(
    candles: Sequence[Candle],
    start: datetime,
    end: datetime,
    timeframe: Timeframe,
    settings: Optional[BacktestSettings] = None,
) -> DataQualityReport:
    """Build a full quality report for ``candles`` over ``[start, end]``."""
    settings = settings or BacktestSettings()
    expected = expected_data_points(start, end, timeframe)

    if not candles:
        return DataQualityReport(expected_data_points=expected)

    gaps = detect_gaps(candles, timeframe, settings.gap_tolerance_multiplier)
    violations = find_ohlc_violations(candles)
    spikes = find_suspicious_movements(candles, settings.max_price_change_percent)

    completeness = min(100.0, len(candles) / expected * 100) if expected else 0.0
    validity = _validity_score(len(candles), violations, spikes)
    consistency = _consistency_score(len(candles), gaps)

    raw = (
        completeness * COMPLETENESS_WEIGHT
        + validity * VALIDITY_WEIGHT
        + consistency * CONSISTENCY_WEIGHT
    )
    overall = int(math.floor(max(0.0, min(100.0, raw)) + 0.5))

    logger.debug(
        "Data quality %d%% (%d/%d candles, %d gaps, %d OHLC violations, %d spikes)",
        overall, len(candles), expected, len(gaps), len(violations), len(spikes),
    )

    return DataQualityReport(
        overall_score=overall,
        completeness=completeness,
        validity_score=validity,
        consistency_score=consistency,
        total_data_points=len(candles),
        expected_data_points=expected,
        gaps=gaps,
        ohlc_violations=violations,
        suspicious_price_movements=spikes,
        recommendation=recommendation_for(overall),
    )


def is_data_quality_acceptable(
    candles: Sequence[Candle],
    start: datetime,
    end: datetime,
    timeframe: Timeframe,
    settings: Optional[BacktestSettings] = None,
) -> bool:
    settings = settings or BacktestSettings()
    report = assess_data_quality(candles, start, end, timeframe, settings)
    return report.overall_score >= settings.min_data_quality


def expected_data_points(start: datetime, end: datetime, timeframe: Timeframe) -> int:
    span = as_utc(end) - as_utc(start)
    if span.total_seconds() <= 0:
        return 0
    return int(span // timeframe.interval)


def recommendation_for(score: float) -> QualityRecommendation:
    if score >= 90:
        return QualityRecommendation.EXCELLENT
    if score >= 70:
        return QualityRecommendation.GOOD
    if score >= 50:
        return QualityRecommendation.ACCEPTABLE
    return QualityRecommendation.POOR


# ══════════════════════════════════════════════════════════════════
# Checks
# ══════════════════════════════════════════════════════════════════

def detect_gaps(
    candles: Sequence[Candle],
    timeframe: Timeframe,
    tolerance_multiplier: float,
) -> List[GapInfo]:
    interval = timeframe.interval
    max_gap = interval * tolerance_multiplier
    gaps: List[GapInfo] = []

    for prev, curr in zip(candles, candles[1:]):
        delta = as_utc(curr.timestamp) - as_utc(prev.timestamp)
        if delta > max_gap:
            gaps.append(GapInfo(
                start_time=prev.timestamp,
                end_time=curr.timestamp,
                duration_minutes=delta.total_seconds() / 60,
                missed_data_points=int(delta // interval) - 1,
            ))
    return gaps


def find_ohlc_violations(candles: Sequence[Candle]) -> List[OHLCViolation]:
    violations: List[OHLCViolation] = []

    for c in candles:
        issues = []
        if c.high < c.open:
            issues.append(f"High ({c.high:g}) < Open ({c.open:g})")
        if c.high < c.close:
            issues.append(f"High ({c.high:g}) < Close ({c.close:g})")
        if c.low > c.open:
            issues.append(f"Low ({c.low:g}) > Open ({c.open:g})")
        if c.low > c.close:
            issues.append(f"Low ({c.low:g}) > Close ({c.close:g})")
        if c.high < c.low:
            issues.append(f"High ({c.high:g}) < Low ({c.low:g})")

        if issues:
            violations.append(OHLCViolation(
                timestamp=c.timestamp,
                violation="; ".join(issues),
                open=c.open,
                high=c.high,
                low=c.low,
                close=c.close,
            ))
    return violations


def find_suspicious_movements(
    candles: Sequence[Candle],
    max_change_percent: float,
) -> List[PriceMovement]:
    """Open-vs-previous-close jumps larger than ``max_change_percent``."""
    movements: List[PriceMovement] = []

    for prev, curr in zip(candles, candles[1:]):
        if prev.close == 0:
            continue
        change = curr.open - prev.close
        pct = abs(change / prev.close * 100)
        if pct > max_change_percent:
            movements.append(PriceMovement(
                timestamp=curr.timestamp,
                price_change=change,
                percentage_change=pct,
                from_price=prev.close,
                to_price=curr.open,
            ))
    return movements


# ── Scores ───────────────────────────────────────────────────────

def _validity_score(
    n: int,
    violations: List[OHLCViolation],
    spikes: List[PriceMovement],
) -> float:
    penalty = len(violations) / n * 100 + len(spikes) / n * PRICE_SPIKE_PENALTY_WEIGHT
    return max(0.0, 100.0 - min(100.0, penalty))


def _consistency_score(n: int, gaps: List[GapInfo]) -> float:
    missed = sum(g.missed_data_points for g in gaps)
    return max(0.0, 100.0 - missed / n * 100)
