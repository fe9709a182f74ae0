"""
Unit Tests – Backtest Engine
===============================
Target detection, stop-loss priority, P/L accounting, status resolution,
data-quality gating and the diagnostic event trail.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from src.backtesting import (
    BacktestEngine,
    BacktestRequest,
    BacktestStatus,
    DataQuality,
    EventKind,
    run_backtest,
)
from src.config import BacktestSettings


def _kinds(result):
    return [e.kind for e in result.events]


# ══════════════════════════════════════════════════════════════════
# Terminal outcomes
# ══════════════════════════════════════════════════════════════════

class TestStopLoss:

    def test_immediate_stop_loss(self, sample_signal, make_candles, good_quality, generated_at):
        candles = make_candles([(0, 100_500, 97_000)])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_FAILURE
        assert result.stop_loss_hit is True
        assert result.stop_loss_hit_at == generated_at
        assert result.stop_loss_hit_price == 98_000
        assert result.profit_loss_usd == pytest.approx(-2000 * 1.0)
        assert result.profit_loss_percentage == pytest.approx(-2.0)
        assert result.trade_duration_minutes == 0
        assert result.remaining_allocation == pytest.approx(100)

    def test_immediate_stop_loss_flagged_in_event(self, sample_signal, make_candles, good_quality):
        result = run_backtest(sample_signal, make_candles([(0, 100_500, 97_000)]), good_quality)
        sl_event = next(e for e in result.events if e.kind == EventKind.STOP_LOSS_HIT)
        assert sl_event.detail["immediate"] is True
        assert "IMMEDIATELY" in sl_event.message

    def test_stop_loss_has_priority_over_take_profit(self, sample_signal, make_candles, good_quality):
        # One candle spans both the stop and every target.
        candles = make_candles([(1, 107_000, 97_000)])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_FAILURE
        assert result.stop_loss_hit is True
        assert not (result.tp1_hit or result.tp2_hit or result.tp3_hit)
        assert result.profit_loss_usd == pytest.approx(-2000)

    def test_stop_loss_after_tp1_closes_remaining_allocation(
        self, sample_signal, make_candles, good_quality,
    ):
        candles = make_candles([
            (1, 102_500, 99_500),   # TP1
            (2, 101_000, 97_500),   # SL on the remaining 70 %
        ])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_FAILURE
        assert result.tp1_hit is True
        assert result.stop_loss_hit is True
        assert result.remaining_allocation == pytest.approx(70)
        assert result.profit_loss_usd == pytest.approx(600 - 2000 * 0.7)
        assert result.trade_duration_minutes == 120
        assert result.warning_message is None

    def test_candles_after_stop_loss_are_ignored(self, sample_signal, make_candles, good_quality):
        candles = make_candles([(1, 100_500, 97_000), (2, 107_000, 101_000)])
        result = run_backtest(sample_signal, candles, good_quality)
        assert result.tp1_hit is False
        assert result.profit_loss_usd == pytest.approx(-2000)


class TestFullSuccess:

    def test_all_targets_in_sequence(self, sample_signal, full_success_candles, good_quality):
        result = run_backtest(sample_signal, full_success_candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.tp1_hit and result.tp2_hit and result.tp3_hit
        assert result.stop_loss_hit is False
        assert result.profit_loss_usd == pytest.approx(600 + 1600 + 1800)
        assert result.profit_loss_usd == pytest.approx(4000)
        assert result.profit_loss_percentage == pytest.approx(4.0)
        assert result.trade_duration_minutes == 180
        assert result.remaining_allocation == pytest.approx(0)
        assert result.warning_message is None
        assert result.targets_hit == ["TP1", "TP2", "TP3"]

    def test_hit_timestamps_and_prices(self, sample_signal, full_success_candles, good_quality):
        result = run_backtest(sample_signal, full_success_candles, good_quality)
        assert result.tp1_hit_at == full_success_candles[0].timestamp
        assert result.tp2_hit_at == full_success_candles[1].timestamp
        assert result.tp3_hit_at == full_success_candles[2].timestamp
        assert (result.tp1_hit_price, result.tp2_hit_price, result.tp3_hit_price) == (
            102_000, 104_000, 106_000,
        )

    def test_all_targets_in_one_candle(self, sample_signal, make_candles, good_quality):
        candles = make_candles([(2, 107_000, 99_000)])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.tp1_hit_at == result.tp2_hit_at == result.tp3_hit_at
        assert result.profit_loss_usd == pytest.approx(4000)
        assert result.trade_duration_minutes == 120

    def test_trade_ends_at_tp3(self, sample_signal, full_success_candles, make_candles, good_quality):
        later = make_candles([(4, 100_000, 90_000)])
        result = run_backtest(sample_signal, full_success_candles + later, good_quality)
        assert result.stop_loss_hit is False
        assert result.status == BacktestStatus.COMPLETED_SUCCESS


class TestPartialFill:

    def test_tp1_and_tp2_then_expiry(self, sample_signal, make_candles, good_quality):
        candles = make_candles(
            [(1, 102_500, 99_500), (2, 104_500, 101_000)]
            + [(h, 103_000, 101_000) for h in range(3, 25)]
        )
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.tp1_hit and result.tp2_hit
        assert result.tp3_hit is False
        assert result.profit_loss_usd == pytest.approx(600 + 1600)
        assert result.remaining_allocation == pytest.approx(30)
        assert "partial fills: TP1, TP2 hit" in result.warning_message

    def test_only_tp1(self, sample_signal, make_candles, good_quality):
        result = run_backtest(sample_signal, make_candles([(1, 102_500, 99_500)]), good_quality)
        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.profit_loss_usd == pytest.approx(600)
        assert "partial fills: TP1 hit." in result.warning_message


class TestExpiry:

    def test_no_hits_expires(self, sample_signal, flat_candles, good_quality):
        result = run_backtest(sample_signal, flat_candles, good_quality)

        assert result.status == BacktestStatus.EXPIRED
        assert result.profit_loss_usd == 0
        assert result.profit_loss_percentage == 0
        assert result.trade_duration_minutes == 24 * 60
        assert "expired after 1440 minutes without hitting any targets" in result.warning_message
        assert result.remaining_allocation == pytest.approx(100)

    def test_candle_past_expiry_closes_window(self, sample_signal, make_candles, good_quality):
        candles = make_candles([(1, 101_000, 99_000), (30, 107_000, 99_000)])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.status == BacktestStatus.EXPIRED
        assert result.tp3_hit is False
        assert result.trade_duration_minutes == 24 * 60
        assert EventKind.WINDOW_CLOSED in _kinds(result)

    def test_candle_exactly_at_expiry_is_processed(self, sample_signal, make_candles, good_quality):
        result = run_backtest(sample_signal, make_candles([(24, 102_500, 99_500)]), good_quality)
        assert result.tp1_hit is True

    def test_series_ending_early_uses_last_candle(self, sample_signal, make_candles, good_quality):
        candles = make_candles([(h, 101_000, 99_000) for h in range(1, 6)])
        result = run_backtest(sample_signal, candles, good_quality)
        assert result.status == BacktestStatus.EXPIRED
        assert result.trade_duration_minutes == 5 * 60


# ══════════════════════════════════════════════════════════════════
# Gating
# ══════════════════════════════════════════════════════════════════

class TestGating:

    def test_low_quality_rejected_regardless_of_candles(self, sample_signal, full_success_candles):
        result = run_backtest(sample_signal, full_success_candles, DataQuality(score=50))

        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert result.data_quality_score == 50
        assert "Insufficient data quality: 50% (minimum 70% required)" in result.error_message
        assert result.tp1_hit is False
        assert result.profit_loss_usd == 0

    def test_quality_at_threshold_runs(self, sample_signal, full_success_candles):
        result = run_backtest(sample_signal, full_success_candles, DataQuality(score=70))
        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.data_quality_score == 70

    def test_configured_threshold(self, sample_signal, full_success_candles):
        settings = BacktestSettings(min_data_quality=80)
        result = run_backtest(
            sample_signal, full_success_candles, DataQuality(score=75), settings=settings,
        )
        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert "minimum 80% required" in result.error_message

    def test_empty_candles(self, sample_signal, good_quality):
        result = run_backtest(sample_signal, [], good_quality)
        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert result.data_quality_score == 0
        assert "No historical price data available for BTC" in result.error_message

    def test_invalid_signal_short_circuits(self, make_signal, full_success_candles, good_quality):
        signal = make_signal(tp3_allocation=25)
        result = run_backtest(signal, full_success_candles, good_quality)

        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert result.data_quality_score == 0
        assert result.error_message == (
            "Invalid trade parameters: Allocations must sum to 100% (got 95%)"
        )
        assert _kinds(result) == [EventKind.VALIDATION_FAILED]

    @pytest.mark.parametrize("use_candles", [True, False])
    def test_window_too_large_reported_not_raised(
        self, make_signal, flat_candles, good_quality, use_candles,
    ):
        signal = make_signal(timeframe_hours=1e8)
        result = run_backtest(signal, flat_candles if use_candles else [], good_quality)

        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert result.data_quality_score == 0
        assert result.error_message == (
            "Invalid trade parameters: Timeframe hours too large (got 1e+08)"
        )

    def test_window_too_large_without_supplied_quality(self, make_signal, flat_candles):
        request = BacktestRequest(signal=make_signal(timeframe_hours=1e8), candles=flat_candles)
        result = BacktestEngine().run_request(request)
        assert result.status == BacktestStatus.INCOMPLETE_DATA
        assert "Timeframe hours too large" in result.error_message

    def test_warning_not_set_on_incomplete(self, sample_signal):
        result = run_backtest(sample_signal, [], DataQuality(score=10))
        assert result.warning_message is None


# ══════════════════════════════════════════════════════════════════
# Data gaps
# ══════════════════════════════════════════════════════════════════

class TestDataGaps:

    def test_gap_warns_but_scan_continues(self, sample_signal, make_candles, good_quality):
        candles = make_candles([
            (1, 101_000, 99_000),
            (2, 101_000, 99_000),
            (6, 102_500, 99_500),   # 240 min after previous bar
        ])
        result = run_backtest(sample_signal, candles, good_quality)

        assert result.tp1_hit is True
        assert "Data gap detected: 240 minutes between candles (expected 60 minutes)" in (
            result.warning_message
        )
        assert "partial fills" in result.warning_message
        assert EventKind.DATA_GAP in _kinds(result)

    def test_gap_of_exactly_twice_interval_not_flagged(
        self, sample_signal, make_candles, good_quality,
    ):
        candles = make_candles([(1, 101_000, 99_000), (3, 101_000, 99_000)])
        result = run_backtest(sample_signal, candles, good_quality)
        assert EventKind.DATA_GAP not in _kinds(result)
        assert "Data gap" not in result.warning_message

    def test_only_first_gap_in_warning_but_all_in_events(
        self, sample_signal, make_candles, good_quality,
    ):
        candles = make_candles([(1, 101_000, 99_000), (5, 101_000, 99_000), (12, 101_000, 99_000)])
        result = run_backtest(sample_signal, candles, good_quality)
        assert result.warning_message.count("Data gap detected") == 1
        assert _kinds(result).count(EventKind.DATA_GAP) == 2

    def test_gap_with_stop_loss(self, sample_signal, make_candles, good_quality):
        candles = make_candles([(1, 101_000, 99_000), (8, 100_000, 97_000)])
        result = run_backtest(sample_signal, candles, good_quality)
        assert result.status == BacktestStatus.COMPLETED_FAILURE
        assert result.warning_message.startswith("Data gap detected")


# ══════════════════════════════════════════════════════════════════
# Invariants
# ══════════════════════════════════════════════════════════════════

class TestInvariants:

    @pytest.mark.parametrize("rows", [
        [(1, 102_500, 99_500), (2, 101_000, 97_000)],
        [(1, 104_500, 99_500), (2, 101_000, 99_000)],
        [(1, 101_000, 99_000)],
        [(1, 107_000, 99_000)],
    ])
    def test_allocation_conservation(self, sample_signal, make_candles, good_quality, rows):
        result = run_backtest(sample_signal, make_candles(rows), good_quality)
        allocations = {
            "TP1": sample_signal.tp1_allocation,
            "TP2": sample_signal.tp2_allocation,
            "TP3": sample_signal.tp3_allocation,
        }
        consumed = sum(allocations[label] for label in result.targets_hit)
        assert consumed + result.remaining_allocation == pytest.approx(100)

    @pytest.mark.parametrize("entry, tps, allocs", [
        (100_000, (102_000, 104_000, 106_000), (30, 40, 30)),
        (2_500.5, (2_600, 2_750.25, 3_000), (50, 25, 25)),
        (0.0042, (0.0050, 0.0065, 0.0100), (33.33, 33.33, 33.34)),
    ])
    def test_full_fill_profit_is_exact_sum(
        self, make_signal, make_candles, good_quality, entry, tps, allocs,
    ):
        signal = make_signal(
            entry_price=entry,
            tp1_price=tps[0], tp2_price=tps[1], tp3_price=tps[2],
            tp1_allocation=allocs[0], tp2_allocation=allocs[1], tp3_allocation=allocs[2],
            stop_loss_price=entry * 0.9,
        )
        candles = make_candles([(1, tps[2] * 1.01, entry)])
        result = run_backtest(signal, candles, good_quality)

        expected = sum((tp - entry) * (alloc / 100) for tp, alloc in zip(tps, allocs))
        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.profit_loss_usd == pytest.approx(expected)
        assert result.profit_loss_percentage == pytest.approx(expected / entry * 100)

    def test_idempotent(self, sample_signal, full_success_candles, good_quality):
        first = run_backtest(sample_signal, full_success_candles, good_quality)
        second = run_backtest(sample_signal, full_success_candles, good_quality)
        assert first == second
        assert first.model_dump() == second.model_dump()

    def test_quality_score_echoed(self, sample_signal, flat_candles):
        result = run_backtest(sample_signal, flat_candles, DataQuality(score=88.5))
        assert result.data_quality_score == 88.5

    def test_naive_and_aware_timestamps_mix(self, make_signal, make_candles, good_quality):
        signal = make_signal(generated_at=datetime(2025, 1, 1))
        candles = make_candles(
            [(1, 102_500, 99_500)], start=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        result = run_backtest(signal, candles, good_quality)
        assert result.tp1_hit is True
        assert result.trade_duration_minutes == 60

    def test_longer_timeframes(self, make_signal, make_candles, good_quality):
        signal = make_signal(timeframe="1d", timeframe_hours=24 * 7)
        candles = make_candles([(24, 101_000, 99_000), (72, 102_500, 99_500)])
        result = run_backtest(signal, candles, good_quality)
        # 48h between daily bars is exactly 2× the interval: no gap.
        assert EventKind.DATA_GAP not in _kinds(result)
        assert result.tp1_hit is True


# ══════════════════════════════════════════════════════════════════
# Engine class, events & logging
# ══════════════════════════════════════════════════════════════════

class TestBacktestEngine:

    def test_event_trail(self, sample_signal, full_success_candles, good_quality):
        result = run_backtest(sample_signal, full_success_candles, good_quality)
        kinds = _kinds(result)
        assert kinds[0] == EventKind.VALIDATION_PASSED
        assert kinds.count(EventKind.TARGET_HIT) == 3
        assert kinds[-1] == EventKind.COMPLETED
        targets = [e.detail["target"] for e in result.events if e.kind == EventKind.TARGET_HIT]
        assert targets == ["TP1", "TP2", "TP3"]

    def test_injected_logger_receives_events(
        self, sample_signal, full_success_candles, good_quality, caplog,
    ):
        custom = logging.getLogger("tests.backtest")
        with caplog.at_level(logging.INFO, logger="tests.backtest"):
            run_backtest(sample_signal, full_success_candles, good_quality, logger=custom)
        messages = [r.getMessage() for r in caplog.records if r.name == "tests.backtest"]
        assert any("TP1 hit" in m for m in messages)
        assert any("Backtest complete" in m for m in messages)

    def test_gap_logged_as_warning(self, sample_signal, make_candles, good_quality, caplog):
        candles = make_candles([(1, 101_000, 99_000), (9, 101_000, 99_000)])
        with caplog.at_level(logging.WARNING, logger="src.backtesting.engine"):
            run_backtest(sample_signal, candles, good_quality)
        assert any("Data gap detected" in r.getMessage() for r in caplog.records)

    def test_run_request_with_explicit_quality(self, sample_signal, full_success_candles):
        engine = BacktestEngine()
        request = BacktestRequest(
            signal=sample_signal,
            candles=full_success_candles,
            data_quality=DataQuality(score=90),
        )
        result = engine.run_request(request)
        assert result.status == BacktestStatus.COMPLETED_SUCCESS
        assert result.data_quality_score == 90

    def test_run_request_scores_window_when_quality_missing(
        self, sample_signal, make_candles, full_success_candles,
    ):
        engine = BacktestEngine()
        complete = make_candles([(h, 101_000, 99_000) for h in range(0, 24)])
        sparse = BacktestRequest(signal=sample_signal, candles=full_success_candles)
        dense = BacktestRequest(signal=sample_signal, candles=complete)

        sparse_result, dense_result = engine.run_many([sparse, dense])

        # 3 of 24 expected bars → well under the 70 % minimum.
        assert sparse_result.status == BacktestStatus.INCOMPLETE_DATA
        assert dense_result.status == BacktestStatus.EXPIRED
        assert dense_result.data_quality_score == 100

    def test_run_many_preserves_order_and_independence(
        self, make_signal, full_success_candles, flat_candles, good_quality,
    ):
        engine = BacktestEngine()
        requests = [
            BacktestRequest(signal=make_signal(trade_id="a"), candles=full_success_candles,
                            data_quality=good_quality),
            BacktestRequest(signal=make_signal(trade_id="b"), candles=flat_candles,
                            data_quality=good_quality),
        ]
        results = engine.run_many(requests)
        assert [r.trade_id for r in results] == ["a", "b"]
        assert results[0].status == BacktestStatus.COMPLETED_SUCCESS
        assert results[1].status == BacktestStatus.EXPIRED

    def test_result_is_frozen(self, sample_signal, flat_candles, good_quality):
        result = run_backtest(sample_signal, flat_candles, good_quality)
        with pytest.raises(Exception):
            result.profit_loss_usd = 1.0

    def test_expires_at(self, sample_signal, generated_at):
        assert sample_signal.expires_at == generated_at + timedelta(hours=24)
