"""
Trade Backtest Engine
=======================
Replays a generated trade signal against historical candles and reports
what would have happened to it.

Pipeline:
  1. Validate the signal (first failed rule → ``incomplete_data``)
  2. Gate on data quality (score below minimum or no candles → ``incomplete_data``)
  3. Scan candles chronologically inside ``[generated_at, generated_at + timeframe_hours]``
       - stop-loss has absolute priority within a candle and closes
         whatever allocation is still open
       - TP1 → TP2 → TP3 each close their own allocation
       - TP3 closes the trade
       - gaps wider than ``gap_multiplier`` × candle interval only warn
  4. Resolve status, P/L and duration

The engine never raises for well-typed input: every failure is reported
on the returned ``BacktestResult``. Each call owns its own accumulators,
so calls are independent and safe to run in parallel.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from src.config import BacktestSettings

from .data_quality import assess_data_quality
from .models import (
    STATUS_DESCRIPTIONS,
    BacktestEvent,
    BacktestRequest,
    BacktestResult,
    BacktestStatus,
    Candle,
    DataQuality,
    EventKind,
    EventLevel,
    ScanState,
    TradeSignal,
    as_utc,
)
from .validator import validate_signal

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

_ONE_MINUTE = timedelta(minutes=1)


def _minutes_between(start: datetime, end: datetime) -> int:
    return int((as_utc(end) - as_utc(start)) // _ONE_MINUTE)


# ══════════════════════════════════════════════════════════════════
# Event trail
# ══════════════════════════════════════════════════════════════════

class _EventLog:
    """Collects ``BacktestEvent``s and mirrors them to a logger."""

    def __init__(self, log: LoggerLike, label: str):
        self._log = log
        self._label = label
        self.events: List[BacktestEvent] = []

    def emit(
        self,
        kind: EventKind,
        message: str,
        level: EventLevel = EventLevel.INFO,
        timestamp: Optional[datetime] = None,
        **detail: Any,
    ) -> None:
        self.events.append(BacktestEvent(
            kind=kind,
            level=level,
            message=message,
            timestamp=timestamp,
            detail=detail,
        ))
        self._log.log(_LOG_LEVELS[level], "[Backtest %s] %s", self._label, message)


# ══════════════════════════════════════════════════════════════════
# Chronological scan
# ══════════════════════════════════════════════════════════════════

class _TradeScan:
    """
    Single-pass state machine over the candle series.

    ``SCANNING`` → ``STOPPED_BY_SL`` | ``STOPPED_BY_FULL_TP`` | ``EXHAUSTED``
    """

    def __init__(self, signal: TradeSignal, settings: BacktestSettings, events: _EventLog):
        self.signal = signal
        self.events = events
        self.state = ScanState.SCANNING

        self.generated_at = as_utc(signal.generated_at)
        self.expiry = as_utc(signal.expires_at)
        self.interval = signal.timeframe.interval
        self.max_gap = self.interval * settings.gap_multiplier

        self.remaining_allocation = 100.0
        self.profit_loss_usd = 0.0
        self.hits: Dict[str, datetime] = {}
        self.stop_loss_at: Optional[datetime] = None
        self.window_closed = False
        self.last_timestamp: Optional[datetime] = None
        self.gap_warning: Optional[str] = None

    def run(self, candles: Iterable[Candle]) -> ScanState:
        for candle in candles:
            self._step(candle)
            if self.state is not ScanState.SCANNING:
                break
        if self.state is ScanState.SCANNING:
            self.state = ScanState.EXHAUSTED
        return self.state

    # ── One candle ────────────────────────────────────────────────

    def _step(self, candle: Candle) -> None:
        ts = as_utc(candle.timestamp)

        if ts > self.expiry:
            self.window_closed = True
            self.state = ScanState.EXHAUSTED
            self.events.emit(
                EventKind.WINDOW_CLOSED,
                f"Trade window closed at {self.expiry.isoformat()}",
                timestamp=self.signal.expires_at,
            )
            return

        self._check_gap(ts)
        self.last_timestamp = ts

        # Stop-loss first: a candle touching both SL and a TP is a loss.
        if candle.low <= self.signal.stop_loss_price:
            self._hit_stop_loss(candle, ts)
            return

        for label, price, allocation in self.signal.targets:
            if label not in self.hits and candle.high >= price:
                self._hit_target(candle, label, price, allocation)

        if "TP3" in self.hits:
            self.state = ScanState.STOPPED_BY_FULL_TP

    def _check_gap(self, ts: datetime) -> None:
        if self.last_timestamp is None:
            return
        delta = ts - self.last_timestamp
        if delta <= self.max_gap:
            return

        gap_minutes = int(delta // _ONE_MINUTE)
        expected_minutes = int(self.interval // _ONE_MINUTE)
        message = (
            f"Data gap detected: {gap_minutes} minutes between candles "
            f"(expected {expected_minutes} minutes). This may affect backtest accuracy."
        )
        if self.gap_warning is None:
            self.gap_warning = message
        self.events.emit(
            EventKind.DATA_GAP,
            message,
            level=EventLevel.WARNING,
            timestamp=ts,
            gap_minutes=gap_minutes,
            expected_minutes=expected_minutes,
        )

    def _hit_stop_loss(self, candle: Candle, ts: datetime) -> None:
        signal = self.signal
        loss = (signal.stop_loss_price - signal.entry_price) * (self.remaining_allocation / 100)
        self.profit_loss_usd += loss
        self.stop_loss_at = candle.timestamp
        self.state = ScanState.STOPPED_BY_SL

        immediate = ts - self.generated_at < self.interval
        when = "IMMEDIATELY on first candle at" if immediate else "at"
        self.events.emit(
            EventKind.STOP_LOSS_HIT,
            f"Stop loss hit {when} {candle.timestamp.isoformat()} "
            f"({loss:+.2f} USD on {self.remaining_allocation:g}% remaining)",
            level=EventLevel.WARNING,
            timestamp=candle.timestamp,
            price=signal.stop_loss_price,
            loss_usd=loss,
            remaining_allocation=self.remaining_allocation,
            immediate=immediate,
        )

    def _hit_target(self, candle: Candle, label: str, price: float, allocation: float) -> None:
        profit = (price - self.signal.entry_price) * (allocation / 100)
        self.profit_loss_usd += profit
        self.remaining_allocation -= allocation
        self.hits[label] = candle.timestamp

        self.events.emit(
            EventKind.TARGET_HIT,
            f"{label} hit at {candle.timestamp.isoformat()} "
            f"(+{profit:.2f} USD, {self.remaining_allocation:g}% remaining)",
            timestamp=candle.timestamp,
            target=label,
            price=price,
            profit_usd=profit,
            remaining_allocation=self.remaining_allocation,
        )

    # ── Outcome ───────────────────────────────────────────────────

    def final_timestamp(self) -> datetime:
        """
        SL or TP3 candle when the trade closed. An unfinished trade runs to
        expiry if a later candle closed the window, otherwise to the last
        candle processed (the series ended before expiry).
        """
        if self.state is ScanState.STOPPED_BY_SL and self.stop_loss_at is not None:
            return self.stop_loss_at
        if self.state is ScanState.STOPPED_BY_FULL_TP:
            return self.hits["TP3"]
        if self.window_closed or self.last_timestamp is None:
            return self.expiry
        return self.last_timestamp


# ══════════════════════════════════════════════════════════════════
# Engine
# ══════════════════════════════════════════════════════════════════

class BacktestEngine:
    """
    Evaluates trade signals against candle series.

    Usage::

        engine = BacktestEngine(settings=get_settings())
        result = engine.run(signal, candles, DataQuality(score=92))

    The engine holds only configuration; every ``run`` call is independent.
    """

    def __init__(
        self,
        settings: Optional[BacktestSettings] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.settings = settings or BacktestSettings()
        self.logger = logger or logging.getLogger(__name__)

    # ── Public ────────────────────────────────────────────────────

    def run(
        self,
        signal: TradeSignal,
        candles: Sequence[Candle],
        data_quality: DataQuality,
    ) -> BacktestResult:
        events = _EventLog(self.logger, signal.trade_id or signal.symbol)
        score = data_quality.score

        # Step 0: validate trade parameters
        error = validate_signal(signal, self.settings)
        if error is not None:
            message = f"Invalid trade parameters: {error.message}"
            events.emit(
                EventKind.VALIDATION_FAILED, message,
                level=EventLevel.ERROR, rule=error.rule.value,
            )
            return self._incomplete(signal, 0.0, message, events)
        events.emit(EventKind.VALIDATION_PASSED, f"Trade parameters valid for {signal.symbol}")

        # Step 1: data quality gate
        minimum = self.settings.min_data_quality
        if score < minimum:
            message = (
                f"Insufficient data quality: {score:g}% (minimum {minimum:g}% required). "
                "This may be due to missing historical data or gaps in the price feed."
            )
            events.emit(
                EventKind.DATA_REJECTED, message,
                level=EventLevel.WARNING, score=score, minimum=minimum,
            )
            return self._incomplete(signal, score, message, events)

        if not candles:
            message = (
                f"No historical price data available for {signal.symbol} in the specified "
                f"timeframe ({signal.generated_at.isoformat()} to {signal.expires_at.isoformat()}). "
                "Unable to perform backtesting without price data."
            )
            events.emit(EventKind.DATA_REJECTED, message, level=EventLevel.WARNING, score=0)
            return self._incomplete(signal, 0.0, message, events)

        # Step 2: chronological scan
        scan = _TradeScan(signal, self.settings, events)
        final_state = scan.run(candles)

        # Step 3: resolve outcome
        return self._resolve(signal, scan, final_state, score, events)

    def run_request(self, request: BacktestRequest) -> BacktestResult:
        """Run one request, scoring the candle window when no score is supplied."""
        return self.run(request.signal, request.candles, self.resolve_data_quality(request))

    def run_many(self, requests: Iterable[BacktestRequest]) -> List[BacktestResult]:
        """Evaluate independent requests in order. No cross-trade aggregation."""
        return [self.run_request(request) for request in requests]

    def resolve_data_quality(self, request: BacktestRequest) -> DataQuality:
        if request.data_quality is not None:
            return request.data_quality
        signal = request.signal
        if validate_signal(signal, self.settings) is not None:
            # Window may be undefined; ``run`` reports the failed rule.
            return DataQuality(score=0)
        report = assess_data_quality(
            request.candles,
            signal.generated_at,
            signal.expires_at,
            signal.timeframe,
            self.settings,
        )
        return report.to_data_quality()

    # ── Result assembly ───────────────────────────────────────────

    def _resolve(
        self,
        signal: TradeSignal,
        scan: _TradeScan,
        final_state: ScanState,
        score: float,
        events: _EventLog,
    ) -> BacktestResult:
        duration = _minutes_between(signal.generated_at, scan.final_timestamp())
        hit_labels = [label for label, _price, _alloc in signal.targets if label in scan.hits]

        outcome_warning: Optional[str] = None
        if final_state is ScanState.STOPPED_BY_SL:
            status = BacktestStatus.COMPLETED_FAILURE
        elif final_state is ScanState.STOPPED_BY_FULL_TP:
            status = BacktestStatus.COMPLETED_SUCCESS
            events.emit(EventKind.COMPLETED, "ALL targets hit successfully (TP1, TP2, TP3)")
        elif hit_labels:
            status = BacktestStatus.COMPLETED_SUCCESS
            outcome_warning = (
                f"Trade expired with partial fills: {', '.join(hit_labels)} hit. "
                "Some targets were not reached before the timeframe ended."
            )
        else:
            status = BacktestStatus.EXPIRED
            outcome_warning = (
                f"Trade expired after {duration} minutes without hitting any targets "
                "(TP1, TP2, TP3, or Stop Loss). Final P/L: $0.00"
            )

        warnings = [w for w in (scan.gap_warning, outcome_warning) if w]
        profit_loss_usd = scan.profit_loss_usd
        profit_loss_pct = profit_loss_usd / signal.entry_price * 100

        events.emit(
            EventKind.COMPLETED,
            f"Backtest complete: {STATUS_DESCRIPTIONS[status]} | "
            f"P/L {profit_loss_usd:.2f} USD ({profit_loss_pct:.2f}%) | "
            f"duration {duration} min | targets hit: {', '.join(hit_labels) or 'none'} | "
            f"SL={scan.stop_loss_at is not None}",
            status=status.value,
        )

        def hit_at(label: str) -> Optional[datetime]:
            return scan.hits.get(label)

        def hit_price(label: str, price: float) -> Optional[float]:
            return price if label in scan.hits else None

        return BacktestResult(
            status=status,
            trade_id=signal.trade_id,
            symbol=signal.symbol,
            data_resolution=signal.timeframe,
            actual_entry_price=signal.entry_price,
            tp1_hit="TP1" in scan.hits,
            tp1_hit_at=hit_at("TP1"),
            tp1_hit_price=hit_price("TP1", signal.tp1_price),
            tp2_hit="TP2" in scan.hits,
            tp2_hit_at=hit_at("TP2"),
            tp2_hit_price=hit_price("TP2", signal.tp2_price),
            tp3_hit="TP3" in scan.hits,
            tp3_hit_at=hit_at("TP3"),
            tp3_hit_price=hit_price("TP3", signal.tp3_price),
            stop_loss_hit=scan.stop_loss_at is not None,
            stop_loss_hit_at=scan.stop_loss_at,
            stop_loss_hit_price=signal.stop_loss_price if scan.stop_loss_at is not None else None,
            profit_loss_usd=profit_loss_usd,
            profit_loss_percentage=profit_loss_pct,
            trade_duration_minutes=duration,
            remaining_allocation=scan.remaining_allocation,
            data_quality_score=score,
            warning_message="; ".join(warnings) if warnings else None,
            events=tuple(events.events),
        )

    def _incomplete(
        self,
        signal: TradeSignal,
        score: float,
        message: str,
        events: _EventLog,
    ) -> BacktestResult:
        return BacktestResult(
            status=BacktestStatus.INCOMPLETE_DATA,
            trade_id=signal.trade_id,
            symbol=signal.symbol,
            data_resolution=signal.timeframe,
            actual_entry_price=signal.entry_price,
            data_quality_score=score,
            error_message=message,
            events=tuple(events.events),
        )


def run_backtest(
    signal: TradeSignal,
    candles: Sequence[Candle],
    data_quality: DataQuality,
    *,
    settings: Optional[BacktestSettings] = None,
    logger: Optional[LoggerLike] = None,
) -> BacktestResult:
    """Functional entry point: ``BacktestEngine(settings, logger).run(...)``."""
    return BacktestEngine(settings=settings, logger=logger).run(signal, candles, data_quality)
