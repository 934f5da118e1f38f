"""
Bar-by-bar backtest simulator for SMC signals
"""
import logging
import threading
import numpy as np
import pandas as pd
from datetime import date
from typing import Callable, Dict, Any, List, Optional, Tuple

from smc_config.models import BacktestConfig, KillZone
from .confluence import analyze_market, MarketAnalysis
from .data_loader import normalize_candles, to_epoch_ms, resolve_interval_ms, closed_until
from .errors import InsufficientDataError, BacktestCancelled
from .metrics import compute_metrics, build_equity_curve, build_drawdown_curve
from .models import Direction, ExitReason, Signal, Trade, BacktestResult
from .position_sizer import (
    SymbolSpec, get_symbol_spec, calculate_position_size,
    calculate_potential_pnl, validate_trade_params
)
from .signal_generator import SignalGenerator
from .smc_detector import StructureLedger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Dict[str, Any]], None]


def to_utc(ts) -> pd.Timestamp:
    ts = pd.Timestamp(ts)
    return ts.tz_localize('UTC') if ts.tzinfo is None else ts.tz_convert('UTC')


def in_kill_zone(ts, zones: List[KillZone]) -> bool:
    """Whether the UTC hour of ts falls in any session window"""
    hour = to_utc(ts).hour
    return any(zone.contains(hour) for zone in zones)


def check_data_sufficiency(config: BacktestConfig, htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame,
                            phase: str = 'analyzing'):
    """Raise InsufficientDataError when any series is below its minimum size"""
    problems = []
    for label, df, minimum in (
        ('HTF', htf, config.min_htf_candles),
        ('MTF', mtf, config.min_mtf_candles),
        ('LTF', ltf, config.min_ltf_candles),
    ):
        if len(df) < minimum:
            problems.append(f"{label} has {len(df)} candles, needs at least {minimum}")
    if problems:
        raise InsufficientDataError(f"Insufficient data for {config.symbol}: " + "; ".join(problems), phase=phase)


class DailyDrawdownTracker:
    """Start-of-day balance per UTC calendar day and the resulting trading lock"""

    def __init__(self, max_dd_percent: float):
        self.max_dd_percent = max_dd_percent
        self.day: Optional[date] = None
        self.start_balance = 0.0
        self.locked = False

    def roll(self, now, balance: float):
        """Reset on the first candle of a new UTC day"""
        day = to_utc(now).date()
        if day != self.day:
            if self.locked:
                logger.info(f"Daily drawdown lock released on {day}")
            self.day = day
            self.start_balance = balance
            self.locked = False

    def drawdown_percent(self, balance: float) -> float:
        if self.start_balance <= 0:
            return 0.0
        return max(0.0, (self.start_balance - balance) / self.start_balance * 100)

    def update(self, balance: float) -> bool:
        """Lock for the rest of the day once the limit is reached"""
        if not self.locked and self.drawdown_percent(balance) >= self.max_dd_percent:
            self.locked = True
            logger.info(
                f"Daily drawdown {self.drawdown_percent(balance):.2f}% reached limit "
                f"{self.max_dd_percent}% on {self.day}, no new signals until next day"
            )
        return self.locked


class BacktestSimulator:
    """
    Replays the lower timeframe candle by candle

    Structure is recomputed at every step from candles closed at the cursor.
    All run state lives on the instance, so separate runs never share anything.
    """

    def __init__(self, config: BacktestConfig, spec: Optional[SymbolSpec] = None,
                 progress: Optional[ProgressCallback] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.params = config.params
        self.spec = spec or get_symbol_spec(config.symbol)
        self.progress = progress
        self.cancel_event = cancel_event

        self.ledger = StructureLedger()
        self.generator = SignalGenerator(config.symbol, self.params, self.ledger)
        self.daily = DailyDrawdownTracker(self.params.max_daily_dd)

        self.balance = config.initial_balance
        self.peak_balance = config.initial_balance
        self.trades: List[Trade] = []
        self.signals: List[Signal] = []
        self.open_trade: Optional[Trade] = None
        self.pending: Optional[Signal] = None

        self._ticks: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]] = None

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame,
            ticks: Optional[pd.DataFrame] = None) -> BacktestResult:
        """
        Run the simulation over three aligned series

        Args:
            htf, mtf, ltf: Candle DataFrames (timestamp, open, high, low, close, volume)
            ticks: Optional DataFrame (timestamp, bid, ask) for tick-refined exits

        Returns:
            BacktestResult with closed trades, signals and metrics
        """
        htf, mtf, ltf = normalize_candles(htf), normalize_candles(mtf), normalize_candles(ltf)
        check_data_sufficiency(self.config, htf, mtf, ltf)

        htf_ms, mtf_ms, ltf_ms = to_epoch_ms(htf['timestamp']), to_epoch_ms(mtf['timestamp']), to_epoch_ms(ltf['timestamp'])
        htf_interval = resolve_interval_ms(htf, self.config.htf_timeframe)
        mtf_interval = resolve_interval_ms(mtf, self.config.mtf_timeframe)
        ltf_interval = resolve_interval_ms(ltf, self.config.ltf_timeframe)

        if self.config.use_tick_data and ticks is not None and len(ticks):
            ticks = ticks.sort_values('timestamp', kind='stable')
            self._ticks = (
                to_epoch_ms(ticks['timestamp']),
                ticks['bid'].to_numpy(dtype=float),
                ticks['ask'].to_numpy(dtype=float),
            )
            logger.info(f"Tick-refined exits enabled with {len(ticks)} ticks")

        n = len(ltf)
        logger.info(
            f"Backtesting {self.config.symbol} {self.params.strategy.value}: "
            f"{len(htf)} HTF / {len(mtf)} MTF / {n} LTF candles"
        )

        for i in range(n):
            self._checkpoint(i)
            candle = ltf.iloc[i]
            now = candle['timestamp']
            self.daily.roll(now, self.balance)

            if self.open_trade is not None:
                self._monitor(candle, int(ltf_ms[i]), ltf_interval)
            else:
                handled = False
                if self.pending is not None:
                    handled = self._resolve_pending(ltf, i)
                if not handled and self.open_trade is None and self.pending is None:
                    cutoff = int(ltf_ms[i]) + ltf_interval
                    h_end = closed_until(htf_ms, htf_interval, cutoff)
                    m_end = closed_until(mtf_ms, mtf_interval, cutoff)
                    windows = (
                        htf.iloc[max(0, h_end - self.config.htf_window):h_end],
                        mtf.iloc[max(0, m_end - self.config.mtf_window):m_end],
                        ltf.iloc[max(0, i + 1 - self.config.ltf_window):i + 1],
                    )
                    self._look_for_signal(now, *windows)

            if (i + 1) % self.config.progress_every == 0:
                self._emit_progress(i + 1, n)

        if self.open_trade is not None:
            last = ltf.iloc[-1]
            logger.info(f"Force-closing open {self.open_trade.direction.value} trade at end of data")
            self._close_trade(float(last['close']), last['timestamp'], ExitReason.MANUAL)

        self._emit_progress(n, n)
        return self._build_result(ltf, n)

    def _checkpoint(self, i: int):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BacktestCancelled(f"Backtest for {self.config.symbol} cancelled at candle {i}", phase='analyzing')

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def analyze(self, htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame) -> MarketAnalysis:
        return analyze_market(htf, mtf, ltf, self.params, self.ledger)

    def _passes_gates(self, analysis: MarketAnalysis) -> bool:
        """Extra confluence filters configured for the run"""
        direction = Direction.from_bias(analysis.direction)
        if direction is None:
            return False

        if self.params.min_confluence > 0 and analysis.confluence.score < self.params.min_confluence:
            return False

        if self.params.require_liquidity_sweep:
            sweep = analysis.recent_sweep
            if sweep is None or sweep.bias != analysis.direction:
                return False

        zone = analysis.premium_discount
        price = analysis.current_price
        if self.params.require_premium_discount and zone is not None:
            in_zone = zone.in_discount(price) if direction == Direction.BUY else zone.in_premium(price)
            if not in_zone:
                return False

        if self.params.require_ote and zone is not None and not zone.in_ote(price, direction):
            return False

        return True

    def _look_for_signal(self, now, htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame):
        if self.params.use_kill_zones and not in_kill_zone(now, self.params.kill_zones):
            return
        if len(htf) < self.config.min_htf_candles or len(mtf) < self.config.min_mtf_candles \
                or len(ltf) < self.config.min_ltf_candles:
            return

        analysis = self.analyze(htf, mtf, ltf)
        if not self._passes_gates(analysis):
            return

        signal = self.generator.generate(analysis, ltf)
        if signal is None:
            return

        self.signals.append(signal)
        if self.balance <= 0:
            signal.reject(now, 'account depleted')
            logger.debug(f"Rejected {signal.direction.value} signal at {now}: balance {self.balance:.2f}")
            return

        signal.lot_size = calculate_position_size(
            self.balance, self.config.risk_percent, signal.entry_price, signal.stop_loss, self.spec
        ).lot_size

        if self.daily.locked:
            signal.reject(now, 'daily drawdown limit reached')
            logger.debug(f"Rejected {signal.direction.value} signal at {now}: daily drawdown lock")
            return

        if self.generator.needs_confirmation():
            self.pending = signal
            return

        self._open_trade(signal, signal.entry_price, now)

    def _resolve_pending(self, ltf: pd.DataFrame, i: int) -> bool:
        """
        Expire, reject or fill the pending signal

        Returns True when the candle was used by the pending signal.
        """
        signal = self.pending
        candle = ltf.iloc[i]
        now = candle['timestamp']

        if self.generator.is_expired(signal, now):
            signal.expire(now)
            self.pending = None
            logger.debug(f"Pending {signal.direction.value} signal from {signal.created_at} expired")
            return False

        prev = ltf.iloc[i - 1] if i > 0 else None
        if not self.generator.confirm(signal, candle, prev):
            return True

        self.pending = None
        if self.daily.locked:
            signal.reject(now, 'daily drawdown limit reached')
            return True

        self._open_trade(signal, float(candle['close']), now)
        return True

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def _open_trade(self, signal: Signal, entry_price: float, now):
        if self.balance <= 0:
            signal.reject(now, 'account depleted')
            return
        if not self.generator.finalize_entry(signal, entry_price):
            signal.reject(now, 'entry beyond stop loss')
            return

        errors = validate_trade_params(signal.direction, signal.entry_price, signal.stop_loss, signal.take_profit)
        if errors:
            signal.reject(now, '; '.join(errors))
            return

        size = calculate_position_size(
            self.balance, self.config.risk_percent, signal.entry_price, signal.stop_loss, self.spec
        )
        signal.lot_size = size.lot_size
        signal.take(now)

        self.open_trade = Trade(
            symbol=self.config.symbol,
            direction=signal.direction,
            entry_price=signal.entry_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            lot_size=size.lot_size,
            entry_time=now,
            balance_before=self.balance
        )
        logger.debug(
            f"Opened {signal.direction.value} {size.lot_size} @ {signal.entry_price} "
            f"SL {signal.stop_loss} TP {signal.take_profit}"
        )

    def _tick_range(self, start_ms: int, interval_ms: int) -> Optional[Tuple[int, int]]:
        """Index bounds of the ticks inside [start, start + interval); None if there are none"""
        times = self._ticks[0]
        lo = int(np.searchsorted(times, start_ms, side='left'))
        hi = int(np.searchsorted(times, start_ms + interval_ms, side='left'))
        if lo >= hi:
            return None
        return lo, hi

    def _tick_exit(self, trade: Trade, lo: int, hi: int) -> Optional[Tuple[float, ExitReason]]:
        """First tick in [lo, hi) that crosses SL or TP; None if none does"""
        _, bids, asks = self._ticks
        for k in range(lo, hi):
            if trade.direction == Direction.BUY:
                if bids[k] <= trade.stop_loss:
                    return trade.stop_loss, ExitReason.SL
                if bids[k] >= trade.take_profit:
                    return trade.take_profit, ExitReason.TP
            else:
                if asks[k] >= trade.stop_loss:
                    return trade.stop_loss, ExitReason.SL
                if asks[k] <= trade.take_profit:
                    return trade.take_profit, ExitReason.TP
        return None

    def _candle_exit(self, trade: Trade, candle: pd.Series) -> Optional[Tuple[float, ExitReason]]:
        # SL before TP when one candle touches both
        high, low = float(candle['high']), float(candle['low'])
        if trade.direction == Direction.BUY:
            if low <= trade.stop_loss:
                return trade.stop_loss, ExitReason.SL
            if high >= trade.take_profit:
                return trade.take_profit, ExitReason.TP
        else:
            if high >= trade.stop_loss:
                return trade.stop_loss, ExitReason.SL
            if low <= trade.take_profit:
                return trade.take_profit, ExitReason.TP
        return None

    def _monitor(self, candle: pd.Series, start_ms: int, interval_ms: int):
        trade = self.open_trade
        bounds = self._tick_range(start_ms, interval_ms) if self._ticks is not None else None
        if bounds is not None:
            # Ticks cover this candle, only a crossing tick closes the trade
            exit_ = self._tick_exit(trade, *bounds)
        else:
            exit_ = self._candle_exit(trade, candle)
        if exit_ is not None:
            self._close_trade(exit_[0], candle['timestamp'], exit_[1])

    def _close_trade(self, price: float, time, reason: ExitReason):
        trade = self.open_trade
        pnl = calculate_potential_pnl(trade.direction, trade.entry_price, price, trade.lot_size, self.spec).pnl
        trade.close(price, time, reason, pnl)

        self.balance += pnl
        self.peak_balance = max(self.peak_balance, self.balance)
        self.trades.append(trade)
        self.open_trade = None
        self.daily.update(self.balance)

        logger.debug(f"Closed {trade.direction.value} at {price} ({reason.value}), pnl {pnl:.2f}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _emit_progress(self, processed: int, total: int):
        if self.progress is None:
            return
        wins = sum(1 for t in self.trades if t.is_winner)
        counters = {
            'processed': processed,
            'total': total,
            'percent': processed / total * 100 if total else 100.0,
            'trades': len(self.trades),
            'balance': self.balance,
            'pnl': self.balance - self.config.initial_balance,
            'win_rate': wins / len(self.trades) * 100 if self.trades else 0.0,
            'drawdown': (self.peak_balance - self.balance) / self.peak_balance * 100 if self.peak_balance > 0 else 0.0,
        }
        try:
            self.progress('analyzing', counters)
        except Exception as e:
            # Observability only, the run goes on
            logger.warning(f"Progress sink failed: {e}")

    def _build_result(self, ltf: pd.DataFrame, processed: int) -> BacktestResult:
        equity_curve = build_equity_curve(self.trades, self.config.initial_balance, ltf['timestamp'].iloc[0])
        return BacktestResult(
            symbol=self.config.symbol,
            strategy=self.params.strategy.value,
            initial_balance=self.config.initial_balance,
            trades=list(self.trades),
            signals=list(self.signals),
            metrics=compute_metrics(self.trades, self.config.initial_balance, self.config.sharpe_annualization),
            equity_curve=equity_curve,
            drawdown_curve=build_drawdown_curve(equity_curve),
            candles_processed=processed
        )


def run_backtest(config: BacktestConfig, htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame,
                 ticks: Optional[pd.DataFrame] = None, spec: Optional[SymbolSpec] = None,
                 progress: Optional[ProgressCallback] = None,
                 cancel_event: Optional[threading.Event] = None) -> BacktestResult:
    """Convenience wrapper: one fresh simulator per run"""
    return BacktestSimulator(config, spec, progress, cancel_event).run(htf, mtf, ltf, ticks)
