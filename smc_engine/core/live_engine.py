"""
Live signal engine: the backtest detector and generator run on fresh candles
"""
import asyncio
import logging
import pandas as pd
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any

from smc_config.models import BacktestConfig
from ..confluence import analyze_market
from ..data_loader import to_epoch_ms, resolve_interval_ms, closed_until
from ..models import Signal, SignalStatus
from ..position_sizer import get_symbol_spec, calculate_position_size
from ..signal_generator import SignalGenerator
from ..smc_detector import StructureLedger
from .data_source import CandleSource, ExecutionSink, OrderResult

logger = logging.getLogger(__name__)


class LiveSignalWorker:
    """Polls one symbol, generates signals and forwards them to an execution sink"""

    def __init__(self, config: BacktestConfig, source: CandleSource, sink: ExecutionSink,
                 poll_interval: float = 30.0):
        self.config = config
        self.source = source
        self.sink = sink
        self.poll_interval = poll_interval
        self.symbol = config.symbol

        self.spec = get_symbol_spec(config.symbol)
        self.ledger = StructureLedger()
        self.generator = SignalGenerator(config.symbol, config.params, self.ledger)
        self.balance = config.initial_balance

        self.pending: Optional[Signal] = None
        self.signals: List[Signal] = []
        self.orders: List[OrderResult] = []
        self.status: Dict[str, Any] = {'symbol': self.symbol, 'status': 'stopped', 'htf_bias': None, 'last_error': None}

        self.task: Optional[asyncio.Task] = None
        self.stop_event = asyncio.Event()
        self.signal_callbacks: List[Callable[[Signal], None]] = []

    def add_signal_callback(self, callback: Callable[[Signal], None]):
        self.signal_callbacks.append(callback)

    def _notify_signal_callbacks(self, signal: Signal):
        for callback in self.signal_callbacks:
            try:
                callback(signal)
            except Exception as e:
                logger.error(f"Error in signal callback for {self.symbol}: {e}")

    async def _fetch(self):
        """Fetch the three series together"""
        return await asyncio.gather(
            self.source.get_historical_candles(self.symbol, self.config.htf_timeframe),
            self.source.get_historical_candles(self.symbol, self.config.mtf_timeframe),
            self.source.get_historical_candles(self.symbol, self.config.ltf_timeframe),
        )

    def _closed(self, df: pd.DataFrame, timeframe: str, now_ms: int, window: int) -> pd.DataFrame:
        if df.empty:
            return df
        end = closed_until(to_epoch_ms(df['timestamp']), resolve_interval_ms(df, timeframe), now_ms)
        return df.iloc[max(0, end - window):end].reset_index(drop=True)

    async def evaluate(self, now: Optional[datetime] = None) -> Optional[Signal]:
        """
        One polling step

        Only candles closed at `now` are analysed. Returns the signal that
        was sent to the sink on this step, if any.
        """
        now = pd.Timestamp(now or datetime.now(timezone.utc))
        if now.tzinfo is None:
            now = now.tz_localize('UTC')
        now_ms = int(now.timestamp() * 1000)

        htf, mtf, ltf = await self._fetch()
        htf = self._closed(htf, self.config.htf_timeframe, now_ms, self.config.htf_window)
        mtf = self._closed(mtf, self.config.mtf_timeframe, now_ms, self.config.mtf_window)
        ltf = self._closed(ltf, self.config.ltf_timeframe, now_ms, self.config.ltf_window)

        if len(htf) < self.config.min_htf_candles or len(mtf) < self.config.min_mtf_candles \
                or len(ltf) < self.config.min_ltf_candles:
            logger.debug(f"Insufficient data for {self.symbol}: HTF={len(htf)}, MTF={len(mtf)}, LTF={len(ltf)}")
            return None

        if self.pending is not None:
            return await self._resolve_pending(ltf, now)

        analysis = analyze_market(htf, mtf, ltf, self.config.params, self.ledger)
        self.status['htf_bias'] = analysis.htf_bias.value

        signal = self.generator.generate(analysis, ltf)
        if signal is None:
            return None

        self.signals.append(signal)
        logger.info(f"{self.symbol}: {signal.direction.value} signal @ {signal.entry_price} ({signal.reason})")
        if self.generator.needs_confirmation():
            self.pending = signal
            return None
        return await self._send(signal, now)

    async def _resolve_pending(self, ltf: pd.DataFrame, now) -> Optional[Signal]:
        signal = self.pending
        if self.generator.is_expired(signal, now):
            signal.expire(now)
            self.pending = None
            logger.info(f"{self.symbol}: pending {signal.direction.value} signal expired")
            return None

        candle = ltf.iloc[-1]
        if candle['timestamp'] <= signal.created_at:
            return None
        prev = ltf.iloc[-2] if len(ltf) > 1 else None
        if not self.generator.confirm(signal, candle, prev):
            return None

        self.pending = None
        if not self.generator.finalize_entry(signal, float(candle['close'])):
            signal.reject(now, 'entry beyond stop loss')
            return None
        return await self._send(signal, now)

    async def _send(self, signal: Signal, now) -> Optional[Signal]:
        signal.lot_size = calculate_position_size(
            self.balance, self.config.risk_percent, signal.entry_price, signal.stop_loss, self.spec
        ).lot_size

        try:
            result = await self.sink.place_order(
                self.symbol, signal.direction, signal.lot_size,
                signal.stop_loss, signal.take_profit, tag=signal.strategy
            )
        except Exception as e:
            signal.reject(now, f"execution failed: {e}")
            logger.error(f"{self.symbol}: execution sink failed: {e}")
            self.status['last_error'] = str(e)
            self._notify_signal_callbacks(signal)
            return signal
        self.orders.append(result)

        if result.is_successful:
            signal.take(now)
        else:
            signal.reject(now, result.error_message or result.status)
            logger.warning(f"{self.symbol}: order rejected: {result.error_message}")

        self._notify_signal_callbacks(signal)
        return signal

    async def start(self):
        if self.task and not self.task.done():
            logger.warning(f"Worker for {self.symbol} is already running")
            return
        self.stop_event.clear()
        self.status['status'] = 'running'
        self.task = asyncio.create_task(self._run())

    async def stop(self):
        if not self.task or self.task.done():
            return
        self.stop_event.set()
        try:
            await asyncio.wait_for(self.task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"Worker for {self.symbol} didn't stop gracefully, cancelling")
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.status['status'] = 'stopped'
        logger.info(f"Stopped worker for {self.symbol}")

    async def _run(self):
        while not self.stop_event.is_set():
            try:
                await self.evaluate()
                self.status['status'] = 'running'
            except Exception as e:
                logger.error(f"Error in worker loop for {self.symbol}: {e}")
                self.status['status'] = 'error'
                self.status['last_error'] = str(e)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


class LiveSignalEngine:
    """Runs one worker per symbol, at most max_concurrent evaluating at once"""

    def __init__(self, source: CandleSource, sink: ExecutionSink, max_concurrent: int = 3):
        self.source = source
        self.sink = sink
        self.max_concurrent = max_concurrent
        self.workers: Dict[str, LiveSignalWorker] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def add_symbol(self, config: BacktestConfig, poll_interval: float = 30.0) -> LiveSignalWorker:
        errors = config.validate()
        if errors:
            raise ValueError(f"Invalid configuration for {config.symbol}: {errors}")
        worker = LiveSignalWorker(config, self.source, self.sink, poll_interval)
        self.workers[config.symbol] = worker
        return worker

    async def evaluate_all(self, now: Optional[datetime] = None) -> Dict[str, Optional[Signal]]:
        """One step for every symbol under the concurrency cap"""
        async def step(worker: LiveSignalWorker):
            async with self._semaphore:
                return await worker.evaluate(now)

        symbols = list(self.workers)
        results = await asyncio.gather(*(step(self.workers[s]) for s in symbols), return_exceptions=True)
        out = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.error(f"Evaluation failed for {symbol}: {result}")
                self.workers[symbol].status['last_error'] = str(result)
                out[symbol] = None
            else:
                out[symbol] = result
        return out

    async def start(self):
        logger.info(f"Starting live engine for {len(self.workers)} symbols")
        for worker in self.workers.values():
            await worker.start()

    async def stop(self):
        await asyncio.gather(*(w.stop() for w in self.workers.values()), return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        return {symbol: dict(worker.status) for symbol, worker in self.workers.items()}

    def pending_signals(self) -> List[Signal]:
        return [w.pending for w in self.workers.values() if w.pending and w.pending.status == SignalStatus.PENDING]
