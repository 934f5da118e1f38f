"""
Asynchronous backtest runner with phase tracking and concurrency limits
"""
import asyncio
import logging
import threading
import uuid
from typing import Dict, Any, List, Optional

from smc_config.models import BacktestConfig
from ..backtester import BacktestSimulator, check_data_sufficiency
from ..core.data_source import CandleSource
from ..data_loader import validate_timeframe_alignment
from ..errors import BacktestError, DataSourceError, InsufficientDataError, InvalidConfigurationError
from ..persistence import ResultSink
from .progress import ProgressSink

logger = logging.getLogger(__name__)

PHASES = ('connecting', 'fetching', 'analyzing', 'saving', 'complete')


class BacktestRunner:
    """
    Runs backtests against a candle source

    The caller owns the runner; nothing here is global. Each run gets its own
    simulator and cancel event, and at most concurrent_limit runs simulate
    at once.
    """

    def __init__(self, source: CandleSource, result_sink: Optional[ResultSink] = None,
                 concurrent_limit: int = 2):
        self.source = source
        self.result_sink = result_sink
        self.concurrent_limit = concurrent_limit
        self._semaphore = asyncio.Semaphore(concurrent_limit)
        self.running: Dict[str, threading.Event] = {}

    async def _fetch(self, config: BacktestConfig):
        """Fetch all series concurrently; the run continues only once every fetch is done"""
        fetches = [
            self.source.get_historical_candles(config.symbol, tf, config.start_date, config.end_date)
            for tf in (config.htf_timeframe, config.mtf_timeframe, config.ltf_timeframe)
        ]
        if config.use_tick_data:
            fetches.append(self.source.get_ticks(config.symbol, config.start_date, config.end_date))

        try:
            results = await asyncio.gather(*fetches)
        except BacktestError:
            raise
        except Exception as e:
            raise DataSourceError(f"Failed to fetch data for {config.symbol}: {e}", phase='fetching') from e

        htf, mtf, ltf = results[:3]
        ticks = results[3] if len(results) > 3 else None
        if config.use_tick_data and ticks is None:
            logger.warning(f"No tick data for {config.symbol}, exits use candle extremes")
        return htf, mtf, ltf, ticks

    async def run(self, config: BacktestConfig, progress: Optional[ProgressSink] = None,
                  run_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one backtest to completion

        Returns:
            {'success': True, 'run_id', 'result', 'saved_to'} or the structured
            error dict {'success': False, 'phase', 'error_type', 'error', 'run_id'}
        """
        run_id = run_id or f"{config.symbol}-{uuid.uuid4().hex[:8]}"
        cancel_event = threading.Event()
        self.running[run_id] = cancel_event
        phase = 'connecting'

        def emit(name: str, counters: Optional[Dict[str, Any]] = None):
            self._notify(progress, 'on_progress', name, counters or {})

        try:
            emit(phase, {'run_id': run_id, 'symbol': config.symbol})
            errors = config.validate()
            if errors:
                raise InvalidConfigurationError(errors, phase=phase)

            async with self._semaphore:
                phase = 'fetching'
                emit(phase)
                htf, mtf, ltf, ticks = await self._fetch(config)
                check_data_sufficiency(config, htf, mtf, ltf, phase=phase)
                if not validate_timeframe_alignment(htf, mtf, ltf):
                    raise InsufficientDataError(
                        f"HTF, MTF and LTF series for {config.symbol} do not overlap in time", phase=phase
                    )
                logger.info(f"Fetched {len(htf)} HTF, {len(mtf)} MTF, {len(ltf)} LTF candles for {config.symbol}")

                phase = 'analyzing'
                emit(phase)
                simulator = BacktestSimulator(
                    config,
                    progress=progress.on_progress if progress is not None else None,
                    cancel_event=cancel_event
                )
                result = await asyncio.to_thread(simulator.run, htf, mtf, ltf, ticks)

            phase = 'saving'
            emit(phase)
            saved_to = None
            if self.result_sink is not None:
                saved_to = await asyncio.to_thread(self.result_sink.save, result, run_id)

            payload = {
                'success': True,
                'run_id': run_id,
                'symbol': config.symbol,
                'result': result.to_dict(),
                'saved_to': str(saved_to) if saved_to else None
            }
            logger.info(
                f"Backtest {run_id} complete: {result.metrics.total_trades} trades, "
                f"PnL {result.metrics.total_pnl:.2f}"
            )
            self._notify(progress, 'finish', 'complete', {
                'phase': 'complete', 'run_id': run_id, 'metrics': result.metrics.to_dict()
            })
            return payload

        except BacktestError as e:
            if e.phase is None:
                e.phase = phase
            logger.error(f"Backtest {run_id} failed in {e.phase}: {e.message}")
            payload = {**e.to_dict(), 'run_id': run_id}
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        except Exception as e:
            logger.exception(f"Backtest {run_id} crashed in {phase}")
            payload = {'success': False, 'phase': phase, 'error_type': 'internal', 'error': str(e), 'run_id': run_id}
        finally:
            self.running.pop(run_id, None)

        self._notify(progress, 'finish', 'error', payload)
        return payload

    @staticmethod
    def _notify(progress: Optional[ProgressSink], method: str, name: str, payload: Dict[str, Any]):
        """Deliver one event; a broken sink is logged and never fails the run"""
        if progress is None:
            return
        try:
            getattr(progress, method)(name, payload)
        except Exception as e:
            logger.warning(f"Progress sink failed on {name} event: {e}")

    def cancel(self, run_id: str) -> bool:
        """Ask a running backtest to stop at its next checkpoint"""
        event = self.running.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for {run_id}")
        return True

    async def run_many(self, configs: List[BacktestConfig]) -> List[Dict[str, Any]]:
        return await asyncio.gather(*(self.run(config) for config in configs))

    def get_status(self) -> Dict[str, Any]:
        return {
            'concurrent_limit': self.concurrent_limit,
            'running_backtests': len(self.running),
            'running_ids': list(self.running)
        }
