"""
Progress sinks for backtest runs

Sinks are best effort: they never block the simulation and never raise
into it.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ProgressSink(ABC):
    """Receives phase changes, periodic counters and the terminal event"""

    @abstractmethod
    def on_progress(self, phase: str, counters: Dict[str, Any]):
        pass

    def finish(self, event_type: str, payload: Dict[str, Any]):
        """Terminal 'complete' or 'error' event"""
        self.on_progress(event_type, payload)


class CallbackProgressSink(ProgressSink):
    """Forwards events to a plain callable"""

    def __init__(self, callback: Callable[[str, Dict[str, Any]], None]):
        self.callback = callback

    def on_progress(self, phase: str, counters: Dict[str, Any]):
        try:
            self.callback(phase, counters)
        except Exception as e:
            logger.warning(f"Progress callback failed in phase {phase}: {e}")


class LoggingProgressSink(ProgressSink):
    def on_progress(self, phase: str, counters: Dict[str, Any]):
        if 'processed' in counters:
            logger.info(
                f"[{phase}] {counters['processed']}/{counters['total']} candles, "
                f"{counters['trades']} trades, PnL {counters['pnl']:.2f}, "
                f"win rate {counters['win_rate']:.1f}%, drawdown {counters['drawdown']:.2f}%"
            )
        else:
            logger.info(f"[{phase}]")


class QueueProgressSink(ProgressSink):
    """
    Puts events on an asyncio.Queue from any thread

    Progress events are dropped when the queue is full. The terminal event
    is always delivered, evicting the oldest queued event if needed.
    """

    def __init__(self, queue: asyncio.Queue, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.queue = queue
        self.loop = loop or asyncio.get_running_loop()
        self.dropped = 0

    def _put(self, event: Dict[str, Any]):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped {event.get('phase')} event")

    def on_progress(self, phase: str, counters: Dict[str, Any]):
        event = {'type': 'progress', 'phase': phase, **counters}
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError as e:
            # Loop already closed, the listener is gone
            logger.debug(f"Progress event not delivered: {e}")

    def _put_terminal(self, event: Dict[str, Any]):
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1

    def finish(self, event_type: str, payload: Dict[str, Any]):
        # Scheduled like progress events so it always arrives last
        try:
            self.loop.call_soon_threadsafe(self._put_terminal, {'type': event_type, **payload})
        except RuntimeError as e:
            logger.debug(f"Terminal {event_type} event not delivered: {e}")
