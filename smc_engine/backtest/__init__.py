"""
Backtest package for asynchronous backtesting
"""

from .runner import BacktestRunner, PHASES
from .progress import ProgressSink, CallbackProgressSink, LoggingProgressSink, QueueProgressSink

__all__ = [
    'BacktestRunner', 'PHASES',
    'ProgressSink', 'CallbackProgressSink', 'LoggingProgressSink', 'QueueProgressSink'
]
