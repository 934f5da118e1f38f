"""
Data sources, execution sinks and the live signal engine
"""

from .data_source import (
    CandleSource, DataFrameCandleSource, BinanceCandleSource,
    ExecutionSink, PaperExecutionSink, OrderResult
)
from .live_engine import LiveSignalEngine, LiveSignalWorker

__all__ = [
    'CandleSource', 'DataFrameCandleSource', 'BinanceCandleSource',
    'ExecutionSink', 'PaperExecutionSink', 'OrderResult',
    'LiveSignalEngine', 'LiveSignalWorker'
]
