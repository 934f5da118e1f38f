"""
Error taxonomy for backtest runs
"""
from typing import Dict, Any, Optional


class BacktestError(Exception):
    """Base error carrying the run phase it was raised in"""

    error_type = 'backtest_error'

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'phase': self.phase,
            'error_type': self.error_type,
            'error': self.message
        }


class InsufficientDataError(BacktestError):
    """Fewer candles than a run needs"""
    error_type = 'insufficient_data'


class InvalidConfigurationError(BacktestError):
    """Configuration rejected before any data is fetched"""
    error_type = 'invalid_configuration'

    def __init__(self, errors, phase: Optional[str] = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors), phase)


class DataSourceError(BacktestError):
    """Candle or tick fetch failed in the external source"""
    error_type = 'data_source'


class SimulationInvariantError(BacktestError):
    """Logic error inside the engine, never corrected at runtime"""
    error_type = 'invariant_violation'


class BacktestCancelled(BacktestError):
    """Run abandoned at a cooperative checkpoint"""
    error_type = 'cancelled'
