"""
Configuration package for the SMC backtest engine
"""

from .models import (
    BacktestConfig, StrategyParams, ConfluenceWeights, KillZone,
    StrategyType, ConfirmationType, DEFAULT_KILL_ZONES
)
from .presets import PresetName, StrategyPreset, PRESETS, get_preset, list_presets
from .loader import ConfigLoader, load_config, save_config

__all__ = [
    'BacktestConfig', 'StrategyParams', 'ConfluenceWeights', 'KillZone',
    'StrategyType', 'ConfirmationType', 'DEFAULT_KILL_ZONES',
    'PresetName', 'StrategyPreset', 'PRESETS', 'get_preset', 'list_presets',
    'ConfigLoader', 'load_config', 'save_config'
]
