"""
Configuration models for the SMC backtest engine
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

import pandas as pd


class StrategyType(str, Enum):
    ORDER_BLOCK = 'ORDER_BLOCK'
    LIQUIDITY_SWEEP = 'LIQUIDITY_SWEEP'
    BOS = 'BOS'


class ConfirmationType(str, Enum):
    NONE = 'none'
    CLOSE = 'close'
    STRONG = 'strong'
    ENGULF = 'engulf'


@dataclass(frozen=True)
class KillZone:
    """UTC session window, end hour exclusive"""
    name: str
    start_hour: int
    end_hour: int

    def contains(self, hour: int) -> bool:
        return self.start_hour <= hour < self.end_hour


DEFAULT_KILL_ZONES = (
    KillZone('LONDON', 7, 10),
    KillZone('NY_AM', 12, 15),
    KillZone('NY_PM', 19, 21),
)


@dataclass
class ConfluenceWeights:
    """Points each agreeing component adds to the 0-100 confluence score"""
    htf_mtf_alignment: float = 20.0
    mtf_ltf_alignment: float = 15.0
    htf_ltf_alignment: float = 5.0
    htf_order_blocks: float = 10.0
    mtf_order_blocks: float = 15.0
    mtf_fvgs: float = 15.0
    htf_liquidity: float = 10.0
    mtf_liquidity: float = 10.0
    # Ceiling applied when HTF and MTF disagree
    conflict_cap: float = 20.0


@dataclass
class StrategyParams:
    """Knobs consumed by the detector, signal generator and simulator"""
    strategy: StrategyType = StrategyType.ORDER_BLOCK
    min_ob_score: float = 60.0
    confirmation_type: ConfirmationType = ConfirmationType.NONE
    fixed_rr: float = 2.0
    atr_mult: float = 1.0  # scales ATR offsets of sweep/BOS stops
    sl_buffer_ratio: float = 0.2  # fraction of the block range
    pending_validity_hours: float = 4.0

    use_kill_zones: bool = False
    kill_zones: List[KillZone] = field(default_factory=lambda: list(DEFAULT_KILL_ZONES))
    max_daily_dd: float = 5.0  # percent of start-of-day balance

    require_liquidity_sweep: bool = False
    require_premium_discount: bool = False
    require_ote: bool = False
    min_confluence: float = 0.0

    swing_lookback: int = 3
    atr_period: int = 14
    min_fvg_atr: float = 0.0
    sweep_max_age_hours: float = 72.0
    weights: ConfluenceWeights = field(default_factory=ConfluenceWeights)

    def validate(self) -> List[str]:
        errors = []
        if self.strategy not in list(StrategyType):
            errors.append(f"Unknown strategy type: {self.strategy}")
        if self.confirmation_type not in list(ConfirmationType):
            errors.append(f"Unknown confirmation type: {self.confirmation_type}")
        if not 0 <= self.min_ob_score <= 100:
            errors.append(f"min_ob_score must be within 0-100: {self.min_ob_score}")
        if self.fixed_rr <= 0:
            errors.append(f"fixed_rr must be positive: {self.fixed_rr}")
        if self.atr_mult <= 0:
            errors.append(f"atr_mult must be positive: {self.atr_mult}")
        if self.sl_buffer_ratio < 0:
            errors.append(f"sl_buffer_ratio cannot be negative: {self.sl_buffer_ratio}")
        if self.pending_validity_hours <= 0:
            errors.append(f"pending_validity_hours must be positive: {self.pending_validity_hours}")
        if not 0 < self.max_daily_dd <= 100:
            errors.append(f"max_daily_dd must be within (0, 100]: {self.max_daily_dd}")
        if not 0 <= self.min_confluence <= 100:
            errors.append(f"min_confluence must be within 0-100: {self.min_confluence}")
        if self.swing_lookback < 1:
            errors.append(f"swing_lookback must be at least 1: {self.swing_lookback}")
        if self.atr_period < 1:
            errors.append(f"atr_period must be at least 1: {self.atr_period}")
        for zone in self.kill_zones:
            if not 0 <= zone.start_hour < zone.end_hour <= 24:
                errors.append(f"Invalid kill zone {zone.name}: {zone.start_hour}-{zone.end_hour}")
        return errors


@dataclass
class BacktestConfig:
    """Everything a single backtest run needs"""
    symbol: str
    params: StrategyParams = field(default_factory=StrategyParams)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    initial_balance: float = 10000.0
    risk_percent: float = 1.0
    use_tick_data: bool = False

    htf_timeframe: str = '4h'
    mtf_timeframe: str = '1h'
    ltf_timeframe: str = '15m'

    # Minimum viable series sizes, per run and per analysis step
    min_htf_candles: int = 50
    min_mtf_candles: int = 100
    min_ltf_candles: int = 100

    # Trailing candles handed to the detector at each step
    htf_window: int = 100
    mtf_window: int = 200
    ltf_window: int = 100

    sharpe_annualization: float = 252.0
    progress_every: int = 50
    preset: Optional[str] = None

    def __post_init__(self):
        self.symbol = self.symbol.upper() if self.symbol else self.symbol
        if self.start_date is not None:
            self.start_date = to_utc(self.start_date)
        if self.end_date is not None:
            self.end_date = to_utc(self.end_date)

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if not self.symbol:
            errors.append("Symbol is required")
        if self.initial_balance <= 0:
            errors.append(f"initial_balance must be positive: {self.initial_balance}")
        if not 0 < self.risk_percent <= 100:
            errors.append(f"risk_percent must be within (0, 100]: {self.risk_percent}")
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            errors.append(f"start_date {self.start_date} must be before end_date {self.end_date}")

        for label in ('htf', 'mtf', 'ltf'):
            minimum = getattr(self, f'min_{label}_candles')
            window = getattr(self, f'{label}_window')
            if minimum < 1:
                errors.append(f"min_{label}_candles must be at least 1: {minimum}")
            if window < minimum:
                errors.append(f"{label}_window ({window}) is smaller than min_{label}_candles ({minimum})")

        if self.sharpe_annualization <= 0:
            errors.append(f"sharpe_annualization must be positive: {self.sharpe_annualization}")
        if self.progress_every < 1:
            errors.append(f"progress_every must be at least 1: {self.progress_every}")

        errors.extend(self.params.validate())
        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BacktestConfig':
        """
        Build a config from a flat mapping (YAML file, API request)

        Strategy keys may sit at the top level or under 'params'. A 'preset'
        name is applied first, explicit keys override it.
        """
        from .presets import get_preset

        data = dict(data)
        param_data = dict(data.pop('params', None) or {})
        param_names = {f.name for f in fields(StrategyParams)}
        for key in list(data):
            if key in param_names:
                param_data[key] = data.pop(key)

        params = StrategyParams()
        preset = data.get('preset')
        if preset:
            params = get_preset(preset).apply(params)

        if 'strategy' in param_data:
            param_data['strategy'] = _coerce_enum(StrategyType, param_data['strategy'])
        if 'confirmation_type' in param_data:
            param_data['confirmation_type'] = _coerce_enum(ConfirmationType, param_data['confirmation_type'])
        if 'kill_zones' in param_data:
            param_data['kill_zones'] = [
                z if isinstance(z, KillZone) else KillZone(**z) for z in param_data['kill_zones']
            ]
        if 'weights' in param_data and isinstance(param_data['weights'], dict):
            param_data['weights'] = ConfluenceWeights(**param_data['weights'])

        params = replace(params, **param_data)

        for key in ('start_date', 'end_date'):
            if data.get(key) is not None:
                data[key] = to_utc(data[key])

        known = {f.name for f in fields(cls)} - {'params'}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(params=params, **data)

    def to_dict(self) -> Dict[str, Any]:
        params = {
            f.name: getattr(self.params, f.name)
            for f in fields(StrategyParams)
            if f.name not in ('kill_zones', 'weights')
        }
        params['strategy'] = _enum_value(self.params.strategy)
        params['confirmation_type'] = _enum_value(self.params.confirmation_type)
        params['kill_zones'] = [
            {'name': z.name, 'start_hour': z.start_hour, 'end_hour': z.end_hour}
            for z in self.params.kill_zones
        ]
        params['weights'] = {f.name: getattr(self.params.weights, f.name) for f in fields(ConfluenceWeights)}

        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != 'params'
        }
        for key in ('start_date', 'end_date'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data['params'] = params
        return data


def to_utc(value) -> datetime:
    """Parse a date/datetime/string, naive values are taken as UTC"""
    ts = pd.Timestamp(value)
    ts = ts.tz_localize('UTC') if ts.tzinfo is None else ts.tz_convert('UTC')
    return ts.to_pydatetime()


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if str(value).strip().upper() == member.value.upper():
            return member
    # Left as-is so validate() can report it
    return value


def _enum_value(value):
    return value.value if isinstance(value, Enum) else value
