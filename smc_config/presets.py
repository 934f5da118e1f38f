"""
Named strategy presets

Each preset is a fixed parameter set tested together. The table maps a tag to
its parameters; labels are display text only and are never parsed.
"""
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from .models import StrategyParams, StrategyType, ConfirmationType


class PresetName(str, Enum):
    SAFE = 'SAFE'
    CONFIRM_CLOSE = 'CONFIRM_CLOSE'
    CONFIRM_STRONG = 'CONFIRM_STRONG'
    CONFIRM_ENGULF = 'CONFIRM_ENGULF'
    OTE_KZ = 'OTE_KZ'
    UNIVERSAL = 'UNIVERSAL'
    BTC_OPTIMAL = 'BTC_OPTIMAL'
    XAU_OPTIMAL = 'XAU_OPTIMAL'
    XAG_OPTIMAL = 'XAG_OPTIMAL'
    LIQ_SWEEP = 'LIQ_SWEEP'
    LIQ_SWEEP_KZ = 'LIQ_SWEEP_KZ'
    BOS_PULLBACK = 'BOS_PULLBACK'
    BOS_KZ = 'BOS_KZ'


@dataclass(frozen=True)
class StrategyPreset:
    name: PresetName
    label: str
    strategy: StrategyType = StrategyType.ORDER_BLOCK
    min_ob_score: float = 70.0
    use_kill_zones: bool = False
    max_daily_dd: float = 8.0
    fixed_rr: float = 2.0
    atr_mult: float = 1.0
    confirmation_type: ConfirmationType = ConfirmationType.NONE
    require_ote: bool = False
    min_confluence: float = 0.0

    def apply(self, params: Optional[StrategyParams] = None) -> StrategyParams:
        """Return a copy of params with this preset's values"""
        return replace(
            params or StrategyParams(),
            strategy=self.strategy,
            min_ob_score=self.min_ob_score,
            use_kill_zones=self.use_kill_zones,
            max_daily_dd=self.max_daily_dd,
            fixed_rr=self.fixed_rr,
            atr_mult=self.atr_mult,
            confirmation_type=self.confirmation_type,
            require_ote=self.require_ote,
            min_confluence=self.min_confluence
        )

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


PRESETS: Dict[PresetName, StrategyPreset] = {
    PresetName.SAFE: StrategyPreset(
        PresetName.SAFE, 'SAFE: OB65|KZ|DD5%|RR2',
        min_ob_score=65, use_kill_zones=True, max_daily_dd=5),
    PresetName.CONFIRM_CLOSE: StrategyPreset(
        PresetName.CONFIRM_CLOSE, 'CONFIRM: OB70|Close|RR2',
        confirmation_type=ConfirmationType.CLOSE),
    PresetName.CONFIRM_STRONG: StrategyPreset(
        PresetName.CONFIRM_STRONG, 'CONFIRM: OB70|Strong|RR2',
        confirmation_type=ConfirmationType.STRONG),
    PresetName.CONFIRM_ENGULF: StrategyPreset(
        PresetName.CONFIRM_ENGULF, 'CONFIRM: OB70|Engulf|RR2',
        confirmation_type=ConfirmationType.ENGULF),
    PresetName.OTE_KZ: StrategyPreset(
        PresetName.OTE_KZ, 'OTE: OB70|KZ|RR2|DD15%',
        use_kill_zones=True, max_daily_dd=15, require_ote=True),
    PresetName.UNIVERSAL: StrategyPreset(
        PresetName.UNIVERSAL, 'UNIVERSAL: OB70|All|DD8%|RR2'),
    PresetName.BTC_OPTIMAL: StrategyPreset(
        PresetName.BTC_OPTIMAL, 'BTC-OPTIMAL: ATR0.8|RR1.5',
        fixed_rr=1.5, atr_mult=0.8),
    PresetName.XAU_OPTIMAL: StrategyPreset(
        PresetName.XAU_OPTIMAL, 'XAU-OPTIMAL: ATR1.5|RR2',
        atr_mult=1.5),
    PresetName.XAG_OPTIMAL: StrategyPreset(
        PresetName.XAG_OPTIMAL, 'XAG-OPTIMAL: OB65|RR2',
        min_ob_score=65),
    PresetName.LIQ_SWEEP: StrategyPreset(
        PresetName.LIQ_SWEEP, 'LIQ-SWEEP: RR2|DD8%',
        strategy=StrategyType.LIQUIDITY_SWEEP, min_ob_score=50),
    PresetName.LIQ_SWEEP_KZ: StrategyPreset(
        PresetName.LIQ_SWEEP_KZ, 'LIQ-SWEEP: RR2|KZ',
        strategy=StrategyType.LIQUIDITY_SWEEP, min_ob_score=50, use_kill_zones=True),
    PresetName.BOS_PULLBACK: StrategyPreset(
        PresetName.BOS_PULLBACK, 'BOS: RR2|DD8%',
        strategy=StrategyType.BOS, min_ob_score=50),
    PresetName.BOS_KZ: StrategyPreset(
        PresetName.BOS_KZ, 'BOS: RR2|KZ',
        strategy=StrategyType.BOS, min_ob_score=50, use_kill_zones=True),
}


def get_preset(name) -> StrategyPreset:
    """Look up a preset by tag (case-insensitive)"""
    try:
        tag = name if isinstance(name, PresetName) else PresetName(str(name).strip().upper())
    except ValueError:
        raise ValueError(f"Unknown strategy preset: {name}. Known presets: {[p.value for p in PresetName]}")
    return PRESETS[tag]


def list_presets() -> List[StrategyPreset]:
    return [PRESETS[name] for name in PresetName]
