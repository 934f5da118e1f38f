"""
Multi-timeframe bias resolution and confluence scoring
"""
import pandas as pd
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from smc_config.models import ConfluenceWeights, StrategyParams
from .models import (
    Bias, SwingPoint, OrderBlock, FairValueGap, LiquidityZone,
    LiquiditySweep, BreakOfStructure, PremiumDiscount
)
from .smc_detector import (
    compute_atr, find_swing_points, scan_order_blocks, valid_order_blocks,
    detect_fvgs, detect_liquidity_zones, detect_sweep_reversal, detect_bos,
    classify_bias, premium_discount_range, StructureLedger
)


@dataclass
class ConfluenceResult:
    score: float
    direction: Bias
    components: Dict[str, float] = field(default_factory=dict)


@dataclass
class MarketAnalysis:
    """Structure of all three timeframes as seen at one cursor position"""
    time: datetime
    current_price: float
    htf_bias: Bias
    mtf_bias: Bias
    ltf_bias: Bias
    mtf_atr: float
    htf_order_blocks: List[OrderBlock]
    mtf_order_blocks: List[OrderBlock]
    mtf_fvgs: List[FairValueGap]
    htf_liquidity: List[LiquidityZone]
    mtf_liquidity: List[LiquidityZone]
    mtf_swings: List[SwingPoint]
    recent_sweep: Optional[LiquiditySweep]
    bos: Optional[BreakOfStructure]
    premium_discount: Optional[PremiumDiscount]
    confluence: ConfluenceResult

    @property
    def direction(self) -> Bias:
        return self.confluence.direction


def resolve_bias(htf_bias: Bias, mtf_bias: Bias, ltf_bias: Bias) -> Bias:
    """
    Trade direction from the three timeframe biases

    HTF and MTF disagreeing is a conflict (NEUTRAL) whatever the LTF says.
    A neutral MTF defers to the HTF; a neutral HTF needs MTF and LTF to agree.
    """
    if htf_bias != Bias.NEUTRAL and mtf_bias != Bias.NEUTRAL and htf_bias != mtf_bias:
        return Bias.NEUTRAL
    if htf_bias != Bias.NEUTRAL:
        return htf_bias
    if mtf_bias != Bias.NEUTRAL and mtf_bias == ltf_bias:
        return mtf_bias
    return Bias.NEUTRAL


def score_confluence(htf_bias: Bias, mtf_bias: Bias, ltf_bias: Bias,
                     htf_order_blocks: int = 0, mtf_order_blocks: int = 0, mtf_fvgs: int = 0,
                     htf_liquidity: int = 0, mtf_liquidity: int = 0,
                     weights: Optional[ConfluenceWeights] = None) -> ConfluenceResult:
    """
    Combine per-timeframe bias and structure counts into a 0-100 score

    Counts only need to be non-zero to earn their weight.
    """
    weights = weights or ConfluenceWeights()
    components: Dict[str, float] = {}

    if htf_bias != Bias.NEUTRAL and htf_bias == mtf_bias:
        components['htf_mtf_alignment'] = weights.htf_mtf_alignment
    if mtf_bias != Bias.NEUTRAL and mtf_bias == ltf_bias:
        components['mtf_ltf_alignment'] = weights.mtf_ltf_alignment
    if htf_bias != Bias.NEUTRAL and htf_bias == ltf_bias:
        components['htf_ltf_alignment'] = weights.htf_ltf_alignment

    for name, count in (
        ('htf_order_blocks', htf_order_blocks),
        ('mtf_order_blocks', mtf_order_blocks),
        ('mtf_fvgs', mtf_fvgs),
        ('htf_liquidity', htf_liquidity),
        ('mtf_liquidity', mtf_liquidity),
    ):
        if count > 0:
            components[name] = getattr(weights, name)

    score = min(100.0, sum(components.values()))
    direction = resolve_bias(htf_bias, mtf_bias, ltf_bias)

    if htf_bias != Bias.NEUTRAL and mtf_bias != Bias.NEUTRAL and htf_bias != mtf_bias:
        score = min(score, weights.conflict_cap)

    return ConfluenceResult(score=float(max(0.0, score)), direction=direction, components=components)


def _side(bias: Bias) -> Optional[str]:
    return bias.value if bias != Bias.NEUTRAL else None


def analyze_market(htf: pd.DataFrame, mtf: pd.DataFrame, ltf: pd.DataFrame,
                   params: Optional[StrategyParams] = None,
                   ledger: Optional[StructureLedger] = None) -> MarketAnalysis:
    """
    Run every detector over the three timeframe windows

    Args:
        htf, mtf, ltf: Candle windows ending at the cursor (nothing later)
        params: Strategy parameters
        ledger: Per-run lifecycle state for MTF structure

    Returns:
        MarketAnalysis snapshot
    """
    params = params or StrategyParams()
    lookback = params.swing_lookback

    htf_swings = find_swing_points(htf, lookback)
    mtf_swings = find_swing_points(mtf, lookback)
    ltf_swings = find_swing_points(ltf, lookback)

    htf_bias = classify_bias(htf, lookback, swings=htf_swings)
    mtf_bias = classify_bias(mtf, lookback, swings=mtf_swings)
    ltf_bias = classify_bias(ltf, lookback, swings=ltf_swings)

    mtf_atr = compute_atr(mtf, params.atr_period)
    htf_obs = scan_order_blocks(htf, atr_period=params.atr_period)
    mtf_obs = scan_order_blocks(mtf, atr=mtf_atr, ledger=ledger)
    mtf_fvgs = detect_fvgs(mtf, mtf_atr, params.min_fvg_atr)
    htf_liquidity = detect_liquidity_zones(htf, htf_swings)
    mtf_liquidity = detect_liquidity_zones(mtf, mtf_swings)
    recent_sweep = detect_sweep_reversal(mtf, mtf_liquidity)
    bos = detect_bos(mtf)
    pd_range = premium_discount_range(mtf, mtf_swings)

    # Count only structure that supports the resolved direction
    side = _side(resolve_bias(htf_bias, mtf_bias, ltf_bias))
    counts = {
        'htf_order_blocks': 0, 'mtf_order_blocks': 0, 'mtf_fvgs': 0,
        'htf_liquidity': 0, 'mtf_liquidity': 0,
    }
    if side:
        # Sell-side liquidity below price fuels longs, buy-side above fuels shorts
        liquidity_side = 'LOW' if side == 'BULLISH' else 'HIGH'
        counts['htf_order_blocks'] = sum(
            1 for ob in valid_order_blocks(htf_obs, params.min_ob_score) if ob.type == side)
        counts['mtf_order_blocks'] = sum(
            1 for ob in valid_order_blocks(mtf_obs, params.min_ob_score) if ob.type == side)
        counts['mtf_fvgs'] = sum(1 for f in mtf_fvgs if f.type == side and not f.filled)
        counts['htf_liquidity'] = sum(1 for z in htf_liquidity if z.type == liquidity_side and not z.swept)
        counts['mtf_liquidity'] = sum(1 for z in mtf_liquidity if z.type == liquidity_side and not z.swept)

    confluence = score_confluence(htf_bias, mtf_bias, ltf_bias, weights=params.weights, **counts)

    return MarketAnalysis(
        time=ltf['timestamp'].iloc[-1],
        current_price=float(ltf['close'].iloc[-1]),
        htf_bias=htf_bias,
        mtf_bias=mtf_bias,
        ltf_bias=ltf_bias,
        mtf_atr=mtf_atr,
        htf_order_blocks=htf_obs,
        mtf_order_blocks=mtf_obs,
        mtf_fvgs=mtf_fvgs,
        htf_liquidity=htf_liquidity,
        mtf_liquidity=mtf_liquidity,
        mtf_swings=mtf_swings,
        recent_sweep=recent_sweep,
        bos=bos,
        premium_discount=pd_range,
        confluence=confluence
    )
