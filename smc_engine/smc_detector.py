"""
Smart Money Concepts detection functions

Every detector is a pure function of the candle DataFrame it receives and is
re-run from scratch on each scan. Lifecycle state that must outlive a scan
(mitigation, consumption, swept levels, the last break of structure) lives in
a caller-owned StructureLedger.
"""
import pandas as pd
import numpy as np
from typing import List, Optional, Set, Tuple

from .errors import SimulationInvariantError
from .models import (
    Bias, SwingPoint, OrderBlock, FairValueGap, LiquidityZone,
    LiquiditySweep, BreakOfStructure, PremiumDiscount
)

# Swing points closer than this (relative) share one liquidity zone
EQUAL_LEVELS_TOLERANCE = 0.001


def _ohlc(df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    return (
        df['open'].to_numpy(dtype=float),
        df['high'].to_numpy(dtype=float),
        df['low'].to_numpy(dtype=float),
        df['close'].to_numpy(dtype=float),
    )


def compute_atr(df: pd.DataFrame, period: int = 14) -> float:
    """Mean of high-low over the trailing period candles, 0 when too short"""
    if period <= 0 or len(df) < period:
        return 0.0
    tail = df.iloc[-period:]
    return float((tail['high'] - tail['low']).mean())


def find_swing_points(df: pd.DataFrame, lookback: int = 3) -> List[SwingPoint]:
    """Detect swing highs/lows that strictly exceed every neighbour within lookback"""
    swings: List[SwingPoint] = []
    _, highs, lows, _ = _ohlc(df)
    times = df['timestamp']

    for i in range(lookback, len(df) - lookback):
        left_h, right_h = highs[i - lookback:i], highs[i + 1:i + lookback + 1]
        left_l, right_l = lows[i - lookback:i], lows[i + 1:i + lookback + 1]

        if highs[i] > left_h.max() and highs[i] > right_h.max():
            swings.append(SwingPoint('HIGH', float(highs[i]), times.iloc[i], i))

        if lows[i] < left_l.min() and lows[i] < right_l.min():
            swings.append(SwingPoint('LOW', float(lows[i]), times.iloc[i], i))

    return swings


def score_order_block(atr: float, base_body: float, impulse_body: float, continuation: bool) -> float:
    """Base score of 50 plus impulse quality bonuses, clamped to 0-100"""
    score = 50.0
    if impulse_body > atr * 1.0:
        score += 15
    if impulse_body > atr * 1.5:
        score += 10
    if continuation:
        score += 10
    if base_body < impulse_body / 2:
        score += 5
    return float(min(100.0, max(0.0, score)))


def detect_order_blocks(df: pd.DataFrame, atr: Optional[float] = None, atr_period: int = 14) -> List[OrderBlock]:
    """
    Detect order blocks: a base candle followed by an impulse in the opposite direction

    Args:
        df: Candle dataframe
        atr: ATR to measure impulses against (computed from df when omitted)
        atr_period: Period for the computed ATR

    Returns:
        Blocks in candle order, mitigation not yet applied
    """
    if atr is None:
        atr = compute_atr(df, atr_period)
    n = len(df)
    if atr <= 0 or n < 6:
        return []

    opens, highs, lows, closes = _ohlc(df)
    times = df['timestamp']
    blocks: List[OrderBlock] = []

    for i in range(3, n - 2):
        base_body = abs(closes[i] - opens[i])
        impulse_body = abs(closes[i + 1] - opens[i + 1])

        # Bearish base, bullish impulse
        if closes[i] < opens[i] and closes[i + 1] > opens[i + 1]:
            continuation = closes[i + 2] > closes[i + 1]
            kind = 'BULLISH'
        # Bullish base, bearish impulse
        elif closes[i] > opens[i] and closes[i + 1] < opens[i + 1]:
            continuation = closes[i + 2] < closes[i + 1]
            kind = 'BEARISH'
        else:
            continue

        if impulse_body > atr * 0.5 or continuation:
            blocks.append(OrderBlock(
                type=kind,
                high=float(highs[i]),
                low=float(lows[i]),
                time=times.iloc[i],
                index=i,
                score=score_order_block(atr, base_body, impulse_body, continuation)
            ))

    return blocks


def apply_mitigation(blocks: List[OrderBlock], last_close: float) -> List[OrderBlock]:
    """Flag blocks the final close has traded through (never clears the flag)"""
    for ob in blocks:
        if ob.type == 'BULLISH' and last_close < ob.low:
            ob.mitigated = True
        elif ob.type == 'BEARISH' and last_close > ob.high:
            ob.mitigated = True
    return blocks


def valid_order_blocks(blocks: List[OrderBlock], min_score: float) -> List[OrderBlock]:
    """Blocks eligible for new signals"""
    return [ob for ob in blocks if not ob.mitigated and not ob.used and ob.score >= min_score]


def detect_fvgs(df: pd.DataFrame, atr: Optional[float] = None, min_size_atr: float = 0.0) -> List[FairValueGap]:
    """Detect Fair Value Gaps and mark the ones price has since filled"""
    fvgs: List[FairValueGap] = []
    n = len(df)
    if n < 3:
        return fvgs

    if atr is None:
        atr = compute_atr(df)
    min_size = atr * min_size_atr
    _, highs, lows, _ = _ohlc(df)
    times = df['timestamp']

    for i in range(2, n):
        # Bullish FVG: low[i] > high[i-2] (gap up)
        if lows[i] > highs[i - 2] and lows[i] - highs[i - 2] >= min_size:
            bottom = float(highs[i - 2])
            filled = bool(i + 1 < n and (lows[i + 1:] <= bottom).any())
            fvgs.append(FairValueGap('BULLISH', float(lows[i]), bottom, times.iloc[i - 1], i - 1, filled))

        # Bearish FVG: high[i] < low[i-2] (gap down)
        if highs[i] < lows[i - 2] and lows[i - 2] - highs[i] >= min_size:
            top = float(lows[i - 2])
            filled = bool(i + 1 < n and (highs[i + 1:] >= top).any())
            fvgs.append(FairValueGap('BEARISH', top, float(highs[i]), times.iloc[i - 1], i - 1, filled))

    return fvgs


def detect_liquidity_zones(df: pd.DataFrame, swings: Optional[List[SwingPoint]] = None,
                           lookback: int = 3, tolerance: float = EQUAL_LEVELS_TOLERANCE) -> List[LiquidityZone]:
    """
    Group swing highs (buy-side) and swing lows (sell-side) into liquidity zones

    Swing points within `tolerance` of a zone's price join it as extra touches.
    A zone is swept once a candle after its latest touch trades beyond it.
    """
    if swings is None:
        swings = find_swing_points(df, lookback)
    _, highs, lows, _ = _ohlc(df)

    zones: List[LiquidityZone] = []
    for kind in ('HIGH', 'LOW'):
        clustered: List[Tuple[LiquidityZone, float]] = []  # (zone, price sum)
        for sp in (s for s in swings if s.type == kind):
            match = None
            for idx, (zone, _) in enumerate(clustered):
                if abs(zone.price - sp.price) <= zone.price * tolerance:
                    match = idx
                    break
            if match is None:
                clustered.append((LiquidityZone(kind, sp.price, sp.time, sp.index), sp.price))
            else:
                zone, total = clustered[match]
                total += sp.price
                zone.touches += 1
                zone.price = total / zone.touches
                zone.time = sp.time
                zone.index = sp.index
                clustered[match] = (zone, total)
        zones.extend(zone for zone, _ in clustered)

    for zone in zones:
        after = slice(zone.index + 1, None)
        if zone.type == 'HIGH':
            zone.swept = bool((highs[after] > zone.price).any())
        else:
            zone.swept = bool((lows[after] < zone.price).any())

    return sorted(zones, key=lambda z: (z.index, z.type))


def detect_sweep_reversal(df: pd.DataFrame, zones: List[LiquidityZone], lookback: int = 5) -> Optional[LiquiditySweep]:
    """Most recent candle that wicked through a zone and closed back inside it"""
    n = len(df)
    _, highs, lows, closes = _ohlc(df)
    times = df['timestamp']

    for i in range(n - 1, max(-1, n - 1 - lookback), -1):
        for zone in zones:
            if zone.index >= i:
                continue
            if zone.type == 'HIGH' and highs[i] > zone.price and closes[i] < zone.price:
                return LiquiditySweep(zone, times.iloc[i])
            if zone.type == 'LOW' and lows[i] < zone.price and closes[i] > zone.price:
                return LiquiditySweep(zone, times.iloc[i])
    return None


def detect_bos(df: pd.DataFrame, lookback: int = 2, window: int = 15) -> Optional[BreakOfStructure]:
    """Close beyond the latest swing high/low of the recent window"""
    if len(df) < 5:
        return None

    recent = df.iloc[-window:].reset_index(drop=True)
    swings = find_swing_points(recent, lookback)
    if not swings:
        return None

    last_close = float(recent['close'].iloc[-1])
    last_time = recent['timestamp'].iloc[-1]
    highs = [s for s in swings if s.type == 'HIGH']
    lows = [s for s in swings if s.type == 'LOW']

    if highs and last_close > highs[-1].price:
        return BreakOfStructure('BULLISH', highs[-1].price, last_time, highs[-1].time)
    if lows and last_close < lows[-1].price:
        return BreakOfStructure('BEARISH', lows[-1].price, last_time, lows[-1].time)
    return None


def classify_bias(df: pd.DataFrame, lookback: int = 3, fallback_window: int = 20,
                  threshold_pct: float = 0.5, swings: Optional[List[SwingPoint]] = None) -> Bias:
    """
    Bias from the last 4 swing points (HH+HL bullish, LH+LL bearish)

    Falls back to the percentage price change over the trailing
    fallback_window candles when swings are insufficient or mixed.
    """
    if len(df) < 2:
        return Bias.NEUTRAL

    if swings is None:
        swings = find_swing_points(df, lookback)

    if len(swings) >= 4:
        recent = swings[-4:]
        highs = [s.price for s in recent if s.type == 'HIGH']
        lows = [s.price for s in recent if s.type == 'LOW']
        if len(highs) >= 2 and len(lows) >= 2:
            if highs[-1] > highs[-2] and lows[-1] > lows[-2]:
                return Bias.BULLISH
            if highs[-1] < highs[-2] and lows[-1] < lows[-2]:
                return Bias.BEARISH

    closes = df['close'].iloc[-fallback_window:]
    first, last = float(closes.iloc[0]), float(closes.iloc[-1])
    if first == 0:
        return Bias.NEUTRAL
    change = (last - first) / first * 100
    if change > threshold_pct:
        return Bias.BULLISH
    if change < -threshold_pct:
        return Bias.BEARISH
    return Bias.NEUTRAL


def premium_discount_range(df: pd.DataFrame, swings: Optional[List[SwingPoint]] = None,
                           lookback: int = 3) -> Optional[PremiumDiscount]:
    """Dealing range between the most recent swing high and swing low"""
    if swings is None:
        swings = find_swing_points(df, lookback)
    highs = [s for s in swings if s.type == 'HIGH']
    lows = [s for s in swings if s.type == 'LOW']
    if not highs or not lows:
        return None
    swing_high, swing_low = highs[-1].price, lows[-1].price
    if swing_high <= swing_low:
        return None
    return PremiumDiscount(swing_high, swing_low)


class StructureLedger:
    """Lifecycle state of detected structure for one run"""

    def __init__(self):
        self.mitigated: Set[Tuple[str, int]] = set()
        self.used: Set[Tuple[str, int]] = set()
        self.swept: Set[Tuple[str, int]] = set()
        self.last_bos: Optional[BreakOfStructure] = None
        self.consumed_bos: Set[Tuple[str, int]] = set()

    def reconcile(self, blocks: List[OrderBlock]) -> List[OrderBlock]:
        """Carry mitigation and consumption over from earlier scans"""
        for ob in blocks:
            if ob.key in self.mitigated:
                ob.mitigated = True
            elif ob.mitigated:
                self.mitigated.add(ob.key)
            if ob.key in self.used:
                ob.used = True
        return blocks

    def mark_used(self, block: OrderBlock):
        if block.mitigated or block.key in self.mitigated:
            raise SimulationInvariantError(f"Mitigated order block {block.key} matched for a new signal")
        if block.used or block.key in self.used:
            raise SimulationInvariantError(f"Order block {block.key} already backs a signal")
        block.used = True
        self.used.add(block.key)

    def is_swept(self, swing: SwingPoint) -> bool:
        return (swing.type, _epoch_ms(swing.time)) in self.swept

    def mark_swept(self, swing: SwingPoint):
        self.swept.add((swing.type, _epoch_ms(swing.time)))

    def record_bos(self, bos: Optional[BreakOfStructure]):
        """Keep the first break of each leg, ignore repeats in the same direction"""
        if bos is None or bos.key in self.consumed_bos:
            return
        if self.last_bos is None or self.last_bos.type != bos.type:
            self.last_bos = bos

    def consume_bos(self):
        if self.last_bos is not None:
            self.consumed_bos.add(self.last_bos.key)
            self.last_bos = None


def scan_order_blocks(df: pd.DataFrame, atr: Optional[float] = None, atr_period: int = 14,
                      ledger: Optional[StructureLedger] = None) -> List[OrderBlock]:
    """Detect, mitigate against the final close, then reconcile with the ledger"""
    blocks = detect_order_blocks(df, atr, atr_period)
    if blocks:
        apply_mitigation(blocks, float(df['close'].iloc[-1]))
    if ledger is not None:
        ledger.reconcile(blocks)
    return blocks


def _epoch_ms(ts) -> int:
    return int(pd.Timestamp(ts).timestamp() * 1000)
