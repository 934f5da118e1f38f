"""
Signal generation logic for the SMC engine
"""
import logging
import pandas as pd
from datetime import datetime, timedelta
from typing import List, Optional

from smc_config.models import StrategyParams, StrategyType, ConfirmationType
from .confluence import MarketAnalysis
from .models import Bias, Direction, OrderBlock, Signal, SignalStatus
from .smc_detector import StructureLedger, valid_order_blocks

logger = logging.getLogger(__name__)


def _epoch_ms(ts) -> int:
    return int(pd.Timestamp(ts).timestamp() * 1000)


def check_confirmation(confirmation_type: ConfirmationType, direction: Direction,
                       candle: pd.Series, prev_candle: Optional[pd.Series] = None) -> bool:
    """
    Check whether a candle confirms a pending signal

    Args:
        confirmation_type: 'none', 'close', 'strong' or 'engulf'
        direction: Trade direction
        candle: Candidate confirmation candle
        prev_candle: Candle before it (needed for 'engulf')

    Returns:
        True if the candle satisfies the predicate
    """
    if confirmation_type == ConfirmationType.NONE:
        return True

    o, h, l, c = float(candle['open']), float(candle['high']), float(candle['low']), float(candle['close'])
    candle_range = h - l
    if candle_range <= 0:
        return False

    body = abs(c - o)
    in_direction = c > o if direction == Direction.BUY else c < o
    if not in_direction:
        return False

    if confirmation_type == ConfirmationType.CLOSE:
        return body >= candle_range * 0.3
    if confirmation_type == ConfirmationType.STRONG:
        return body >= candle_range * 0.5
    if confirmation_type == ConfirmationType.ENGULF:
        if prev_candle is None:
            return False
        po, pc = float(prev_candle['open']), float(prev_candle['close'])
        prev_body = abs(pc - po)
        return body > prev_body and min(o, c) <= min(po, pc) and max(o, c) >= max(po, pc)

    raise ValueError(f"Unknown confirmation type: {confirmation_type}")


def select_order_block(price: float, blocks: List[OrderBlock], direction: Direction) -> Optional[OrderBlock]:
    """
    Nearest block on the correct side of price

    A block qualifies when price sits within one block-range of it. Ties on
    distance go to the most recent block, then the higher score.
    """
    side = 'BULLISH' if direction == Direction.BUY else 'BEARISH'
    best = None
    best_rank = None

    for ob in blocks:
        if ob.type != side:
            continue
        tolerance = ob.range
        if not (ob.low - tolerance <= price <= ob.high + tolerance):
            continue
        if direction == Direction.BUY and price < ob.low:
            continue
        if direction == Direction.SELL and price > ob.high:
            continue

        if ob.low <= price <= ob.high:
            distance = 0.0
        elif direction == Direction.BUY:
            distance = price - ob.high
        else:
            distance = ob.low - price

        rank = (distance, -_epoch_ms(ob.time), -ob.score)
        if best_rank is None or rank < best_rank:
            best, best_rank = ob, rank

    return best


def build_levels(direction: Direction, entry: float, stop_loss: float, rr: float) -> float:
    """Take profit at rr times the risk from entry"""
    risk = abs(entry - stop_loss)
    return entry + risk * rr if direction == Direction.BUY else entry - risk * rr


class SignalGenerator:
    """Turns analysed market structure into trade signals for one symbol"""

    def __init__(self, symbol: str, params: StrategyParams, ledger: Optional[StructureLedger] = None):
        self.symbol = symbol
        self.params = params
        self.ledger = ledger if ledger is not None else StructureLedger()

    def generate(self, analysis: MarketAnalysis, ltf: pd.DataFrame) -> Optional[Signal]:
        """Run the configured strategy against one analysis snapshot"""
        direction = Direction.from_bias(analysis.direction)
        if direction is None:
            return None

        if self.params.strategy == StrategyType.ORDER_BLOCK:
            blocks = valid_order_blocks(analysis.mtf_order_blocks, self.params.min_ob_score)
            return self.order_block_signal(
                price=analysis.current_price,
                time=analysis.time,
                blocks=blocks,
                bias=analysis.direction,
                htf_bias=analysis.htf_bias,
                confidence=analysis.confluence.score
            )
        if self.params.strategy == StrategyType.LIQUIDITY_SWEEP:
            return self.liquidity_sweep_signal(analysis, ltf)
        if self.params.strategy == StrategyType.BOS:
            return self.bos_signal(analysis, ltf)

        raise ValueError(f"Unknown strategy type: {self.params.strategy}")

    def order_block_signal(self, price: float, time: datetime, blocks: List[OrderBlock], bias: Bias,
                           htf_bias: Optional[Bias] = None, confidence: Optional[float] = None) -> Optional[Signal]:
        """
        Signal from the nearest valid order block in the bias direction

        The source block is marked used as soon as the signal exists, so an
        expired or rejected signal never brings the block back.
        """
        direction = Direction.from_bias(bias)
        if direction is None:
            return None

        ob = select_order_block(price, blocks, direction)
        if ob is None:
            return None

        buffer = ob.range * self.params.sl_buffer_ratio
        stop_loss = ob.low - buffer if direction == Direction.BUY else ob.high + buffer
        if (direction == Direction.BUY and price <= stop_loss) or \
                (direction == Direction.SELL and price >= stop_loss):
            return None

        self.ledger.mark_used(ob)
        kind = 'Bullish' if direction == Direction.BUY else 'Bearish'
        signal = Signal(
            symbol=self.symbol,
            direction=direction,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=build_levels(direction, price, stop_loss, self.params.fixed_rr),
            created_at=time,
            htf_bias=htf_bias or bias,
            strategy=StrategyType.ORDER_BLOCK.value,
            reason=f"{kind} order block {ob.low:.5g}-{ob.high:.5g} (score {ob.score:.0f})",
            confidence=confidence if confidence is not None else ob.score,
            source_key=ob.key
        )
        logger.debug(f"{self.symbol}: {signal.reason} -> {direction.value} @ {price}")
        return signal

    def liquidity_sweep_signal(self, analysis: MarketAnalysis, ltf: pd.DataFrame) -> Optional[Signal]:
        """Previous candle swept an MTF swing level and closed back, current candle continues"""
        direction = Direction.from_bias(analysis.direction)
        atr = analysis.mtf_atr
        if direction is None or atr <= 0 or len(ltf) < 2:
            return None

        prev, cur = ltf.iloc[-2], ltf.iloc[-1]
        pool_type = 'LOW' if direction == Direction.BUY else 'HIGH'
        max_age = timedelta(hours=self.params.sweep_max_age_hours)

        swept = None
        for sp in reversed(analysis.mtf_swings):
            if sp.type != pool_type or self.ledger.is_swept(sp):
                continue
            if sp.time >= prev['timestamp'] or prev['timestamp'] - sp.time > max_age:
                continue
            if direction == Direction.BUY and prev['low'] < sp.price < prev['close']:
                swept = sp
                break
            if direction == Direction.SELL and prev['high'] > sp.price > prev['close']:
                swept = sp
                break

        if swept is None:
            return None

        body = abs(cur['close'] - cur['open'])
        continues = cur['close'] > cur['open'] if direction == Direction.BUY else cur['close'] < cur['open']
        if not continues or body <= atr * 0.3:
            return None

        entry = float(cur['close'])
        offset = atr * 0.5 * self.params.atr_mult
        stop_loss = swept.price - offset if direction == Direction.BUY else swept.price + offset
        if (direction == Direction.BUY and entry <= stop_loss) or \
                (direction == Direction.SELL and entry >= stop_loss):
            return None

        self.ledger.mark_swept(swept)
        side = 'sell-side' if direction == Direction.BUY else 'buy-side'
        return Signal(
            symbol=self.symbol,
            direction=direction,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=build_levels(direction, entry, stop_loss, self.params.fixed_rr),
            created_at=analysis.time,
            htf_bias=analysis.htf_bias,
            strategy=StrategyType.LIQUIDITY_SWEEP.value,
            reason=f"Swept {side} liquidity at {swept.price:.5g}",
            confidence=analysis.confluence.score,
            source_key=(swept.type, _epoch_ms(swept.time))
        )

    def bos_signal(self, analysis: MarketAnalysis, ltf: pd.DataFrame) -> Optional[Signal]:
        """Pullback to the last broken structure level"""
        self.ledger.record_bos(analysis.bos)
        bos = self.ledger.last_bos
        direction = Direction.from_bias(analysis.direction)
        atr = analysis.mtf_atr
        if bos is None or direction is None or atr <= 0 or bos.type != analysis.direction.value:
            return None

        price = analysis.current_price
        tolerance = atr * 0.5
        if direction == Direction.BUY:
            pulled_back = bos.level - atr <= price <= bos.level + tolerance
        else:
            pulled_back = bos.level - tolerance <= price <= bos.level + atr
        if not pulled_back:
            return None

        cur = ltf.iloc[-1]
        body = abs(cur['close'] - cur['open'])
        continues = cur['close'] > cur['open'] if direction == Direction.BUY else cur['close'] < cur['open']
        if not continues or body <= atr * 0.2:
            return None

        offset = atr * self.params.atr_mult
        stop_loss = bos.level - offset if direction == Direction.BUY else bos.level + offset
        if (direction == Direction.BUY and price <= stop_loss) or \
                (direction == Direction.SELL and price >= stop_loss):
            return None

        self.ledger.consume_bos()
        return Signal(
            symbol=self.symbol,
            direction=direction,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=build_levels(direction, price, stop_loss, self.params.fixed_rr),
            created_at=analysis.time,
            htf_bias=analysis.htf_bias,
            strategy=StrategyType.BOS.value,
            reason=f"{bos.type.title()} break of structure at {bos.level:.5g}, pullback entry",
            confidence=analysis.confluence.score,
            source_key=bos.key
        )

    def needs_confirmation(self) -> bool:
        return self.params.confirmation_type != ConfirmationType.NONE

    def is_expired(self, signal: Signal, now: datetime) -> bool:
        """Pending signal past its validity window"""
        return signal.status == SignalStatus.PENDING and \
            now - signal.created_at > timedelta(hours=self.params.pending_validity_hours)

    def confirm(self, signal: Signal, candle: pd.Series, prev_candle: Optional[pd.Series]) -> bool:
        return check_confirmation(self.params.confirmation_type, signal.direction, candle, prev_candle)

    def finalize_entry(self, signal: Signal, entry_price: float) -> bool:
        """
        Re-anchor a confirmed signal at the actual entry

        The stop stays on the structure; the target is rebuilt from the new
        risk. Returns False when the entry is already beyond the stop.
        """
        if (signal.direction == Direction.BUY and entry_price <= signal.stop_loss) or \
                (signal.direction == Direction.SELL and entry_price >= signal.stop_loss):
            return False
        signal.entry_price = entry_price
        signal.take_profit = build_levels(signal.direction, entry_price, signal.stop_loss, self.params.fixed_rr)
        return True
