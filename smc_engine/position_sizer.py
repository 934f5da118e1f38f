"""
Position sizing and trade arithmetic
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, List

from .models import Direction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolSpec:
    """Broker contract specification for one symbol"""
    symbol: str
    pip_size: float
    contract_size: float
    min_volume: float
    max_volume: float
    volume_step: float
    tick_size: float = 0.01
    tick_value: float = 1.0


DEFAULT_SYMBOL_SPECS: Dict[str, SymbolSpec] = {
    'XAUUSD.s': SymbolSpec('XAUUSD.s', 0.1, 100, 0.01, 100, 0.01, 0.01, 1),
    'XAGUSD.s': SymbolSpec('XAGUSD.s', 0.01, 5000, 0.01, 100, 0.01, 0.001, 1),
    'BTCUSD': SymbolSpec('BTCUSD', 1, 1, 0.01, 10, 0.01, 0.01, 1),
    'ETHUSD': SymbolSpec('ETHUSD', 1, 1, 0.01, 100, 0.01, 0.1, 1),
}


def get_symbol_spec(symbol: str) -> SymbolSpec:
    """Known spec for symbol, or a generic one-unit contract"""
    for name, spec in DEFAULT_SYMBOL_SPECS.items():
        if name.upper() == symbol.upper():
            return spec
    logger.warning(f"No contract specification for {symbol}, using generic 1-unit contract")
    return SymbolSpec(symbol, pip_size=0.01, contract_size=1, min_volume=0.01, max_volume=100, volume_step=0.01)


@dataclass
class PositionSize:
    lot_size: float
    risk_amount: float
    stop_distance: float
    actual_risk: float  # money lost at the stop with the final lot size


@dataclass
class PotentialPnL:
    pnl: float
    pips: float
    percentage: float


def _step_decimals(step: float) -> int:
    text = f"{step:.10f}".rstrip('0')
    return len(text.split('.')[1]) if '.' in text else 0


def round_to_step(volume: float, step: float) -> float:
    """Floor volume to a multiple of step"""
    steps = math.floor(volume / step + 1e-9)
    return round(steps * step, _step_decimals(step))


def calculate_position_size(balance: float, risk_percent: float, entry_price: float,
                            stop_loss: float, spec: SymbolSpec) -> PositionSize:
    """
    Lot size risking risk_percent of balance between entry and stop

    The result is floored to the volume step and clamped to the symbol's
    volume limits, so the realised risk can differ from the requested one.

    Raises:
        ValueError: non-positive balance/risk or a zero stop distance
    """
    if balance <= 0:
        raise ValueError(f"Balance must be positive: {balance}")
    if risk_percent <= 0:
        raise ValueError(f"Risk percent must be positive: {risk_percent}")

    stop_distance = abs(entry_price - stop_loss)
    if stop_distance == 0:
        raise ValueError("Stop loss cannot equal entry price")

    risk_amount = balance * (risk_percent / 100)
    raw_lot = risk_amount / (stop_distance * spec.contract_size)

    lot_size = round_to_step(raw_lot, spec.volume_step)
    lot_size = max(spec.min_volume, min(lot_size, spec.max_volume))
    lot_size = round(lot_size, _step_decimals(spec.volume_step))

    return PositionSize(
        lot_size=lot_size,
        risk_amount=risk_amount,
        stop_distance=stop_distance,
        actual_risk=lot_size * stop_distance * spec.contract_size
    )


def calculate_risk_reward(direction: Direction, entry_price: float, stop_loss: float, take_profit: float) -> float:
    """Reward distance over risk distance, 0 when there is no risk"""
    risk = abs(entry_price - stop_loss)
    reward = abs(take_profit - entry_price)
    if risk == 0:
        return 0.0
    return reward / risk


def calculate_potential_pnl(direction: Direction, entry_price: float, exit_price: float,
                            lot_size: float, spec: SymbolSpec) -> PotentialPnL:
    """Money, pips and percent move of closing at exit_price"""
    if direction == Direction.BUY:
        price_diff = exit_price - entry_price
    else:
        price_diff = entry_price - exit_price

    return PotentialPnL(
        pnl=price_diff * lot_size * spec.contract_size,
        pips=price_diff / spec.pip_size,
        percentage=price_diff / entry_price * 100 if entry_price else 0.0
    )


def validate_trade_params(direction: Direction, entry_price: float, stop_loss: float,
                          take_profit: float, min_rr: float = 0.0) -> List[str]:
    """Validate stop/target placement and return list of errors"""
    errors = []
    if direction == Direction.BUY:
        if stop_loss >= entry_price:
            errors.append("Stop loss must be below entry price for BUY orders")
        if take_profit <= entry_price:
            errors.append("Take profit must be above entry price for BUY orders")
    else:
        if stop_loss <= entry_price:
            errors.append("Stop loss must be above entry price for SELL orders")
        if take_profit >= entry_price:
            errors.append("Take profit must be below entry price for SELL orders")

    rr = calculate_risk_reward(direction, entry_price, stop_loss, take_profit)
    if rr < min_rr:
        errors.append(f"Risk-reward ratio ({rr:.2f}) is below minimum ({min_rr})")

    return errors
