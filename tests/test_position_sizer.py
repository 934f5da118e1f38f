import sys
from pathlib import Path

# Ensure project root on sys.path before importing from smc_engine
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from smc_engine.models import Direction
from smc_engine.position_sizer import (
    SymbolSpec, get_symbol_spec, calculate_position_size, calculate_risk_reward,
    calculate_potential_pnl, validate_trade_params, round_to_step
)

GENERIC = SymbolSpec("TEST", pip_size=0.01, contract_size=1, min_volume=0.01, max_volume=1000, volume_step=0.01)


def test_position_size_from_risk():
    size = calculate_position_size(10000, 1.0, 100.0, 98.0, GENERIC)
    assert size.lot_size == 50.0
    assert size.risk_amount == 100.0
    assert size.stop_distance == 2.0
    assert size.actual_risk == pytest.approx(100.0)


def test_position_size_clamped_to_max_volume():
    btc = get_symbol_spec("BTCUSD")
    size = calculate_position_size(10000, 1.0, 100.0, 99.0, btc)
    assert size.lot_size == btc.max_volume


def test_position_size_clamped_to_min_volume():
    gold = get_symbol_spec("XAUUSD.s")
    size = calculate_position_size(100, 0.1, 2000.0, 1900.0, gold)
    assert size.lot_size == gold.min_volume


@pytest.mark.parametrize("balance", [500, 10000, 250000])
@pytest.mark.parametrize("risk", [0.25, 1.0, 3.0])
@pytest.mark.parametrize("stop", [0.37, 5.0, 120.0])
def test_position_size_bounds(balance, risk, stop):
    for spec in (GENERIC, get_symbol_spec("XAUUSD.s"), get_symbol_spec("ETHUSD")):
        lot = calculate_position_size(balance, risk, 1000.0, 1000.0 - stop, spec).lot_size
        assert spec.min_volume <= lot <= spec.max_volume
        steps = lot / spec.volume_step
        assert steps == pytest.approx(round(steps), abs=1e-6)


def test_position_size_rejects_invalid_input():
    with pytest.raises(ValueError):
        calculate_position_size(10000, 1.0, 100.0, 100.0, GENERIC)
    with pytest.raises(ValueError):
        calculate_position_size(0, 1.0, 100.0, 99.0, GENERIC)
    with pytest.raises(ValueError):
        calculate_position_size(10000, -1, 100.0, 99.0, GENERIC)


def test_round_to_step_floors():
    assert round_to_step(1.239, 0.01) == 1.23
    assert round_to_step(0.7, 0.1) == 0.7


def test_unknown_symbol_gets_generic_spec():
    spec = get_symbol_spec("DOGEUSD")
    assert spec.symbol == "DOGEUSD"
    assert spec.contract_size == 1


def test_risk_reward_and_pnl():
    assert calculate_risk_reward(Direction.BUY, 100, 95, 110) == 2.0
    assert calculate_risk_reward(Direction.BUY, 100, 100, 110) == 0.0

    gold = get_symbol_spec("XAUUSD.s")
    pnl = calculate_potential_pnl(Direction.SELL, 2000.0, 1990.0, 0.5, gold)
    assert pnl.pnl == pytest.approx(500.0)
    assert pnl.pips == pytest.approx(100.0)


def test_validate_trade_params():
    assert validate_trade_params(Direction.BUY, 100, 95, 110) == []
    assert len(validate_trade_params(Direction.BUY, 100, 105, 90)) == 2
    assert len(validate_trade_params(Direction.SELL, 100, 105, 90, min_rr=3)) == 1
