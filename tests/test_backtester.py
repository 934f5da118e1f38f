import sys
from pathlib import Path

# Ensure project root on sys.path before importing from smc_engine
sys.path.append(str(Path(__file__).resolve().parents[1]))

import threading
from datetime import timedelta
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from smc_config.models import BacktestConfig, StrategyParams, ConfirmationType, DEFAULT_KILL_ZONES
from smc_engine.backtester import (
    BacktestSimulator, DailyDrawdownTracker, in_kill_zone, run_backtest, check_data_sufficiency
)
from smc_engine.errors import BacktestCancelled, InsufficientDataError
from smc_engine.models import Bias, Direction, ExitReason, Signal, SignalStatus
from smc_engine.position_sizer import SymbolSpec

SPEC = SymbolSpec("TEST", pip_size=0.01, contract_size=1, min_volume=0.01, max_volume=1000, volume_step=0.01)
DOJI = (100.0, 101.0, 99.0, 100.0)


def series(start, periods, freq, overrides=None):
    rows = [DOJI] * periods
    for i, row in (overrides or {}).items():
        rows[i] = row
    df = pd.DataFrame(rows, columns=["open", "high", "low", "close"])
    df.insert(0, "timestamp", pd.date_range(start, periods=periods, freq=freq, tz="UTC"))
    df["volume"] = 0.0
    return df


def frames(ltf_candles, overrides=None):
    htf = series("2024-01-01", 12, "4h")
    mtf = series("2024-01-01", 48, "1h")
    ltf = series("2024-01-02", ltf_candles, "15min", overrides)
    return htf, mtf, ltf


def config(**kwargs):
    params = kwargs.pop("params", StrategyParams())
    return BacktestConfig(
        "TEST", params=params, min_htf_candles=1, min_mtf_candles=1, min_ltf_candles=1, **kwargs
    )


def stub_simulator(monkeypatch, cfg, once=False, spec=SPEC, **kwargs):
    """Simulator whose analysis always points long and whose generator buys the last close"""
    sim = BacktestSimulator(cfg, spec=spec, **kwargs)
    state = {"calls": 0}

    def analyze(htf, mtf, ltf):
        return SimpleNamespace(
            direction=Bias.BULLISH,
            confluence=SimpleNamespace(score=50.0),
            recent_sweep=None,
            premium_discount=None,
            current_price=float(ltf["close"].iloc[-1]),
        )

    def generate(analysis, ltf):
        state["calls"] += 1
        if once and state["calls"] > 1:
            return None
        last = ltf.iloc[-1]
        close = float(last["close"])
        return Signal(
            symbol="TEST", direction=Direction.BUY, entry_price=close,
            stop_loss=close - 10, take_profit=close + 20, created_at=last["timestamp"],
            htf_bias=Bias.BULLISH, strategy="ORDER_BLOCK"
        )

    monkeypatch.setattr(sim, "analyze", analyze)
    monkeypatch.setattr(sim.generator, "generate", generate)
    return sim


def test_kill_zone_hours():
    zones = list(DEFAULT_KILL_ZONES)
    assert in_kill_zone(pd.Timestamp("2024-01-02 08:00", tz="UTC"), zones)
    assert not in_kill_zone(pd.Timestamp("2024-01-02 10:00", tz="UTC"), zones)
    assert in_kill_zone(pd.Timestamp("2024-01-02 19:30"), zones)
    assert not in_kill_zone(pd.Timestamp("2024-01-02 21:00", tz="UTC"), zones)
    # converted to UTC before the check
    assert in_kill_zone(pd.Timestamp("2024-01-02 09:30", tz="Europe/Berlin"), zones)


def test_daily_drawdown_tracker_locks_until_next_day():
    tracker = DailyDrawdownTracker(5.0)
    tracker.roll(pd.Timestamp("2024-01-02 01:00", tz="UTC"), 10000)
    assert not tracker.update(9600)
    assert tracker.update(9500)
    # same day, no reset even if balance recovers
    tracker.roll(pd.Timestamp("2024-01-02 23:45", tz="UTC"), 9900)
    assert tracker.locked
    tracker.roll(pd.Timestamp("2024-01-03 00:00", tz="UTC"), 9500)
    assert not tracker.locked
    assert tracker.start_balance == 9500


def test_insufficient_data_raises():
    htf, mtf, ltf = frames(20)
    with pytest.raises(InsufficientDataError) as exc:
        run_backtest(BacktestConfig("TEST"), htf, mtf, ltf, spec=SPEC)
    assert exc.value.phase == "analyzing"
    assert "HTF has 12 candles" in exc.value.message

    with pytest.raises(InsufficientDataError) as exc:
        check_data_sufficiency(BacktestConfig("TEST"), htf, mtf, ltf, phase="fetching")
    assert exc.value.phase == "fetching"


def test_daily_drawdown_halts_new_trades_until_next_day(monkeypatch):
    # candles 1, 3 and 5 dip to the stop
    stops = {i: (100.0, 101.0, 89.0, 100.0) for i in (1, 3, 5)}
    htf, mtf, ltf = frames(100, stops)
    cfg = config(risk_percent=2.0)
    sim = stub_simulator(monkeypatch, cfg)

    result = sim.run(htf, mtf, ltf)

    losses = [t.pnl for t in result.trades[:3]]
    assert losses == pytest.approx([-200.0, -196.0, -192.0])
    assert all(t.exit_reason == ExitReason.SL for t in result.trades[:3])

    rejected = [s for s in result.signals if s.status == SignalStatus.REJECTED]
    assert len(rejected) == 90
    assert all("daily drawdown" in s.reason for s in rejected)
    assert all(s.created_at < pd.Timestamp("2024-01-03", tz="UTC") for s in rejected)

    # trading resumes on the first candle of the next UTC day
    resumed = result.trades[3]
    assert resumed.entry_time == pd.Timestamp("2024-01-03 00:00", tz="UTC")
    assert len(result.trades) == 4
    assert result.metrics.final_balance == pytest.approx(9412.0)


def test_open_trade_is_force_closed_at_end(monkeypatch):
    htf, mtf, ltf = frames(10, {9: (100.0, 103.0, 99.0, 102.5)})
    sim = stub_simulator(monkeypatch, config(), once=True)

    result = sim.run(htf, mtf, ltf)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason == ExitReason.MANUAL
    assert trade.exit_price == 102.5
    assert trade.exit_time == ltf["timestamp"].iloc[-1]
    assert trade.pnl == pytest.approx(2.5 * trade.lot_size)
    assert sim.open_trade is None
    assert [p.equity for p in result.equity_curve] == [10000, pytest.approx(10000 + trade.pnl)]


def test_take_profit_and_balance(monkeypatch):
    htf, mtf, ltf = frames(10, {2: (100.0, 121.0, 99.0, 118.0)})
    sim = stub_simulator(monkeypatch, config(), once=True)

    result = sim.run(htf, mtf, ltf)

    trade = result.trades[0]
    assert trade.exit_reason == ExitReason.TP
    assert trade.exit_price == 120.0
    # 1% of 10000 over a 10 point stop
    assert trade.lot_size == 10.0
    assert trade.pnl == pytest.approx(200.0)
    assert result.metrics.total_trades == 1
    assert result.signals[0].status == SignalStatus.TAKEN


def test_pending_signal_expires_without_confirmation(monkeypatch):
    htf, mtf, ltf = frames(30)
    params = StrategyParams(confirmation_type=ConfirmationType.STRONG, pending_validity_hours=4)
    sim = stub_simulator(monkeypatch, config(params=params), once=True)

    result = sim.run(htf, mtf, ltf)

    assert result.trades == []
    signal = result.signals[0]
    assert signal.status == SignalStatus.EXPIRED
    # first candle strictly past four hours after creation
    assert signal.resolved_at == pd.Timestamp("2024-01-02 04:15", tz="UTC")


def test_confirmed_signal_enters_at_confirmation_close(monkeypatch):
    htf, mtf, ltf = frames(10, {3: (100.0, 102.5, 99.5, 102.0)})
    params = StrategyParams(confirmation_type=ConfirmationType.CLOSE, fixed_rr=2)
    sim = stub_simulator(monkeypatch, config(params=params), once=True)

    result = sim.run(htf, mtf, ltf)

    trade = result.trades[0]
    assert trade.entry_time == ltf["timestamp"].iloc[3]
    assert trade.entry_price == 102.0
    assert trade.stop_loss == 90.0
    assert trade.take_profit == pytest.approx(126.0)
    assert result.signals[0].status == SignalStatus.TAKEN


def test_candle_touching_both_levels_exits_at_stop(monkeypatch):
    htf, mtf, ltf = frames(5, {1: (100.0, 121.0, 89.0, 100.0)})
    sim = stub_simulator(monkeypatch, config(), once=True)

    result = sim.run(htf, mtf, ltf)

    assert result.trades[0].exit_reason == ExitReason.SL
    assert result.trades[0].exit_price == 90.0


def test_ticks_decide_which_level_was_hit_first(monkeypatch):
    htf, mtf, ltf = frames(5, {1: (100.0, 121.0, 89.0, 100.0)})
    ticks = pd.DataFrame({
        "timestamp": pd.to_datetime(
            ["2024-01-02 00:16", "2024-01-02 00:20", "2024-01-02 00:25"], utc=True
        ),
        "bid": [110.0, 121.0, 89.0],
        "ask": [110.1, 121.1, 89.1],
    })
    sim = stub_simulator(monkeypatch, config(use_tick_data=True), once=True)

    result = sim.run(htf, mtf, ltf, ticks=ticks)

    trade = result.trades[0]
    assert trade.exit_reason == ExitReason.TP
    assert trade.exit_price == 120.0
    assert trade.exit_time == ltf["timestamp"].iloc[1]


def test_ticks_without_cross_keep_trade_open(monkeypatch):
    htf, mtf, ltf = frames(5, {1: (100.0, 121.0, 89.0, 100.0)})
    ticks = pd.DataFrame({
        "timestamp": pd.to_datetime(["2024-01-02 00:16", "2024-01-02 00:20"], utc=True),
        "bid": [100.5, 104.0],
        "ask": [100.6, 104.1],
    })
    sim = stub_simulator(monkeypatch, config(use_tick_data=True), once=True)

    result = sim.run(htf, mtf, ltf, ticks=ticks)

    assert len(result.trades) == 1
    assert result.trades[0].exit_reason == ExitReason.MANUAL


def test_tick_range_and_exit_lookup():
    sim = BacktestSimulator(config(), spec=SPEC)
    start = 1_704_153_600_000  # 2024-01-02 00:00 UTC
    minute = 60_000
    sim._ticks = (
        np.array([start + 16 * minute, start + 20 * minute], dtype=np.int64),
        np.array([100.5, 104.0]),
        np.array([100.6, 104.1]),
    )
    trade = SimpleNamespace(direction=Direction.BUY, stop_loss=90.0, take_profit=120.0)

    assert sim._tick_range(start, 15 * minute) is None
    assert sim._tick_range(start + 15 * minute, 15 * minute) == (0, 2)
    # covered but never crossed
    assert sim._tick_exit(trade, 0, 2) is None

    trade.take_profit = 104.0
    assert sim._tick_exit(trade, 0, 2) == (104.0, ExitReason.TP)


def test_depleted_account_rejects_new_signals(monkeypatch):
    # one stop costs more than the whole balance at the minimum volume
    heavy = SymbolSpec("TEST", pip_size=0.01, contract_size=1, min_volume=1500, max_volume=2000, volume_step=0.01)
    htf, mtf, ltf = frames(100, {1: (100.0, 101.0, 89.0, 100.0)})
    cfg = config(params=StrategyParams(max_daily_dd=100))
    sim = stub_simulator(monkeypatch, cfg, spec=heavy)

    result = sim.run(htf, mtf, ltf)

    assert len(result.trades) == 1
    assert result.trades[0].pnl == pytest.approx(-15000.0)
    assert result.metrics.final_balance == pytest.approx(-5000.0)

    rejected = result.signals[1:]
    assert len(rejected) == 98
    assert all(s.status == SignalStatus.REJECTED for s in rejected)
    assert all("account depleted" in s.reason for s in rejected)


def test_signals_only_inside_kill_zones(monkeypatch):
    htf, mtf, ltf = frames(96)
    params = StrategyParams(use_kill_zones=True, confirmation_type=ConfirmationType.STRONG,
                            pending_validity_hours=0.25)
    sim = stub_simulator(monkeypatch, config(params=params))

    result = sim.run(htf, mtf, ltf)

    assert result.signals
    for signal in result.signals:
        assert in_kill_zone(signal.created_at, params.kill_zones)


def test_progress_counters_and_failing_sink(monkeypatch):
    htf, mtf, ltf = frames(30)
    events = []

    def progress(phase, counters):
        events.append((phase, counters))

    sim = stub_simulator(monkeypatch, config(progress_every=10), once=True, progress=progress)
    sim.run(htf, mtf, ltf)

    assert [c["processed"] for _, c in events] == [10, 20, 30, 30]
    assert all(phase == "analyzing" for phase, _ in events)
    assert events[-1][1]["percent"] == 100.0
    assert set(events[0][1]) == {"processed", "total", "percent", "trades", "balance", "pnl", "win_rate", "drawdown"}

    def broken(phase, counters):
        raise RuntimeError("sink down")

    sim = stub_simulator(monkeypatch, config(progress_every=10), once=True, progress=broken)
    result = sim.run(htf, mtf, ltf)
    assert result.candles_processed == 30


def test_cancellation_stops_at_checkpoint(monkeypatch):
    htf, mtf, ltf = frames(30)
    event = threading.Event()
    event.set()
    sim = stub_simulator(monkeypatch, config(), cancel_event=event)

    with pytest.raises(BacktestCancelled) as exc:
        sim.run(htf, mtf, ltf)
    assert exc.value.phase == "analyzing"
    assert sim.signals == []


def random_walk_frames(seed=7, days=12):
    rng = np.random.default_rng(seed)
    periods = days * 96
    index = pd.date_range("2024-01-01", periods=periods, freq="15min", tz="UTC")
    close = 2000 + np.cumsum(rng.normal(0, 2.0, periods))
    open_ = np.concatenate([[close[0]], close[:-1]])
    spread = np.abs(rng.normal(0, 1.5, periods))
    base = pd.DataFrame({
        "open": open_,
        "high": np.maximum(open_, close) + spread,
        "low": np.minimum(open_, close) - spread,
        "close": close,
        "volume": rng.uniform(1, 10, periods),
    }, index=index)

    def resample(rule):
        agg = base.resample(rule).agg(
            {"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
        )
        return agg.dropna().rename_axis("timestamp").reset_index()

    ltf = base.rename_axis("timestamp").reset_index()
    return resample("4h"), resample("1h"), ltf.iloc[-300:].reset_index(drop=True)


def walk_config():
    return BacktestConfig(
        "XAUUSD.s",
        params=StrategyParams(min_ob_score=50),
        min_htf_candles=20, min_mtf_candles=50, min_ltf_candles=50,
        htf_window=50, mtf_window=100, ltf_window=50
    )


def test_identical_inputs_give_identical_results():
    htf, mtf, ltf = random_walk_frames()
    first = run_backtest(walk_config(), htf, mtf, ltf)
    second = run_backtest(walk_config(), htf, mtf, ltf)
    assert first.to_dict() == second.to_dict()


def test_analysis_only_sees_closed_candles(monkeypatch):
    htf, mtf, ltf = random_walk_frames()
    sim = BacktestSimulator(walk_config())
    seen = []

    def analyze(h, m, l):
        seen.append((h["timestamp"].iloc[-1], m["timestamp"].iloc[-1], l["timestamp"].iloc[-1]))
        return BacktestSimulator.analyze(sim, h, m, l)

    monkeypatch.setattr(sim, "analyze", analyze)
    sim.run(htf, mtf, ltf)

    assert seen
    for h_last, m_last, l_last in seen:
        cursor_close = l_last + timedelta(minutes=15)
        assert h_last + timedelta(hours=4) <= cursor_close
        assert m_last + timedelta(hours=1) <= cursor_close


def test_future_candles_do_not_change_past_signals():
    htf, mtf, ltf = random_walk_frames()
    cutoff = ltf["timestamp"].iloc[200]

    full = run_backtest(walk_config(), htf, mtf, ltf)
    truncated = run_backtest(
        walk_config(),
        htf[htf["timestamp"] <= cutoff],
        mtf[mtf["timestamp"] <= cutoff],
        ltf[ltf["timestamp"] <= cutoff],
    )

    def key(s):
        return (s.created_at, s.direction, s.stop_loss)

    early = [key(s) for s in full.signals if s.created_at <= cutoff]
    assert early == [key(s) for s in truncated.signals]
