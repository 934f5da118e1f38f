import sys
from pathlib import Path

# Ensure project root on sys.path before importing from smc_engine
sys.path.append(str(Path(__file__).resolve().parents[1]))

import asyncio
import json

import pandas as pd

from smc_config import BacktestConfig
from smc_engine.backtest import BacktestRunner, CallbackProgressSink, ProgressSink, QueueProgressSink, PHASES
from smc_engine.core import DataFrameCandleSource
from smc_engine.models import BacktestResult
from smc_engine.persistence import JsonResultStore


def flat(start, periods, freq):
    df = pd.DataFrame({
        "timestamp": pd.date_range(start, periods=periods, freq=freq, tz="UTC"),
        "open": 100.0, "high": 101.0, "low": 99.0, "close": 100.0, "volume": 1.0,
    })
    return df


def source(htf=12, mtf=48, ltf=40, ltf_start="2024-01-02"):
    return DataFrameCandleSource({
        "TEST_4h": flat("2024-01-01", htf, "4h"),
        "TEST_1h": flat("2024-01-01", mtf, "1h"),
        "TEST_15m": flat(ltf_start, ltf, "15min"),
    })


def small_config(**kwargs):
    return BacktestConfig("TEST", min_htf_candles=5, min_mtf_candles=10, min_ltf_candles=10,
                          progress_every=10, **kwargs)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, phase, counters):
        self.events.append((phase, counters))

    @property
    def phases(self):
        seen = []
        for phase, _ in self.events:
            if phase not in seen:
                seen.append(phase)
        return seen


def test_successful_run_walks_every_phase(tmp_path):
    recorder = Recorder()
    runner = BacktestRunner(source(), JsonResultStore(str(tmp_path)))

    payload = asyncio.run(runner.run(small_config(), CallbackProgressSink(recorder), run_id="run-1"))

    assert payload["success"] is True
    assert payload["run_id"] == "run-1"
    assert payload["result"]["symbol"] == "TEST"
    assert payload["result"]["candles_processed"] == 40
    assert recorder.phases == list(PHASES)
    assert recorder.events[-1][1]["run_id"] == "run-1"
    assert "metrics" in recorder.events[-1][1]
    assert runner.running == {}

    saved = Path(payload["saved_to"])
    assert saved.exists()
    assert json.loads(saved.read_text())["run_id"] == "run-1"


def test_invalid_config_fails_before_fetch():
    recorder = Recorder()
    runner = BacktestRunner(source())

    payload = asyncio.run(runner.run(small_config(risk_percent=0), CallbackProgressSink(recorder)))

    assert payload["success"] is False
    assert payload["phase"] == "connecting"
    assert payload["error_type"] == "invalid_configuration"
    assert "risk_percent" in payload["error"]
    assert recorder.phases == ["connecting", "error"]


def test_insufficient_data_is_reported_in_fetching():
    recorder = Recorder()
    runner = BacktestRunner(source(ltf=5))

    payload = asyncio.run(runner.run(small_config(), CallbackProgressSink(recorder)))

    assert payload["success"] is False
    assert payload["phase"] == "fetching"
    assert payload["error_type"] == "insufficient_data"
    assert "LTF has 5 candles" in payload["error"]
    assert recorder.events[-1][0] == "error"


def test_source_failure_becomes_data_source_error():
    runner = BacktestRunner(source())
    payload = asyncio.run(runner.run(small_config(ltf_timeframe="5m")))
    assert payload["success"] is False
    assert payload["error_type"] == "data_source"
    assert payload["phase"] == "fetching"


def test_unexpected_error_is_internal(monkeypatch):
    runner = BacktestRunner(source())

    def boom(self, *args):
        raise RuntimeError("simulator exploded")

    monkeypatch.setattr("smc_engine.backtest.runner.BacktestSimulator.run", boom)
    payload = asyncio.run(runner.run(small_config()))

    assert payload == {
        "success": False, "phase": "analyzing", "error_type": "internal",
        "error": "simulator exploded", "run_id": payload["run_id"],
    }


def test_failing_progress_callback_does_not_stop_run():
    def broken(phase, counters):
        raise RuntimeError("listener gone")

    runner = BacktestRunner(source())
    payload = asyncio.run(runner.run(small_config(), CallbackProgressSink(broken)))
    assert payload["success"] is True


class BrokenSink(ProgressSink):
    def __init__(self):
        self.calls = 0

    def on_progress(self, phase, counters):
        self.calls += 1
        raise RuntimeError("sink down")


def test_raising_progress_sink_never_escapes_run():
    runner = BacktestRunner(source())
    sink = BrokenSink()
    payload = asyncio.run(runner.run(small_config(), sink))
    assert payload["success"] is True
    assert payload["result"]["candles_processed"] == 40
    assert sink.calls > 1

    failed = asyncio.run(runner.run(small_config(risk_percent=0), BrokenSink()))
    assert failed["success"] is False
    assert failed["error_type"] == "invalid_configuration"
    assert runner.running == {}


def test_non_overlapping_series_fail_in_fetching():
    runner = BacktestRunner(source(ltf_start="2024-01-05"))
    payload = asyncio.run(runner.run(small_config()))
    assert payload["success"] is False
    assert payload["phase"] == "fetching"
    assert payload["error_type"] == "insufficient_data"
    assert "do not overlap" in payload["error"]


def test_cancel_unknown_run():
    runner = BacktestRunner(source())
    assert runner.cancel("nope") is False
    assert runner.get_status()["running_backtests"] == 0


def test_run_many_keeps_runs_separate():
    runner = BacktestRunner(source(), concurrent_limit=1)
    results = asyncio.run(runner.run_many([small_config(), small_config(initial_balance=5000)]))
    assert [r["success"] for r in results] == [True, True]
    assert results[0]["result"]["initial_balance"] == 10000
    assert results[1]["result"]["initial_balance"] == 5000
    assert results[0]["run_id"] != results[1]["run_id"]


def test_queue_sink_drops_progress_but_keeps_terminal_event():
    async def scenario():
        queue = asyncio.Queue(maxsize=2)
        sink = QueueProgressSink(queue)
        for i in range(5):
            sink.on_progress("analyzing", {"processed": i})
        sink.finish("complete", {"run_id": "r"})
        await asyncio.sleep(0)
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return sink, events

    sink, events = asyncio.run(scenario())
    assert events[-1] == {"type": "complete", "run_id": "r"}
    assert len(events) == 2
    assert sink.dropped == 4


def test_result_store_keeps_history(tmp_path):
    store = JsonResultStore(str(tmp_path))
    result = BacktestResult(symbol="BTCUSD", strategy="ORDER_BLOCK", initial_balance=1000)

    first = store.save(result, "a")
    second = store.save(result, "b")

    assert first != second
    assert len(store.list_history("BTCUSD")) == 2
    assert store.load_latest("BTCUSD")["run_id"] == "b"
    assert store.load_latest("ETHUSD") is None
