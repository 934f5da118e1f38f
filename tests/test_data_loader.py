import sys
from pathlib import Path

# Ensure project root on sys.path before importing from smc_engine
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from smc_engine.data_loader import (
    normalize_candles, closed_until, timeframe_to_ms, infer_interval_ms, to_epoch_ms,
    load_csv, load_ticks, candles_to_dataframe, dataframe_to_candles
)


def test_normalize_sorts_and_keeps_last_duplicate():
    df = pd.DataFrame({
        "Timestamp": ["2024-01-02 00:30", "2024-01-02 00:00", "2024-01-02 00:15", "2024-01-02 00:00"],
        "Open": [3, 1, 2, 9],
        "High": [3, 1, 2, 9],
        "Low": [3, 1, 2, 9],
        "Close": [3, 1, 2, 9],
    })
    out = normalize_candles(df)
    assert list(out.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
    assert len(out) == 3
    assert out["timestamp"].is_monotonic_increasing
    assert str(out["timestamp"].dt.tz) == "UTC"
    assert out["close"].tolist() == [9, 2, 3]


def test_normalize_accepts_epoch_milliseconds():
    df = pd.DataFrame({"time": [1704153600000, 1704154500000], "open": [1, 2], "high": [1, 2],
                       "low": [1, 2], "close": [1, 2]})
    out = normalize_candles(df)
    assert out["timestamp"].iloc[0] == pd.Timestamp("2024-01-02 00:00", tz="UTC")


@pytest.mark.parametrize("tf,expected", [
    ("15m", 900_000), ("4h", 14_400_000), ("1d", 86_400_000), ("M15", 900_000), ("H4", 14_400_000), ("bogus", None),
])
def test_timeframe_to_ms(tf, expected):
    assert timeframe_to_ms(tf) == expected


def test_infer_interval_uses_most_common_spacing():
    times = pd.to_datetime(["2024-01-02 00:00", "2024-01-02 01:00", "2024-01-02 02:00", "2024-01-02 05:00"], utc=True)
    assert infer_interval_ms(pd.DataFrame({"timestamp": times})) == 3_600_000


def test_closed_until_excludes_forming_candle():
    opens = to_epoch_ms(pd.Series(pd.date_range("2024-01-02", periods=6, freq="4h", tz="UTC")))
    hour = 3_600_000
    cutoff = int(opens[0]) + 8 * hour  # 08:00, the 04:00 candle has just closed
    assert closed_until(opens, 4 * hour, cutoff) == 2
    assert closed_until(opens, 4 * hour, cutoff - 1) == 1
    assert closed_until(opens, 4 * hour, int(opens[0])) == 0


def test_load_csv_validates(tmp_path):
    good = tmp_path / "good.csv"
    good.write_text(
        "timestamp,open,high,low,close,volume\n"
        "2024-01-02 00:15,100,101,99,100.5,10\n"
        "2024-01-02 00:00,100,101,99,100,10\n"
        "2024-01-02 00:30,100,99,101,100,10\n"
    )
    df = load_csv(str(good))
    # inverted high/low row dropped
    assert len(df) == 2
    assert df["close"].tolist() == [100, 100.5]

    missing = tmp_path / "missing_cols.csv"
    missing.write_text("timestamp,open,close\n2024-01-02,1,1\n")
    with pytest.raises(ValueError):
        load_csv(str(missing))

    with pytest.raises(FileNotFoundError):
        load_csv(str(tmp_path / "nope.csv"))


def test_load_ticks(tmp_path):
    path = tmp_path / "ticks.csv"
    path.write_text("time,bid,ask\n2024-01-02 00:00:05,100.0,100.1\n2024-01-02 00:00:01,99.9,100.0\n")
    ticks = load_ticks(str(path))
    assert ticks["bid"].tolist() == [99.9, 100.0]

    bad = tmp_path / "bad.csv"
    bad.write_text("timestamp,price\n2024-01-02,1\n")
    with pytest.raises(ValueError):
        load_ticks(str(bad))


def test_candle_conversion():
    df = normalize_candles(pd.DataFrame({
        "timestamp": pd.date_range("2024-01-02", periods=3, freq="1h", tz="UTC"),
        "open": [1.0, 2.0, 3.0], "high": [1.5, 2.5, 3.5], "low": [0.5, 1.5, 2.5], "close": [1.2, 2.2, 3.2],
    }))
    candles = dataframe_to_candles(df, "BTCUSD", "1h")
    assert candles[1].close == 2.2
    assert candles[1].symbol == "BTCUSD"
    back = candles_to_dataframe(candles)
    assert np.allclose(back["close"], df["close"])
    assert (back["timestamp"] == df["timestamp"]).all()
