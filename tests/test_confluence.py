import sys
from pathlib import Path

# Ensure project root on sys.path before importing from smc_engine
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pandas as pd
import pytest

from smc_engine.confluence import resolve_bias, score_confluence, analyze_market
from smc_engine.models import Bias

B, S, N = Bias.BULLISH, Bias.BEARISH, Bias.NEUTRAL


@pytest.mark.parametrize("htf,mtf,ltf,expected", [
    (B, B, B, B),
    (B, S, B, N),     # HTF/MTF conflict wins over LTF
    (B, N, S, B),     # neutral MTF defers to HTF
    (N, S, S, S),
    (N, S, B, N),
    (N, N, B, N),
])
def test_resolve_bias(htf, mtf, ltf, expected):
    assert resolve_bias(htf, mtf, ltf) == expected


def test_full_alignment_scores():
    result = score_confluence(B, B, B, htf_order_blocks=1, mtf_order_blocks=2, mtf_fvgs=1,
                              htf_liquidity=1, mtf_liquidity=3)
    assert result.score == 100
    assert result.direction == B


def test_conflict_caps_score():
    result = score_confluence(B, S, S, mtf_order_blocks=1, mtf_fvgs=1, mtf_liquidity=1)
    assert result.direction == N
    assert result.score == 20
    for htf in (B, S, N):
        for mtf in (B, S, N):
            for ltf in (B, S, N):
                assert 0 <= score_confluence(htf, mtf, ltf, 5, 5, 5, 5, 5).score <= 100


def test_analyze_market_uses_last_closed_ltf_candle():
    def flat(start, periods, freq):
        return pd.DataFrame({
            "timestamp": pd.date_range(start, periods=periods, freq=freq, tz="UTC"),
            "open": 100.0, "high": 101.0, "low": 99.0, "close": 100.0, "volume": 1.0,
        })

    ltf = flat("2024-01-02", 30, "15min")
    ltf.loc[29, "close"] = 100.5
    analysis = analyze_market(flat("2024-01-01", 12, "4h"), flat("2024-01-01", 48, "1h"), ltf)
    assert analysis.current_price == 100.5
    assert analysis.time == ltf["timestamp"].iloc[-1]
    assert analysis.mtf_atr == pytest.approx(2.0)
    assert 0 <= analysis.confluence.score <= 100
