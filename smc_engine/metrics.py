"""
Backtest metrics, a pure reduction over closed trades
"""
import numpy as np
from datetime import datetime
from typing import List, Optional, Tuple

from .models import Trade, BacktestMetrics, EquityPoint, DrawdownPoint


def build_equity_curve(trades: List[Trade], initial_balance: float,
                       start_time: Optional[datetime] = None) -> List[EquityPoint]:
    """Balance after each closed trade, starting from the initial balance"""
    curve: List[EquityPoint] = []
    first_time = start_time or (trades[0].entry_time if trades else None)
    if first_time is not None:
        curve.append(EquityPoint(first_time, initial_balance))

    equity = initial_balance
    for trade in trades:
        equity += trade.pnl
        curve.append(EquityPoint(trade.exit_time, equity))
    return curve


def build_drawdown_curve(equity_curve: List[EquityPoint]) -> List[DrawdownPoint]:
    """Percent below the running equity peak at every curve point"""
    curve: List[DrawdownPoint] = []
    peak = None
    for point in equity_curve:
        peak = point.equity if peak is None else max(peak, point.equity)
        drawdown = (peak - point.equity) / peak * 100 if peak > 0 else 0.0
        curve.append(DrawdownPoint(point.time, drawdown))
    return curve


def max_drawdown(equity_curve: List[EquityPoint]) -> Tuple[float, float]:
    """Largest peak-to-trough fall over the whole curve, as (amount, percent)"""
    if not equity_curve:
        return 0.0, 0.0
    equity = np.array([p.equity for p in equity_curve], dtype=float)
    peaks = np.maximum.accumulate(equity)
    drops = peaks - equity
    with np.errstate(divide='ignore', invalid='ignore'):
        pct = np.where(peaks > 0, drops / peaks * 100, 0.0)
    return float(drops.max()), float(pct.max())


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """
    Gross profit over absolute gross loss

    With no losing trades the ratio is undefined and reported as 0.0.
    """
    if gross_loss == 0:
        return 0.0
    return gross_profit / abs(gross_loss)


def sharpe_ratio(returns: List[float], annualization: float = 252.0) -> float:
    """Mean over sample standard deviation of per-trade % returns, scaled by sqrt(annualization)"""
    if len(returns) < 2:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = values.std(ddof=1)
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(values.mean() / std * np.sqrt(annualization))


def compute_metrics(trades: List[Trade], initial_balance: float,
                    annualization: float = 252.0) -> BacktestMetrics:
    """Generate the metrics report for a sequence of closed trades"""
    closed = [t for t in trades if not t.is_open]
    final_balance = initial_balance + sum(t.pnl for t in closed)
    if not closed:
        return BacktestMetrics(final_balance=final_balance)

    winners = [t for t in closed if t.is_winner]
    losers = [t for t in closed if t.pnl < 0]
    gross_profit = float(sum(t.pnl for t in winners))
    gross_loss = float(sum(t.pnl for t in losers))

    equity_curve = build_equity_curve(closed, initial_balance)
    dd_amount, dd_percent = max_drawdown(equity_curve)
    total_pnl = float(sum(t.pnl for t in closed))

    return BacktestMetrics(
        total_trades=len(closed),
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=len(winners) / len(closed) * 100,
        total_pnl=total_pnl,
        total_pnl_percent=total_pnl / initial_balance * 100,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        avg_win=float(np.mean([t.pnl for t in winners])) if winners else 0.0,
        avg_loss=float(np.mean([t.pnl for t in losers])) if losers else 0.0,
        avg_rr=float(np.mean([t.risk_reward for t in closed])),
        max_drawdown=dd_amount,
        max_drawdown_percent=dd_percent,
        sharpe_ratio=sharpe_ratio([t.pnl_percent for t in closed], annualization),
        final_balance=final_balance
    )
