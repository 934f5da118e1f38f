"""
Data models for the SMC backtest and signal engine
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple

from .errors import SimulationInvariantError


class Bias(str, Enum):
    BULLISH = 'BULLISH'
    BEARISH = 'BEARISH'
    NEUTRAL = 'NEUTRAL'


class Direction(str, Enum):
    BUY = 'BUY'
    SELL = 'SELL'

    @classmethod
    def from_bias(cls, bias: Bias) -> Optional['Direction']:
        if bias == Bias.BULLISH:
            return cls.BUY
        if bias == Bias.BEARISH:
            return cls.SELL
        return None


class SignalStatus(str, Enum):
    PENDING = 'PENDING'
    TAKEN = 'TAKEN'
    REJECTED = 'REJECTED'
    EXPIRED = 'EXPIRED'


class ExitReason(str, Enum):
    SL = 'SL'
    TP = 'TP'
    EXPIRY = 'EXPIRY'
    MANUAL = 'MANUAL'


@dataclass(frozen=True)
class Candle:
    """Single OHLCV candle"""
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: str = ''
    timeframe: str = ''

    @classmethod
    def from_binance_kline(cls, kline_data: List, symbol: str = '', timeframe: str = '') -> 'Candle':
        """Create Candle from Binance kline data"""
        return cls(
            time=datetime.fromtimestamp(kline_data[0] / 1000, tz=timezone.utc),
            open=float(kline_data[1]),
            high=float(kline_data[2]),
            low=float(kline_data[3]),
            close=float(kline_data[4]),
            volume=float(kline_data[5]),
            symbol=symbol,
            timeframe=timeframe
        )


@dataclass
class SwingPoint:
    """Fractal pivot (swing high/low)"""
    type: str  # 'HIGH' or 'LOW'
    price: float
    time: datetime
    index: int


@dataclass
class OrderBlock:
    """Order Block structure"""
    type: str  # 'BULLISH' or 'BEARISH'
    high: float
    low: float
    time: datetime
    index: int
    score: float
    mitigated: bool = False
    used: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        """Identity that survives re-detection: (type, epoch ms)"""
        return (self.type, int(self.time.timestamp() * 1000))

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def midpoint(self) -> float:
        return (self.high + self.low) / 2


@dataclass
class FairValueGap:
    """Fair Value Gap structure"""
    type: str  # 'BULLISH' or 'BEARISH'
    top: float
    bottom: float
    time: datetime
    index: int
    filled: bool = False

    @property
    def size(self) -> float:
        return self.top - self.bottom


@dataclass
class LiquidityZone:
    """Cluster of swing points holding resting stops"""
    type: str  # 'HIGH' (buy-side) or 'LOW' (sell-side)
    price: float
    time: datetime  # time of the latest touch
    index: int = -1
    touches: int = 1
    swept: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.type, int(self.time.timestamp() * 1000))


@dataclass
class LiquiditySweep:
    """Wick through a liquidity level followed by a close back inside"""
    zone: LiquidityZone
    time: datetime

    @property
    def bias(self) -> Bias:
        # Sell-side taken out means a bullish reversal
        return Bias.BULLISH if self.zone.type == 'LOW' else Bias.BEARISH


@dataclass
class BreakOfStructure:
    type: str  # 'BULLISH' or 'BEARISH'
    level: float
    time: datetime  # candle that closed beyond the level
    swing_time: datetime  # swing point that was broken

    @property
    def key(self) -> Tuple[str, int]:
        return (self.type, int(self.swing_time.timestamp() * 1000))


@dataclass
class PremiumDiscount:
    """Premium/discount split of the current dealing range"""
    swing_high: float
    swing_low: float

    @property
    def equilibrium(self) -> float:
        return self.swing_low + (self.swing_high - self.swing_low) * 0.5

    def level(self, ratio: float) -> float:
        return self.swing_low + (self.swing_high - self.swing_low) * ratio

    @property
    def fib_618(self) -> float:
        return self.level(0.618)

    @property
    def fib_786(self) -> float:
        return self.level(0.786)

    def in_discount(self, price: float) -> bool:
        return self.swing_low <= price < self.equilibrium

    def in_premium(self, price: float) -> bool:
        return self.equilibrium < price <= self.swing_high

    def in_ote(self, price: float, direction: 'Direction') -> bool:
        """Optimal trade entry: 61.8-78.6% retracement of the range"""
        if direction == Direction.BUY:
            return self.level(1 - 0.786) <= price <= self.level(1 - 0.618)
        return self.fib_618 <= price <= self.fib_786


@dataclass
class Signal:
    """Trading signal produced by the signal generator"""
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    created_at: datetime
    htf_bias: Bias
    strategy: str
    reason: str = ''
    confidence: float = 0.0
    lot_size: float = 0.0
    status: SignalStatus = SignalStatus.PENDING
    source_key: Optional[Tuple[str, int]] = None
    resolved_at: Optional[datetime] = None

    def _transition(self, status: SignalStatus, when: datetime, reason: Optional[str] = None):
        if self.status != SignalStatus.PENDING:
            raise SimulationInvariantError(f"Signal already {self.status.value}, cannot move to {status.value}")
        self.status = status
        self.resolved_at = when
        if reason:
            self.reason = f"{self.reason}; {reason}" if self.reason else reason

    def take(self, when: datetime):
        self._transition(SignalStatus.TAKEN, when)

    def reject(self, when: datetime, reason: str):
        self._transition(SignalStatus.REJECTED, when, reason)

    def expire(self, when: datetime):
        self._transition(SignalStatus.EXPIRED, when, 'validity window elapsed')

    @property
    def risk(self) -> float:
        return abs(self.entry_price - self.stop_loss)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and persistence"""
        return {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'lot_size': self.lot_size,
            'confidence': self.confidence,
            'htf_bias': self.htf_bias.value,
            'strategy': self.strategy,
            'reason': self.reason,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None
        }


@dataclass
class Trade:
    """Simulated or live trade, closed exactly once"""
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    lot_size: float
    entry_time: datetime
    balance_before: float
    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    exit_reason: Optional[ExitReason] = None

    @property
    def is_open(self) -> bool:
        return self.exit_reason is None

    @property
    def is_winner(self) -> bool:
        return self.pnl > 0

    def close(self, exit_price: float, exit_time: datetime, reason: ExitReason, pnl: float):
        """Single terminal write"""
        if not self.is_open:
            raise SimulationInvariantError(f"Trade opened at {self.entry_time} is already closed")
        self.exit_price = exit_price
        self.exit_time = exit_time
        self.exit_reason = reason
        self.pnl = pnl
        self.pnl_percent = pnl / self.balance_before * 100 if self.balance_before else 0.0

    @property
    def risk_reward(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / risk

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'lot_size': self.lot_size,
            'entry_time': self.entry_time.isoformat(),
            'exit_time': self.exit_time.isoformat() if self.exit_time else None,
            'exit_price': self.exit_price,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'is_winner': self.is_winner,
            'exit_reason': self.exit_reason.value if self.exit_reason else None,
            'balance_before': self.balance_before
        }


@dataclass
class EquityPoint:
    time: datetime
    equity: float


@dataclass
class DrawdownPoint:
    time: datetime
    drawdown_percent: float


@dataclass
class BacktestMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_rr: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0
    final_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BacktestResult:
    """Closed trades plus everything derived from them"""
    symbol: str
    strategy: str
    initial_balance: float
    trades: List[Trade] = field(default_factory=list)
    signals: List[Signal] = field(default_factory=list)
    metrics: BacktestMetrics = field(default_factory=BacktestMetrics)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    drawdown_curve: List[DrawdownPoint] = field(default_factory=list)
    candles_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'strategy': self.strategy,
            'initial_balance': self.initial_balance,
            'metrics': self.metrics.to_dict(),
            'trades': [t.to_dict() for t in self.trades],
            'signals': [s.to_dict() for s in self.signals],
            'equity_curve': [{'time': p.time.isoformat(), 'equity': p.equity} for p in self.equity_curve],
            'drawdown_curve': [
                {'time': p.time.isoformat(), 'drawdown_percent': p.drawdown_percent}
                for p in self.drawdown_curve
            ],
            'candles_processed': self.candles_processed
        }
