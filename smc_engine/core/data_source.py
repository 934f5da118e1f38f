"""
Candle sources and execution sinks for backtesting and live use
"""
import asyncio
import logging
import itertools
import aiohttp
import pandas as pd
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from aiolimiter import AsyncLimiter

from ..data_loader import (
    CANDLE_COLUMNS, load_csv, load_ticks, normalize_candles,
    candles_to_dataframe, timeframe_to_ms
)
from ..models import Candle, Direction

logger = logging.getLogger(__name__)

BINANCE_INTERVALS = {
    timeframe_to_ms(tf): tf
    for tf in ('1m', '3m', '5m', '15m', '30m', '1h', '2h', '4h', '6h', '8h', '12h', '1d', '1w')
}


def _filter_range(df: pd.DataFrame, start: Optional[datetime], end: Optional[datetime]) -> pd.DataFrame:
    if start is not None:
        df = df[df['timestamp'] >= pd.Timestamp(start)]
    if end is not None:
        df = df[df['timestamp'] <= pd.Timestamp(end)]
    return df.reset_index(drop=True)


class CandleSource(ABC):
    """Abstract source of historical candles"""

    @abstractmethod
    async def get_historical_candles(self, symbol: str, timeframe: str,
                                     start: Optional[datetime] = None,
                                     end: Optional[datetime] = None) -> pd.DataFrame:
        """Candles for symbol/timeframe in [start, end], ascending"""
        pass

    async def get_ticks(self, symbol: str, start: Optional[datetime] = None,
                        end: Optional[datetime] = None) -> Optional[pd.DataFrame]:
        """Tick history (timestamp, bid, ask), None when the source has none"""
        return None

    async def close(self):
        pass


class DataFrameCandleSource(CandleSource):
    """Candle source over in-memory DataFrames keyed by '<symbol>_<timeframe>'"""

    def __init__(self, frames: Dict[str, pd.DataFrame], ticks: Optional[Dict[str, pd.DataFrame]] = None):
        self.frames = {key.upper(): normalize_candles(df) for key, df in frames.items()}
        self.ticks = {key.upper(): df for key, df in (ticks or {}).items()}

    @classmethod
    def from_csv(cls, symbol: str, paths: Dict[str, str], ticks_path: Optional[str] = None) -> 'DataFrameCandleSource':
        """Build from one CSV per timeframe"""
        frames = {}
        for timeframe, path in paths.items():
            frames[f"{symbol}_{timeframe}"] = load_csv(path)
            logger.info(f"Loaded {len(frames[f'{symbol}_{timeframe}'])} {timeframe} candles from {path}")
        ticks = {symbol: load_ticks(ticks_path)} if ticks_path else None
        return cls(frames, ticks)

    async def get_historical_candles(self, symbol: str, timeframe: str,
                                     start: Optional[datetime] = None,
                                     end: Optional[datetime] = None) -> pd.DataFrame:
        key = f"{symbol}_{timeframe}".upper()
        if key not in self.frames:
            raise KeyError(f"No historical data for {symbol} {timeframe}")
        return _filter_range(self.frames[key], start, end)

    async def get_ticks(self, symbol: str, start: Optional[datetime] = None,
                        end: Optional[datetime] = None) -> Optional[pd.DataFrame]:
        df = self.ticks.get(symbol.upper())
        if df is None:
            return None
        return _filter_range(df, start, end)


class BinanceCandleSource(CandleSource):
    """Historical klines from Binance futures"""

    def __init__(self, base_url: str = "https://fapi.binance.com", page_limit: int = 1500, retries: int = 3):
        self.base_url = base_url
        self.page_limit = page_limit
        self.retries = retries

        # Binance allows 1200 requests per minute
        self.limiter = AsyncLimiter(max_rate=1200, time_period=60)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _make_request(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Rate-limited GET with retries on rate limits and timeouts"""
        await self._ensure_session()
        url = f"{self.base_url}{endpoint}"

        for attempt in range(self.retries):
            async with self.limiter:
                try:
                    async with self.session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=10)) as response:
                        if response.status == 200:
                            return await response.json()
                        if response.status == 429:
                            logger.warning(f"Rate limit hit, retrying in {2 ** attempt} seconds")
                            await asyncio.sleep(2 ** attempt)
                            continue
                        logger.error(f"API error: {response.status} - {await response.text()}")
                        if attempt == self.retries - 1:
                            response.raise_for_status()
                except asyncio.TimeoutError:
                    logger.warning(f"Request timeout, attempt {attempt + 1}/{self.retries}")
                    if attempt == self.retries - 1:
                        raise
                    await asyncio.sleep(1)

        raise aiohttp.ClientError(f"Request to {endpoint} failed after {self.retries} attempts")

    @staticmethod
    def interval(timeframe: str) -> str:
        ms = timeframe_to_ms(timeframe)
        if ms not in BINANCE_INTERVALS:
            raise ValueError(f"Unsupported Binance timeframe: {timeframe}")
        return BINANCE_INTERVALS[ms]

    async def get_historical_candles(self, symbol: str, timeframe: str,
                                     start: Optional[datetime] = None,
                                     end: Optional[datetime] = None) -> pd.DataFrame:
        """Page through /fapi/v1/klines until end (or the latest candle)"""
        interval = self.interval(timeframe)
        step_ms = timeframe_to_ms(interval)
        params = {'symbol': symbol.upper(), 'interval': interval, 'limit': self.page_limit}
        end_ms = int(pd.Timestamp(end).timestamp() * 1000) if end is not None else None
        if end_ms is not None:
            params['endTime'] = end_ms

        cursor = int(pd.Timestamp(start).timestamp() * 1000) if start is not None else None
        candles: List[Candle] = []

        while True:
            if cursor is not None:
                params['startTime'] = cursor
            data = await self._make_request('/fapi/v1/klines', params)
            if not data:
                break

            candles.extend(Candle.from_binance_kline(k, symbol, timeframe) for k in data)
            if cursor is None or len(data) < self.page_limit:
                break
            cursor = int(data[-1][0]) + step_ms
            if end_ms is not None and cursor > end_ms:
                break

        logger.debug(f"Fetched {len(candles)} candles for {symbol} {timeframe}")
        if not candles:
            return pd.DataFrame(columns=CANDLE_COLUMNS)
        return _filter_range(candles_to_dataframe(candles), start, end)


@dataclass
class OrderResult:
    """Unified order result structure"""
    order_id: str
    symbol: str
    direction: Direction
    lot_size: float
    status: str  # 'FILLED' / 'REJECTED'
    timestamp: datetime
    position_id: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    tag: str = ''
    is_simulation: bool = False
    error_message: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == 'FILLED' and self.error_message is None


class ExecutionSink(ABC):
    """Where live signals are sent; failures come back in the OrderResult"""

    @abstractmethod
    async def place_order(self, symbol: str, direction: Direction, lot_size: float,
                          stop_loss: float, take_profit: float, tag: str = '') -> OrderResult:
        pass


class PaperExecutionSink(ExecutionSink):
    """Records orders without sending them anywhere"""

    def __init__(self):
        self.orders: List[OrderResult] = []
        self._ids = itertools.count(1)

    async def place_order(self, symbol: str, direction: Direction, lot_size: float,
                          stop_loss: float, take_profit: float, tag: str = '') -> OrderResult:
        order_id = f"PAPER_{next(self._ids):06d}"
        status, error = 'FILLED', None
        if lot_size <= 0:
            status, error = 'REJECTED', f"Invalid lot size: {lot_size}"

        result = OrderResult(
            order_id=order_id,
            symbol=symbol,
            direction=direction,
            lot_size=lot_size,
            status=status,
            timestamp=datetime.now(timezone.utc),
            position_id=order_id if status == 'FILLED' else None,
            stop_loss=stop_loss,
            take_profit=take_profit,
            tag=tag,
            is_simulation=True,
            error_message=error
        )
        self.orders.append(result)
        logger.info(f"Paper order {order_id}: {direction.value} {lot_size} {symbol} SL {stop_loss} TP {take_profit} [{status}]")
        return result
