"""
Data loading and preprocessing utilities
"""
import logging
import re
import pandas as pd
import numpy as np
from pathlib import Path
from typing import List, Optional

from .models import Candle

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']

_EPOCH = pd.Timestamp(0, tz='UTC')
_UNIT_MS = {'m': 60_000, 'h': 3_600_000, 'd': 86_400_000, 'w': 604_800_000}


def ensure_timestamp(df: pd.DataFrame) -> pd.DataFrame:
    """Ensure timestamp column is tz-aware UTC datetime"""
    if pd.api.types.is_numeric_dtype(df['timestamp']):
        # Unix milliseconds
        df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
    else:
        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)

    return df.sort_values('timestamp', kind='stable').reset_index(drop=True)


def dedupe_candles(df: pd.DataFrame) -> pd.DataFrame:
    """Drop duplicate timestamps, the last row for a timestamp wins"""
    before = len(df)
    df = df.drop_duplicates(subset='timestamp', keep='last').reset_index(drop=True)
    if len(df) != before:
        logger.debug(f"Dropped {before - len(df)} duplicate candles")
    return df


def normalize_candles(df: pd.DataFrame) -> pd.DataFrame:
    """Lowercase columns, UTC timestamps, ascending order, no duplicates"""
    df = df.copy()
    df.columns = [c.lower() for c in df.columns]
    if 'time' in df.columns and 'timestamp' not in df.columns:
        df = df.rename(columns={'time': 'timestamp'})
    if 'volume' not in df.columns:
        df['volume'] = 0.0
    df = ensure_timestamp(df)
    return dedupe_candles(df)[CANDLE_COLUMNS]


def to_epoch_ms(timestamps: pd.Series) -> np.ndarray:
    """Integer epoch milliseconds, used for every timestamp lookup"""
    ts = pd.to_datetime(timestamps, utc=True)
    return ((ts - _EPOCH) // pd.Timedelta(milliseconds=1)).to_numpy(dtype=np.int64)


def timeframe_to_ms(timeframe: str) -> Optional[int]:
    """Parse '15m', '4h', '1d' or 'M15', 'H4', 'D1' style timeframes"""
    if not timeframe:
        return None
    tf = timeframe.strip()
    match = re.fullmatch(r'(\d+)([mhdwMHDW])', tf)
    if match:
        return int(match.group(1)) * _UNIT_MS[match.group(2).lower()]
    match = re.fullmatch(r'([MHDW])(\d+)', tf.upper())
    if match:
        return int(match.group(2)) * _UNIT_MS[match.group(1).lower()]
    return None


def infer_interval_ms(df: pd.DataFrame) -> int:
    """Most common spacing between consecutive candles"""
    if len(df) < 2:
        return 0
    diffs = np.diff(to_epoch_ms(df['timestamp']))
    diffs = diffs[diffs > 0]
    if len(diffs) == 0:
        return 0
    values, counts = np.unique(diffs, return_counts=True)
    return int(values[np.argmax(counts)])


def resolve_interval_ms(df: pd.DataFrame, timeframe: Optional[str]) -> int:
    return timeframe_to_ms(timeframe) or infer_interval_ms(df)


def closed_until(epoch_ms: np.ndarray, interval_ms: int, cutoff_ms: int) -> int:
    """
    Number of leading candles fully closed at cutoff_ms

    A candle opened at t covers [t, t + interval); it is usable once
    t + interval <= cutoff_ms.
    """
    return int(np.searchsorted(epoch_ms, cutoff_ms - interval_ms, side='right'))


def candles_to_dataframe(candles: List[Candle]) -> pd.DataFrame:
    """Convert Candle list to DataFrame format for SMC functions"""
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    df = pd.DataFrame([{
        'timestamp': c.time,
        'open': c.open,
        'high': c.high,
        'low': c.low,
        'close': c.close,
        'volume': c.volume
    } for c in candles])
    return normalize_candles(df)


def dataframe_to_candles(df: pd.DataFrame, symbol: str = '', timeframe: str = '') -> List[Candle]:
    return [
        Candle(
            time=row.timestamp.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            symbol=symbol,
            timeframe=timeframe
        )
        for row in df.itertuples(index=False)
    ]


def load_csv(path: str) -> pd.DataFrame:
    """
    Load CSV file and validate required columns

    Args:
        path: Path to CSV file

    Returns:
        Cleaned and validated DataFrame

    Raises:
        ValueError: If required columns are missing
        FileNotFoundError: If file doesn't exist
    """
    if not Path(path).exists():
        raise FileNotFoundError(f"CSV file not found: {path}")

    df = pd.read_csv(path)
    df.columns = [c.lower() for c in df.columns]
    if 'time' in df.columns and 'timestamp' not in df.columns:
        df = df.rename(columns={'time': 'timestamp'})

    required_columns = {'timestamp', 'open', 'high', 'low', 'close'}
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise ValueError(f'CSV must contain columns: {required_columns}. Missing: {missing_columns}')

    try:
        df = normalize_candles(df)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Could not parse timestamp column: {e}")

    df = df.dropna(subset=['timestamp', 'open', 'high', 'low', 'close']).reset_index(drop=True)
    if df.empty:
        raise ValueError("DataFrame is empty after cleaning")

    for col in ['open', 'high', 'low', 'close']:
        if (df[col] <= 0).any():
            logger.warning(f"Found non-positive values in {col} column of {path}")

    invalid_ohlc = (
        (df['high'] < df['low']) |
        (df['high'] < df['open']) |
        (df['high'] < df['close']) |
        (df['low'] > df['open']) |
        (df['low'] > df['close'])
    )
    if invalid_ohlc.any():
        logger.warning(f"Removing {int(invalid_ohlc.sum())} rows with invalid OHLC data from {path}")
        df = df[~invalid_ohlc].reset_index(drop=True)

    return df


def validate_timeframe_alignment(*frames: pd.DataFrame) -> bool:
    """Check that all series overlap in time"""
    if any(df.empty for df in frames):
        return False

    overlap_start = max(df['timestamp'].iloc[0] for df in frames)
    overlap_end = min(df['timestamp'].iloc[-1] for df in frames)

    if overlap_start >= overlap_end:
        logger.warning("No time overlap between timeframe series")
        return False

    return True


def load_ticks(path: str) -> pd.DataFrame:
    """Load a tick CSV with timestamp, bid and ask columns"""
    if not Path(path).exists():
        raise FileNotFoundError(f"Tick file not found: {path}")

    df = pd.read_csv(path)
    df.columns = [c.lower() for c in df.columns]
    if 'time' in df.columns and 'timestamp' not in df.columns:
        df = df.rename(columns={'time': 'timestamp'})

    missing = {'timestamp', 'bid', 'ask'} - set(df.columns)
    if missing:
        raise ValueError(f"Tick CSV missing columns: {missing}")

    df = ensure_timestamp(df[['timestamp', 'bid', 'ask']].copy())
    return df.dropna().reset_index(drop=True)
