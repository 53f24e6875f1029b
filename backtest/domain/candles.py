"""
K线序列与 DataFrame 之间的转换
"""
from typing import Iterable, List, Sequence, Union

import pandas as pd

from backtest.domain.models import Candle

CANDLE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


def _to_epoch_ms(values) -> List[int]:
    """DatetimeIndex/列 -> 毫秒时间戳"""
    idx = pd.DatetimeIndex(values)
    if idx.tz is not None:
        idx = idx.tz_convert('UTC').tz_localize(None)
    return [int(v) for v in (idx - pd.Timestamp('1970-01-01')) // pd.Timedelta(milliseconds=1)]


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    """
    DataFrame -> Candle 列表

    时间既可以是 DatetimeIndex，也可以是 timestamp 列（毫秒整数或时间类型）。
    """
    if df is None or df.empty:
        return []

    if 'timestamp' in df.columns:
        ts_col = df['timestamp']
        if pd.api.types.is_numeric_dtype(ts_col):
            timestamps = [int(v) for v in ts_col]
        else:
            timestamps = _to_epoch_ms(ts_col)
    elif isinstance(df.index, pd.DatetimeIndex):
        timestamps = _to_epoch_ms(df.index)
    else:
        timestamps = [int(v) for v in df.index]

    volumes = df['volume'] if 'volume' in df.columns else [0.0] * len(df)
    return [
        Candle(ts, float(o), float(h), float(l), float(c), float(v))
        for ts, o, h, l, c, v in zip(
            timestamps, df['open'], df['high'], df['low'], df['close'], volumes
        )
    ]


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """Candle 列表 -> 以时间为索引的 DataFrame"""
    rows = [
        (c.timestamp, c.open, c.high, c.low, c.close, c.volume)
        for c in candles
    ]
    df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
    df.set_index('timestamp', inplace=True)
    return df


def ensure_candles(data: Union[pd.DataFrame, Sequence[Candle], None]) -> List[Candle]:
    if data is None:
        return []
    if isinstance(data, pd.DataFrame):
        return frame_to_candles(data)
    return list(data)


# K线周期 -> 毫秒
TIMEFRAME_MS = {
    '1m': 60_000,
    '5m': 300_000,
    '15m': 900_000,
    '30m': 1_800_000,
    '1h': 3_600_000,
    '4h': 14_400_000,
    '1d': 86_400_000,
}


def timeframe_to_ms(timeframe: str) -> int:
    """未知周期按1小时处理"""
    return TIMEFRAME_MS.get(timeframe, TIMEFRAME_MS['1h'])
