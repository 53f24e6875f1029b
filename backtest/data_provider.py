"""
Historical Data Provider - Fetch klines from an exchange via ccxt, or generate them offline
"""
import math
import random
from typing import Optional

import ccxt
import pandas as pd

from backtest.domain.candles import CANDLE_COLUMNS, timeframe_to_ms
from backtest.domain.errors import DataSourceError
from backtest.domain.interfaces import ICandleSource
from config.settings import settings as config
from logger_utils import get_logger

logger = get_logger("data")


def _to_frame(rows) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
    df.set_index('timestamp', inplace=True)
    return df


class HistoricalDataProvider(ICandleSource):
    """Fetch historical kline data from exchange"""

    def __init__(self, exchange_id: Optional[str] = None, exchange=None):
        """
        Args:
            exchange_id: ccxt exchange id (defaults to config.DATA_EXCHANGE)
            exchange: pre-built ccxt exchange instance
        """
        self.exchange_id = exchange_id or config.DATA_EXCHANGE
        if exchange is not None:
            self.exchange = exchange
        else:
            exchange_cls = getattr(ccxt, self.exchange_id, None)
            if exchange_cls is None:
                raise DataSourceError(f"不支持的交易所: {self.exchange_id}")
            self.exchange = exchange_cls({"enableRateLimit": True})

    def fetch_klines(self, symbol: str, timeframe: str, start_ts: int, end_ts: int) -> pd.DataFrame:
        """
        Fetch historical klines

        Args:
            symbol: Trading pair (e.g., BTC/USDT)
            timeframe: Timeframe (e.g., 15m, 1h)
            start_ts: Start timestamp (ms)
            end_ts: End timestamp (ms)

        Returns:
            DataFrame with OHLCV data
        """
        all_klines = []
        current_start = start_ts

        while current_start < end_ts:
            try:
                klines = self.exchange.fetch_ohlcv(
                    symbol,
                    timeframe,
                    since=current_start,
                    limit=config.FETCH_LIMIT
                )
            except ccxt.BaseError as e:
                logger.error(f"拉取K线失败: {symbol} {timeframe}", exc_info=True)
                raise DataSourceError(
                    f"拉取K线失败: {e}",
                    {'exchange': self.exchange_id, 'symbol': symbol, 'timeframe': timeframe}
                ) from e

            if not klines:
                break

            all_klines.extend(klines)
            current_start = klines[-1][0] + 1

            if len(klines) < config.FETCH_LIMIT:
                break

        if not all_klines:
            return pd.DataFrame(columns=CANDLE_COLUMNS[1:])

        df = _to_frame(all_klines)
        logger.info(f"从 {self.exchange_id} 拉取 {len(df)} 根K线: {symbol} {timeframe}")
        return df[df.index <= pd.to_datetime(end_ts, unit='ms')]


class SyntheticDataProvider(ICandleSource):
    """
    随机游走K线，用于离线回测和测试

    相同 seed 与参数生成完全相同的数据。
    """

    def __init__(self, seed: Optional[int] = None, start_price: float = 100.0, volatility: float = 0.01):
        self.seed = seed
        self.start_price = start_price
        self.volatility = volatility

    def fetch_klines(self, symbol: str, timeframe: str, start_ts: int, end_ts: int) -> pd.DataFrame:
        rng = random.Random(self.seed)
        interval = timeframe_to_ms(timeframe)
        price = self.start_price
        rows = []

        ts = start_ts
        while ts <= end_ts:
            open_price = price
            close_price = max(open_price * math.exp(rng.gauss(0, self.volatility)), 1e-8)
            high = max(open_price, close_price) * (1 + abs(rng.gauss(0, self.volatility / 2)))
            low = min(open_price, close_price) * (1 - min(abs(rng.gauss(0, self.volatility / 2)), 0.5))
            volume = rng.uniform(10, 1000)
            rows.append((ts, open_price, high, low, close_price, volume))
            price = close_price
            ts += interval

        return _to_frame(rows)
