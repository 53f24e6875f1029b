"""
K线文件存储 - 以CSV缓存已下载的历史数据
"""
import os
import re
from typing import Optional, Sequence

import pandas as pd

from backtest.domain.candles import CANDLE_COLUMNS
from backtest.domain.errors import DataSourceError
from backtest.domain.models import Candle
from logger_utils import get_logger

logger = get_logger("data")


class CandleFileStore:
    """按 交易对/周期/时间区间 存放CSV文件"""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def path_for(self, symbol: str, timeframe: str, start_ts: int, end_ts: int) -> str:
        safe_symbol = re.sub(r'[^A-Za-z0-9]+', '_', symbol).strip('_')
        return os.path.join(self.data_dir, f"{safe_symbol}_{timeframe}_{start_ts}_{end_ts}.csv")

    def load(self, symbol: str, timeframe: str, start_ts: int, end_ts: int) -> Optional[pd.DataFrame]:
        """
        读取缓存文件

        Returns:
            timestamp 列为毫秒整数的 DataFrame；文件不存在时返回 None

        Raises:
            DataSourceError: 文件存在但无法读取
        """
        path = self.path_for(symbol, timeframe, start_ts, end_ts)
        if not os.path.exists(path):
            return None
        try:
            df = pd.read_csv(path)
        except (OSError, ValueError) as e:
            raise DataSourceError(f"读取K线文件失败: {path}", {'path': path, 'error': str(e)}) from e

        missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
        if missing:
            raise DataSourceError(f"K线文件缺少列: {missing}", {'path': path})
        logger.debug(f"从文件加载 {len(df)} 根K线: {path}")
        return df[CANDLE_COLUMNS]

    def save(self, candles: Sequence[Candle], symbol: str, timeframe: str, start_ts: int, end_ts: int) -> str:
        """写入缓存文件，返回路径"""
        path = self.path_for(symbol, timeframe, start_ts, end_ts)
        df = pd.DataFrame(
            [(c.timestamp, c.open, c.high, c.low, c.close, c.volume) for c in candles],
            columns=CANDLE_COLUMNS
        )
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            df.to_csv(path, index=False)
        except OSError as e:
            raise DataSourceError(f"写入K线文件失败: {path}", {'path': path, 'error': str(e)}) from e
        logger.debug(f"保存 {len(df)} 根K线到文件: {path}")
        return path

    def clear(self) -> int:
        """删除全部缓存文件，返回删除数量"""
        if not os.path.isdir(self.data_dir):
            return 0
        removed = 0
        for name in os.listdir(self.data_dir):
            if name.endswith('.csv'):
                os.remove(os.path.join(self.data_dir, name))
                removed += 1
        return removed
