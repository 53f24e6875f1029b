"""
接口抽象层

策略只需满足一个窄接口（Protocol），通过注册表组合，不依赖继承；
数据源与缓存沿用 ABC 端口，便于替换实现。
"""
from abc import ABC, abstractmethod
from typing import Optional, Any, Dict, Protocol, runtime_checkable
import pandas as pd

from backtest.domain.models import Candle, Signal


@runtime_checkable
class Strategy(Protocol):
    """回测引擎消费的策略能力接口"""

    def update_market_data(self, candle: Candle) -> None:
        """推进策略内部状态（无返回值）"""
        ...

    def generate_signal(self, candle: Candle, market_context: Dict[str, Any]) -> Signal:
        """根据累积状态与当前K线给出信号"""
        ...

    def performance_metrics(self) -> Dict[str, Any]:
        """策略自身统计（信号数量等）"""
        ...


class ICandleSource(ABC):
    """K线数据源接口"""

    @abstractmethod
    def fetch_klines(
        self,
        symbol: str,
        timeframe: str,
        start_ts: int,
        end_ts: int
    ) -> pd.DataFrame:
        """
        获取K线数据

        Args:
            symbol: 交易对
            timeframe: 时间周期
            start_ts: 开始时间（毫秒）
            end_ts: 结束时间（毫秒）

        Returns:
            列为 open/high/low/close/volume、索引为时间的 DataFrame
        """
        pass


class ICandleCache(ABC):
    """K线缓存接口"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """获取缓存"""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """设置缓存"""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """删除缓存"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """清空缓存"""
        pass
