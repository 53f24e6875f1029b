"""
策略注册表与参考策略

策略之间没有继承关系，只需满足 update_market_data / generate_signal /
performance_metrics 三个方法；通过 STRATEGY_MAP 按名称选择。
"""
from collections import deque
from typing import Any, Dict

import numpy as np

from backtest.domain.errors import ConfigError, ErrorCode
from backtest.domain.models import Candle, Signal, SignalAction
from logger_utils import get_logger

logger = get_logger("strategies")


def _period(value, name: str) -> int:
    period = int(value)
    if period < 1:
        raise ConfigError(ErrorCode.INVALID_CONFIG, f"{name} 必须 >= 1，当前: {value}")
    return period


# ==================== 持币观望 ====================

class HoldStrategy:
    """始终观望，用作基线"""

    name = "hold"
    description = "不产生任何交易信号"

    def __init__(self):
        self.ticks = 0

    def update_market_data(self, candle: Candle) -> None:
        self.ticks += 1

    def generate_signal(self, candle: Candle, market_context: Dict[str, Any]) -> Signal:
        return Signal.hold()

    def performance_metrics(self) -> Dict[str, Any]:
        return {'name': self.name, 'ticks': self.ticks, 'signals': 0}


# ==================== EMA 均线交叉 ====================

class EMACrossStrategy:
    """EMA 均线交叉策略"""

    name = "ema_cross"
    description = "短期EMA上穿长期EMA做多，下穿做空"

    def __init__(self, short_period: int = 9, long_period: int = 21):
        self.short_period = _period(short_period, 'short_period')
        self.long_period = _period(long_period, 'long_period')
        if self.short_period >= self.long_period:
            raise ConfigError(
                ErrorCode.INVALID_CONFIG,
                f"短期周期必须小于长期周期: {self.short_period} >= {self.long_period}"
            )
        self.ema_short = None
        self.ema_long = None
        self.prev_diff = None
        self.ticks = 0
        self.signals = 0

    @staticmethod
    def _ema(previous, price: float, period: int) -> float:
        if previous is None:
            return price
        alpha = 2 / (period + 1)
        return previous + alpha * (price - previous)

    def update_market_data(self, candle: Candle) -> None:
        if self.ema_short is not None:
            self.prev_diff = self.ema_short - self.ema_long
        self.ema_short = self._ema(self.ema_short, candle.close, self.short_period)
        self.ema_long = self._ema(self.ema_long, candle.close, self.long_period)
        self.ticks += 1

    def generate_signal(self, candle: Candle, market_context: Dict[str, Any]) -> Signal:
        if self.ticks < self.long_period or self.prev_diff is None:
            return Signal.hold("预热中")

        diff = self.ema_short - self.ema_long
        strength = min(abs(diff) / self.ema_long * 50, 1.0)

        # 判断交叉
        if diff > 0 >= self.prev_diff:
            self.signals += 1
            return Signal(
                SignalAction.BUY, confidence=strength, price=candle.close,
                reason=f"EMA{self.short_period}上穿EMA{self.long_period}"
            )
        if diff < 0 <= self.prev_diff:
            self.signals += 1
            return Signal(
                SignalAction.SELL, confidence=strength, price=candle.close,
                reason=f"EMA{self.short_period}下穿EMA{self.long_period}"
            )
        return Signal.hold()

    def performance_metrics(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'ticks': self.ticks,
            'signals': self.signals,
            'ema_short': self.ema_short,
            'ema_long': self.ema_long,
        }


# ==================== 动量 ====================

class MomentumStrategy:
    """动量策略：回看周期内涨幅超过阈值做多，跌幅超过阈值做空"""

    name = "momentum"
    description = "N周期收益率突破阈值顺势开仓"

    def __init__(self, lookback: int = 10, threshold: float = 0.02):
        self.lookback = _period(lookback, 'lookback')
        self.threshold = float(threshold)
        self.closes = deque(maxlen=self.lookback + 1)
        self.signals = 0

    def update_market_data(self, candle: Candle) -> None:
        self.closes.append(candle.close)

    def generate_signal(self, candle: Candle, market_context: Dict[str, Any]) -> Signal:
        if len(self.closes) <= self.lookback:
            return Signal.hold("预热中")

        change = (self.closes[-1] - self.closes[0]) / self.closes[0]
        confidence = min(abs(change) / max(self.threshold, 1e-9), 1.0)

        if change > self.threshold:
            self.signals += 1
            return Signal(SignalAction.BUY, confidence, candle.close, reason=f"{self.lookback}周期涨幅{change:.2%}")
        if change < -self.threshold:
            self.signals += 1
            return Signal(SignalAction.SELL, confidence, candle.close, reason=f"{self.lookback}周期跌幅{change:.2%}")
        return Signal.hold()

    def performance_metrics(self) -> Dict[str, Any]:
        return {'name': self.name, 'signals': self.signals, 'lookback': self.lookback}


# ==================== 均值回归 ====================

class MeanReversionStrategy:
    """布林带均值回归：跌破下轨做多，突破上轨做空"""

    name = "mean_reversion"
    description = "价格偏离均线 num_std 个标准差后反向开仓"

    def __init__(self, period: int = 20, num_std: float = 2.0):
        self.period = _period(period, 'period')
        self.num_std = float(num_std)
        self.closes = deque(maxlen=self.period)
        self.signals = 0

    def update_market_data(self, candle: Candle) -> None:
        self.closes.append(candle.close)

    def generate_signal(self, candle: Candle, market_context: Dict[str, Any]) -> Signal:
        if len(self.closes) < self.period:
            return Signal.hold("预热中")

        arr = np.asarray(self.closes, dtype=float)
        middle = float(arr.mean())
        std = float(arr.std())
        if std == 0:
            return Signal.hold()

        upper = middle + self.num_std * std
        lower = middle - self.num_std * std
        z_score = (candle.close - middle) / std

        if candle.close < lower:
            self.signals += 1
            return Signal(
                SignalAction.BUY, min(abs(z_score) / 4, 1.0), candle.close,
                reason=f"跌破下轨 {lower:.2f}", take_profit=middle
            )
        if candle.close > upper:
            self.signals += 1
            return Signal(
                SignalAction.SELL, min(abs(z_score) / 4, 1.0), candle.close,
                reason=f"突破上轨 {upper:.2f}", take_profit=middle
            )
        return Signal.hold()

    def performance_metrics(self) -> Dict[str, Any]:
        return {'name': self.name, 'signals': self.signals, 'period': self.period}


# ==================== 策略注册表 ====================

STRATEGY_MAP: Dict[str, type] = {
    "hold": HoldStrategy,
    "ema_cross": EMACrossStrategy,
    "momentum": MomentumStrategy,
    "mean_reversion": MeanReversionStrategy,
}


def get_strategy(name: str, **params):
    """获取策略实例"""
    if name not in STRATEGY_MAP:
        raise ConfigError(ErrorCode.UNKNOWN_STRATEGY, f"未知策略: {name}", {'available': sorted(STRATEGY_MAP)})
    try:
        return STRATEGY_MAP[name](**params)
    except TypeError as e:
        raise ConfigError(ErrorCode.INVALID_CONFIG, f"策略 {name} 参数无效: {e}", {'parameters': params}) from e
