"""
pytest 配置文件

提供测试 fixtures 和配置。
"""

import pytest

from backtest.data_provider import SyntheticDataProvider
from backtest.domain.candles import frame_to_candles
from backtest.domain.models import Candle, Signal, SignalAction
from config.validator import BacktestConfig

# 2024-01-01 00:00:00 UTC
START_TS = 1_704_067_200_000
HOUR_MS = 3_600_000


def build_candles(closes, start=START_TS, interval=HOUR_MS):
    """按收盘价序列生成K线，开盘价取上一根收盘价"""
    candles = []
    previous = closes[0]
    for i, close in enumerate(closes):
        open_price = previous
        candles.append(Candle(
            timestamp=start + i * interval,
            open=open_price,
            high=max(open_price, close) * 1.001,
            low=min(open_price, close) * 0.999,
            close=close,
            volume=100.0,
        ))
        previous = close
    return candles


class ScriptedStrategy:
    """按K线序号输出预设动作的测试策略"""

    def __init__(self, actions=None, fail_at=()):
        """
        Args:
            actions: 第 i 个元素为第 i 根K线的动作（'buy'/'sell'/'hold'、Signal 或 None）
            fail_at: 在这些序号上抛出异常
        """
        self.actions = list(actions or [])
        self.fail_at = set(fail_at)
        self.index = -1
        self.contexts = []

    def update_market_data(self, candle):
        self.index += 1

    def generate_signal(self, candle, market_context):
        self.contexts.append(market_context)
        if self.index in self.fail_at:
            raise RuntimeError(f"scripted failure at {self.index}")

        action = self.actions[self.index] if self.index < len(self.actions) else None
        if action is None or action == 'hold':
            return Signal.hold()
        if isinstance(action, Signal):
            return action
        return Signal(SignalAction(action), price=candle.close)

    def performance_metrics(self):
        return {'ticks': self.index + 1}


@pytest.fixture
def make_candles():
    """K线工厂"""
    return build_candles


@pytest.fixture
def scripted():
    """脚本策略类"""
    return ScriptedStrategy


@pytest.fixture
def zero_cost_config():
    """无手续费、无滑点、全仓、关闭止损止盈、不开空"""
    return BacktestConfig(
        initial_balance=100000,
        commission=0,
        slippage=0,
        max_position_size=1.0,
        stop_loss_percent=0,
        take_profit_percent=0,
        allow_short=False,
    )


@pytest.fixture
def default_config():
    """默认费用与风控参数"""
    return BacktestConfig(initial_balance=10000)


@pytest.fixture
def synthetic_candles():
    """固定种子的300根小时K线"""
    provider = SyntheticDataProvider(seed=7, volatility=0.015)
    df = provider.fetch_klines("BTC/USDT", "1h", START_TS, START_TS + 299 * HOUR_MS)
    return frame_to_candles(df)
