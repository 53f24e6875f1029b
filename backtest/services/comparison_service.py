"""
策略对比服务 - 多策略同数据回测、综合评分排名、收益相关性与买入持有基准
"""
from typing import Dict, List, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from backtest.domain.candles import ensure_candles
from backtest.domain.errors import ConfigError
from backtest.domain.models import (
    BacktestResult, BenchmarkComparison, Candle, StrategyComparison, StrategyPerformance,
)
from backtest.optimization.evaluator import StrategyRef, evaluate_parameters
from backtest.services.metrics_calculator import MetricsCalculator
from config.validator import BacktestConfig, Objective
from logger_utils import get_logger

logger = get_logger("comparison")

# 综合评分权重，回撤为惩罚项
SCORE_WEIGHTS = {
    'return': 0.3,
    'sharpe': 0.25,
    'win_rate': 0.15,
    'drawdown': 0.2,
    'profit_factor': 0.1,
}

# 策略名 -> 策略 或 (策略, 参数)
StrategyEntry = Union[StrategyRef, Tuple[StrategyRef, Dict[str, float]]]


def _normalize(value: float, values: Sequence[float]) -> float:
    """min-max 归一化，全部相同时取0.5"""
    low, high = min(values), max(values)
    if high == low:
        return 0.5
    return (value - low) / (high - low)


def _pearson(x: np.ndarray, y: np.ndarray) -> float:
    n = min(len(x), len(y))
    if n < 2:
        return 0.0
    x, y = x[:n], y[:n]
    if x.std() == 0 or y.std() == 0:
        return 0.0
    return MetricsCalculator.safe(np.corrcoef(x, y)[0, 1])


class StrategyComparator:
    """策略对比器"""

    def __init__(self, config: BacktestConfig):
        self.config = config

    def compare(
        self,
        candles: Union[Sequence[Candle], pd.DataFrame],
        strategies: Mapping[str, StrategyEntry]
    ) -> StrategyComparison:
        """
        对比多个策略

        Args:
            candles: 历史K线（所有策略共用）
            strategies: 策略名 -> 策略引用，或 (策略引用, 参数)

        Returns:
            StrategyComparison（rank 从1开始，1为最优）
        """
        candles = ensure_candles(candles)
        performances: List[StrategyPerformance] = []

        for name, entry in strategies.items():
            strategy_ref, params = entry if isinstance(entry, tuple) else (entry, {})
            try:
                evaluation = evaluate_parameters(candles, strategy_ref, self.config, Objective.COMPOSITE, params)
            except ConfigError as e:
                logger.warning(f"策略 {name} 回测失败，跳过: {e}")
                continue
            performances.append(StrategyPerformance(
                name=name,
                parameters=dict(params),
                result=evaluation.result,
                metrics=evaluation.metrics,
            ))

        self._rank(performances)
        comparison = StrategyComparison(
            strategies=performances,
            correlation=self.correlation_matrix([p.result for p in performances]),
        )
        for p in comparison.ranking:
            logger.info(f"{p.rank}. {p.name}: 综合得分 {p.score:.3f}")
        return comparison

    @staticmethod
    def _rank(performances: List[StrategyPerformance]):
        if not performances:
            return
        columns = {
            'return': [p.metrics.total_return for p in performances],
            'sharpe': [p.metrics.sharpe_ratio for p in performances],
            'win_rate': [p.metrics.win_rate for p in performances],
            'drawdown': [p.metrics.max_drawdown for p in performances],
            'profit_factor': [p.metrics.profit_factor for p in performances],
        }
        for idx, p in enumerate(performances):
            components = {key: _normalize(values[idx], values) for key, values in columns.items()}
            components['drawdown'] = 1 - components['drawdown']
            p.score_components = components
            p.score = sum(components[key] * weight for key, weight in SCORE_WEIGHTS.items())

        ordered = sorted(range(len(performances)), key=lambda i: (-performances[i].score, performances[i].name))
        for rank, idx in enumerate(ordered, 1):
            performances[idx].rank = rank

    @staticmethod
    def correlation_matrix(results: Sequence[BacktestResult]) -> List[List[float]]:
        """按权益曲线逐期收益计算的 Pearson 相关矩阵"""
        returns = [
            MetricsCalculator.period_returns([p.equity for p in r.equity_curve])
            for r in results
        ]
        n = len(returns)
        matrix = [[0.0] * n for _ in range(n)]
        for i in range(n):
            for j in range(n):
                matrix[i][j] = 1.0 if i == j else _pearson(returns[i], returns[j])
        return matrix

    @staticmethod
    def benchmark(
        candles: Union[Sequence[Candle], pd.DataFrame],
        result: BacktestResult
    ) -> BenchmarkComparison:
        """与买入持有对比，基准收益取首根与末根K线收盘价"""
        candles = ensure_candles(candles)
        if not candles:
            return BenchmarkComparison(
                strategy_return=result.total_return,
                benchmark_return=0.0,
                excess_return=result.total_return,
                benchmark_max_drawdown=0.0,
                outperformed=result.total_return > 0,
            )

        start_price = candles[0].close
        end_price = candles[-1].close
        benchmark_return = (end_price - start_price) / start_price
        excess = result.total_return - benchmark_return

        return BenchmarkComparison(
            strategy_return=result.total_return,
            benchmark_return=benchmark_return,
            excess_return=excess,
            benchmark_max_drawdown=MetricsCalculator.max_drawdown([c.close for c in candles]),
            outperformed=excess > 0,
            start_price=start_price,
            end_price=end_price,
        )
