"""
指标计算模块 - 收益序列上的统计函数

所有函数在退化输入（空序列、零波动、零分母）上返回 0，不返回 NaN/Inf。
"""
import math
from typing import List, Sequence, Tuple

import numpy as np

MS_PER_YEAR = 365 * 24 * 60 * 60 * 1000
DEFAULT_PERIODS_PER_YEAR = 252


class MetricsCalculator:
    """回测指标计算器"""

    @staticmethod
    def safe(value: float) -> float:
        """非有限值归零"""
        value = float(value)
        return value if math.isfinite(value) else 0.0

    @staticmethod
    def period_returns(equity_curve: Sequence[float]) -> np.ndarray:
        """相邻权益点的收益率序列"""
        if len(equity_curve) < 2:
            return np.array([], dtype=float)

        equity = np.asarray(equity_curve, dtype=float)
        previous = equity[:-1]
        with np.errstate(divide='ignore', invalid='ignore'):
            returns = np.where(previous > 0, np.diff(equity) / previous, 0.0)
        return np.nan_to_num(returns, nan=0.0, posinf=0.0, neginf=0.0)

    @staticmethod
    def periods_per_year(timestamps: Sequence[int]) -> float:
        """按K线间隔中位数推算年化周期数"""
        if len(timestamps) < 2:
            return float(DEFAULT_PERIODS_PER_YEAR)
        deltas = np.diff(np.asarray(timestamps, dtype=float))
        deltas = deltas[deltas > 0]
        if len(deltas) == 0:
            return float(DEFAULT_PERIODS_PER_YEAR)
        return MS_PER_YEAR / float(np.median(deltas))

    @staticmethod
    def volatility(returns: np.ndarray, periods_per_year: float) -> float:
        """总体标准差年化"""
        if len(returns) == 0:
            return 0.0
        return MetricsCalculator.safe(np.std(returns) * math.sqrt(periods_per_year))

    @staticmethod
    def sharpe(returns: np.ndarray, periods_per_year: float) -> float:
        """夏普比率（无风险利率为0）"""
        if len(returns) == 0:
            return 0.0

        std_return = float(np.std(returns))
        if std_return == 0:
            return 0.0

        return MetricsCalculator.safe(float(np.mean(returns)) / std_return * math.sqrt(periods_per_year))

    @staticmethod
    def downside_deviation(returns: np.ndarray) -> float:
        """下行偏差，仅负收益参与"""
        negative_returns = returns[returns < 0]
        if len(negative_returns) == 0:
            return 0.0
        return MetricsCalculator.safe(math.sqrt(float(np.mean(negative_returns ** 2))))

    @staticmethod
    def sortino(returns: np.ndarray, periods_per_year: float) -> float:
        """索提诺比率（仅考虑下行波动）"""
        if len(returns) == 0:
            return 0.0

        downside = MetricsCalculator.downside_deviation(returns)
        if downside == 0:
            return 0.0

        return MetricsCalculator.safe(float(np.mean(returns)) / downside * math.sqrt(periods_per_year))

    @staticmethod
    def _standardized(returns: np.ndarray) -> np.ndarray:
        if len(returns) < 2:
            return np.array([], dtype=float)
        std = float(np.std(returns))
        if std == 0:
            return np.array([], dtype=float)
        return (returns - np.mean(returns)) / std

    @staticmethod
    def skewness(returns: np.ndarray) -> float:
        """三阶标准矩"""
        z = MetricsCalculator._standardized(returns)
        if len(z) == 0:
            return 0.0
        return MetricsCalculator.safe(np.mean(z ** 3))

    @staticmethod
    def kurtosis(returns: np.ndarray) -> float:
        """超额峰度（四阶标准矩 - 3）"""
        z = MetricsCalculator._standardized(returns)
        if len(z) == 0:
            return 0.0
        return MetricsCalculator.safe(np.mean(z ** 4) - 3)

    @staticmethod
    def value_at_risk(returns: np.ndarray, confidence: float = 0.95) -> Tuple[float, float]:
        """
        历史模拟法 VaR / CVaR

        Returns:
            (var, cvar)，均为非负的损失幅度，且 cvar >= var
        """
        if len(returns) == 0:
            return 0.0, 0.0

        ordered = np.sort(returns)
        index = min(int(math.floor((1 - confidence) * len(ordered))), len(ordered) - 1)
        threshold = float(ordered[index])
        tail = ordered[ordered <= threshold]

        var = max(0.0, -threshold)
        cvar = max(0.0, -float(np.mean(tail))) if len(tail) else var
        return MetricsCalculator.safe(var), MetricsCalculator.safe(max(cvar, var))

    @staticmethod
    def ulcer_index(drawdown_percents: Sequence[float]) -> float:
        """溃疡指数 sqrt(mean(dd%^2))"""
        if len(drawdown_percents) == 0:
            return 0.0
        dd = np.asarray(drawdown_percents, dtype=float)
        return MetricsCalculator.safe(math.sqrt(float(np.mean(dd ** 2))))

    @staticmethod
    def max_drawdown(equity_curve: Sequence[float]) -> float:
        """最大回撤（比例）"""
        if len(equity_curve) < 2:
            return 0.0

        equity_array = np.asarray(equity_curve, dtype=float)
        running_max = np.maximum.accumulate(equity_array)
        with np.errstate(divide='ignore', invalid='ignore'):
            drawdown = np.where(running_max > 0, (running_max - equity_array) / running_max, 0.0)

        return MetricsCalculator.safe(np.max(drawdown))

    @staticmethod
    def max_drawdown_duration(drawdowns: Sequence[float]) -> int:
        """连续处于回撤状态的最长周期数"""
        longest = current = 0
        for dd in drawdowns:
            if dd > 0:
                current += 1
                longest = max(longest, current)
            else:
                current = 0
        return longest

    @staticmethod
    def gain_to_pain(returns: np.ndarray) -> float:
        """正收益之和 / 负收益之和的绝对值"""
        pain = abs(float(np.sum(returns[returns < 0]))) if len(returns) else 0.0
        if pain == 0:
            return 0.0
        return MetricsCalculator.safe(float(np.sum(returns[returns > 0])) / pain)

    @staticmethod
    def streaks(pnls: Sequence[float]) -> Tuple[int, int]:
        """最大连胜 / 最大连亏（盈亏为0计为亏损）"""
        max_wins = max_losses = wins = losses = 0
        for pnl in pnls:
            if pnl > 0:
                wins += 1
                losses = 0
                max_wins = max(max_wins, wins)
            else:
                losses += 1
                wins = 0
                max_losses = max(max_losses, losses)
        return max_wins, max_losses

    @staticmethod
    def distribution(values: Sequence[float]) -> dict:
        """分布统计：极值、中位数、均值、标准差、分位数"""
        if len(values) == 0:
            return {
                'min': 0.0, 'max': 0.0, 'median': 0.0, 'mean': 0.0, 'std': 0.0,
                'p10': 0.0, 'p25': 0.0, 'p75': 0.0, 'p90': 0.0,
            }
        arr = np.asarray(values, dtype=float)
        p10, p25, p75, p90 = np.percentile(arr, [10, 25, 75, 90])
        return {
            'min': float(arr.min()),
            'max': float(arr.max()),
            'median': float(np.median(arr)),
            'mean': float(arr.mean()),
            'std': float(arr.std()),
            'p10': float(p10),
            'p25': float(p25),
            'p75': float(p75),
            'p90': float(p90),
        }

    @staticmethod
    def coefficient_of_variation(values: Sequence[float]) -> float:
        """变异系数 std/|mean|；均值为0且有波动时返回 inf 由调用方处理"""
        if len(values) == 0:
            return 0.0
        arr = np.asarray(values, dtype=float)
        std = float(arr.std())
        if std == 0:
            return 0.0
        mean = abs(float(arr.mean()))
        if mean == 0:
            return math.inf
        return std / mean

    @staticmethod
    def stability_score(values: List[float]) -> float:
        """1 / (1 + CV)，取值 [0, 1]"""
        cv = MetricsCalculator.coefficient_of_variation(values)
        if not math.isfinite(cv):
            return 0.0
        return 1.0 / (1.0 + cv)
