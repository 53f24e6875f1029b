"""
滚动验证服务 - 训练窗口内优化参数，紧随其后的测试窗口验证
"""
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from backtest.domain.candles import ensure_candles
from backtest.domain.errors import ConfigError, DataSourceError
from backtest.domain.models import (
    Candle, OptimizationStatus, RobustnessMetrics, StabilityMetrics, WalkForwardResult, WalkForwardSegment,
)
from backtest.optimization.evaluator import CancellationToken, StrategyRef, evaluate_parameters
from backtest.services.metrics_calculator import MetricsCalculator
from backtest.services.optimization_service import ParameterOptimizer
from config.validator import BacktestConfig, OptimizationConfig, WalkForwardConfig
from logger_utils import get_logger

logger = get_logger("walk_forward")

# (训练起点, 训练终点, 测试终点)，左闭右开的K线下标
Window = Tuple[int, int, int]


class WalkForwardValidator:
    """滚动验证器"""

    def __init__(
        self,
        config: BacktestConfig,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ):
        self.config = config
        self.cancel_token = cancel_token
        self.progress_callback = progress_callback

    @staticmethod
    def generate_windows(total: int, wf_config: WalkForwardConfig) -> List[Window]:
        """按步长切分连续窗口；数据不足一个训练+测试窗口时返回空列表"""
        train, test, step = wf_config.resolve(total)
        windows = []
        start = 0
        while start + train + test <= total:
            windows.append((start, start + train, start + train + test))
            start += step
        return windows

    def validate(
        self,
        candles: Union[Sequence[Candle], pd.DataFrame],
        strategy: StrategyRef,
        opt_config: OptimizationConfig,
        wf_config: WalkForwardConfig
    ) -> WalkForwardResult:
        """
        执行滚动验证

        Args:
            candles: 全部历史K线
            strategy: 策略注册名或工厂函数
            opt_config: 每个训练窗口使用的优化配置
            wf_config: 窗口配置

        Returns:
            WalkForwardResult
        """
        candles = ensure_candles(candles)
        windows = self.generate_windows(len(candles), wf_config)
        if not windows:
            train, test, _ = wf_config.resolve(len(candles))
            message = f"数据不足: {len(candles)} 根K线 < 训练 {train} + 测试 {test}"
            logger.warning(message)
            return WalkForwardResult(status=OptimizationStatus.INSUFFICIENT_DATA, message=message)

        logger.info(f"开始滚动验证: {len(windows)} 个窗口")
        optimizer = ParameterOptimizer(self.config, cancel_token=self.cancel_token)
        segments: List[WalkForwardSegment] = []
        status = OptimizationStatus.COMPLETED

        for idx, (start, split, end) in enumerate(windows):
            if self.cancel_token is not None and self.cancel_token.cancelled:
                status = OptimizationStatus.CANCELLED
                logger.info(f"滚动验证已取消，保留前 {len(segments)} 个窗口")
                break

            train_candles = candles[start:split]
            test_candles = candles[split:end]
            report = optimizer.optimize(train_candles, strategy, opt_config)
            best = report.best
            if best is None:
                logger.warning(f"窗口 {idx + 1} 优化无结果（{report.status.value}），跳过")
                if report.status == OptimizationStatus.CANCELLED:
                    status = OptimizationStatus.CANCELLED
                    break
                continue

            try:
                out_sample = evaluate_parameters(
                    test_candles, strategy, self.config, opt_config.objective, best.parameters
                )
            except DataSourceError:
                raise
            except ConfigError as e:
                logger.warning(f"窗口 {idx + 1} 测试集评估失败: {e}")
                continue
            except Exception as e:
                logger.error(f"窗口 {idx + 1} 测试集评估异常: {e}", exc_info=True)
                continue

            segment = WalkForwardSegment(
                index=idx,
                train_range=(train_candles[0].timestamp, train_candles[-1].timestamp),
                test_range=(test_candles[0].timestamp, test_candles[-1].timestamp),
                optimal_parameters=dict(best.parameters),
                in_sample_result=best.result,
                out_sample_result=out_sample.result,
                in_sample_score=best.score,
                out_sample_score=out_sample.score,
                degradation=self.degradation(best.score, out_sample.score, opt_config.maximize),
            )
            segments.append(segment)

            logger.info(
                f"窗口 {idx + 1}/{len(windows)}: 样本内 {segment.in_sample_score:.4f}, "
                f"样本外 {segment.out_sample_score:.4f}, 衰减 {segment.degradation:.2%}"
            )
            if self.progress_callback:
                self.progress_callback({
                    'completed': idx + 1,
                    'total': len(windows),
                    'progress': (idx + 1) / len(windows),
                    'segment': segment.index,
                    'degradation': segment.degradation,
                })

            if report.status == OptimizationStatus.CANCELLED:
                status = OptimizationStatus.CANCELLED
                break

        return self._aggregate(segments, status, wf_config.max_degradation)

    @staticmethod
    def degradation(in_sample_score: float, out_sample_score: float, maximize: bool = True) -> float:
        """
        (样本内 - 样本外) / |样本内|；为负表示样本外更好

        最小化目标下先对两个得分取反，统一按"越大越好"比较。
        """
        if in_sample_score == 0:
            return 0.0
        if not maximize:
            in_sample_score, out_sample_score = -in_sample_score, -out_sample_score
        return MetricsCalculator.safe((in_sample_score - out_sample_score) / abs(in_sample_score))

    @staticmethod
    def _parameter_stability(segments: Sequence[WalkForwardSegment]) -> float:
        """各参数跨窗口取值的平均 1/(1+CV)"""
        names = sorted({name for s in segments for name in s.optimal_parameters})
        if not names:
            return 0.0
        scores = [
            MetricsCalculator.stability_score(
                [s.optimal_parameters[name] for s in segments if name in s.optimal_parameters]
            )
            for name in names
        ]
        return sum(scores) / len(scores)

    def _aggregate(
        self,
        segments: List[WalkForwardSegment],
        status: OptimizationStatus,
        max_degradation: float
    ) -> WalkForwardResult:
        if not segments:
            return WalkForwardResult(status=status, message="没有可用的滚动窗口")

        out_returns = [s.out_sample_result.total_return for s in segments]
        out_returns_percent = [s.out_sample_result.total_return_percent for s in segments]
        out_scores = [s.out_sample_score for s in segments]
        in_scores = [s.in_sample_score for s in segments]
        degradations = [s.degradation for s in segments]
        bounded = sum(1 for d in degradations if d <= max_degradation)

        stability = StabilityMetrics(
            return_dispersion=float(np.std(out_returns_percent)),
            performance_stability=MetricsCalculator.stability_score(out_scores),
            parameter_stability=self._parameter_stability(segments),
            consistency_score=sum(1 for r in out_returns if r > 0) / len(segments),
        )
        robustness = RobustnessMetrics(
            robustness_score=bounded / len(segments),
            average_degradation=sum(degradations) / len(degradations),
            bounded_segments=bounded,
        )

        logger.info(
            f"滚动验证完成: {len(segments)} 个窗口, 一致性 {stability.consistency_score:.2%}, "
            f"稳健性 {robustness.robustness_score:.2%}"
        )
        return WalkForwardResult(
            segments=segments,
            stability=stability,
            robustness=robustness,
            status=status,
            total_out_sample_return=sum(out_returns),
            average_out_sample_return=sum(out_returns) / len(out_returns),
            average_in_sample_score=sum(in_scores) / len(in_scores),
            average_out_sample_score=sum(out_scores) / len(out_scores),
        )
