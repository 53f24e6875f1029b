"""
优化服务 - 编排网格搜索和遗传算法，并给出过拟合/稳健性诊断
"""
import math
import random
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from backtest.domain.candles import ensure_candles
from backtest.domain.errors import ConfigError
from backtest.domain.models import (
    Candle, OptimizationReport, OptimizationResult, OptimizationStatus, ParameterVector,
)
from backtest.optimization.evaluator import (
    CancellationToken, EvaluationPool, StrategyRef, evaluate_parameters, rank_results,
)
from backtest.optimization.genetic import GeneticOptimizer
from backtest.optimization.grid_search import GridSearchOptimizer
from backtest.services.metrics_calculator import MetricsCalculator
from config.validator import BacktestConfig, GeneticConfig, Objective, OptimizationConfig, build_config
from logger_utils import get_logger

logger = get_logger("optimizer")

# 少于2根K线无法形成收益序列
MIN_CANDLES = 2

CandleInput = Union[Sequence[Candle], pd.DataFrame]


class ParameterOptimizer:
    """参数优化服务"""

    def __init__(
        self,
        config: BacktestConfig,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ):
        """
        Args:
            config: 基础回测配置（参数中与配置同名的字段会覆盖它）
            cancel_token: 协作式取消
            progress_callback: 每次评估后回调
        """
        self.config = config
        self.cancel_token = cancel_token
        self.progress_callback = progress_callback

    def optimize(
        self,
        candles: CandleInput,
        strategy: StrategyRef,
        opt_config: OptimizationConfig
    ) -> OptimizationReport:
        """
        按配置执行网格搜索或遗传算法

        Args:
            candles: 历史K线
            strategy: 策略注册名或工厂函数 factory(**params)
            opt_config: 优化配置

        Returns:
            OptimizationReport（不抛出优化错误，结果状态见 status）
        """
        started = time.monotonic()
        candles = ensure_candles(candles)
        report = OptimizationReport(
            method=opt_config.method,
            objective=opt_config.objective.value,
            direction=opt_config.direction,
            search_space_size=opt_config.search_space_size(),
        )

        if len(candles) < MIN_CANDLES:
            report.status = OptimizationStatus.INSUFFICIENT_DATA
            report.message = f"K线数量不足: {len(candles)}"
            logger.warning(report.message)
            return report

        invalid = opt_config.invalid_parameters()
        if invalid:
            report.status = OptimizationStatus.NO_VALID_COMBINATIONS
            report.search_space_size = 0
            report.message = f"参数范围无效: {', '.join(invalid)}"
            logger.warning(report.message)
            return report

        logger.info(
            f"开始参数优化: 方法={opt_config.method}, 目标={opt_config.objective.value}, "
            f"搜索空间={report.search_space_size}, 进程数={opt_config.max_workers}"
        )

        pool = EvaluationPool(
            candles, strategy, self.config, opt_config.objective,
            max_workers=opt_config.max_workers,
            cancel_token=self.cancel_token,
            time_budget_seconds=opt_config.time_budget_seconds,
            progress_callback=self.progress_callback,
        )
        with pool:
            if opt_config.method == 'genetic':
                optimizer = GeneticOptimizer(pool, opt_config.genetic, random.Random(opt_config.seed))
                results, evaluated, convergence = optimizer.optimize(opt_config.parameters, opt_config.maximize)
                report.convergence = convergence
            else:
                optimizer = GridSearchOptimizer(pool)
                results = optimizer.optimize(opt_config.parameters, opt_config.maximize)
                evaluated = list(results)

        report.results = results
        report.evaluated = evaluated
        report.elapsed_seconds = time.monotonic() - started

        if pool.stop_reason is not None:
            report.status = pool.stop_reason
        elif not results:
            report.status = OptimizationStatus.NO_VALID_COMBINATIONS
            report.message = f"全部 {pool.failed} 个参数组合评估失败"
        else:
            report.status = OptimizationStatus.COMPLETED

        report.overfitting_score = self.overfitting_score(evaluated, opt_config.maximize)
        report.robustness_score = self.robustness_score(evaluated, opt_config.maximize, opt_config.top_fraction)

        if report.best is not None:
            logger.info(
                f"优化完成: 状态={report.status.value}, 评估 {len(evaluated)} 次, "
                f"最优得分 {report.best.score:.4f}, 参数 {report.best.parameters}"
            )
        else:
            logger.warning(f"优化未产生结果: 状态={report.status.value} {report.message}")
        return report

    def grid_search(
        self,
        candles: CandleInput,
        strategy: StrategyRef,
        parameters: Dict[str, Any],
        objective: Union[Objective, str] = Objective.SHARPE,
        direction: str = 'maximize',
        **options
    ) -> OptimizationReport:
        """网格搜索便捷入口，parameters 为 name -> {min, max, step}"""
        opt_config = build_config(
            OptimizationConfig, parameters=parameters, objective=objective,
            direction=direction, method='grid', **options
        )
        return self.optimize(candles, strategy, opt_config)

    def genetic_search(
        self,
        candles: CandleInput,
        strategy: StrategyRef,
        parameters: Dict[str, Any],
        genetic: Optional[Union[GeneticConfig, Dict[str, Any]]] = None,
        objective: Union[Objective, str] = Objective.SHARPE,
        direction: str = 'maximize',
        seed: Optional[int] = None,
        **options
    ) -> OptimizationReport:
        """遗传算法便捷入口"""
        opt_config = build_config(
            OptimizationConfig, parameters=parameters, objective=objective, direction=direction,
            method='genetic', genetic=genetic or GeneticConfig(), seed=seed, **options
        )
        return self.optimize(candles, strategy, opt_config)

    # ==================== 诊断 ====================

    @staticmethod
    def _unique_scores(evaluated: Sequence[OptimizationResult]) -> Dict[tuple, float]:
        """同一参数组合在多代中出现时只计一次"""
        return {tuple(sorted(r.parameters.items())): r.score for r in evaluated}

    @classmethod
    def overfitting_score(cls, evaluated: Sequence[OptimizationResult], maximize: bool = True) -> float:
        """(最优 - 最差) / |最优|，最优为0时返回0"""
        scores = list(cls._unique_scores(evaluated).values())
        if len(scores) < 2:
            return 0.0
        best, worst = (max(scores), min(scores)) if maximize else (min(scores), max(scores))
        if best == 0:
            return 0.0
        return MetricsCalculator.safe(abs(best - worst) / abs(best))

    @classmethod
    def robustness_score(
        cls,
        evaluated: Sequence[OptimizationResult],
        maximize: bool = True,
        top_fraction: float = 0.1
    ) -> float:
        """头部（默认前10%）得分的 1/(1+CV)"""
        scores = sorted(cls._unique_scores(evaluated).values(), reverse=maximize)
        if not scores:
            return 0.0
        top = scores[:max(1, math.ceil(len(scores) * top_fraction))]
        return MetricsCalculator.stability_score(top)

    @staticmethod
    def detect_overfitting(report: OptimizationReport) -> Dict[str, Any]:
        """
        过拟合检测

        Returns:
            {'is_overfitted', 'confidence', 'indicators'}，confidence > 0.6 视为过拟合
        """
        results = rank_results(report.evaluated, report.direction == 'maximize')
        if len(results) < 2:
            return {'is_overfitted': False, 'confidence': 0.0, 'indicators': ['样本不足']}

        indicators = []
        confidence = 0.0
        best = results[0]
        scores = np.array([r.score for r in results], dtype=float)
        avg_score = float(scores.mean())
        score_std = float(scores.std())

        # 1. 最优结果显著好于其他组合
        if score_std > 0 and abs(best.score - avg_score) / score_std > 2:
            indicators.append('最优结果明显优于其他参数组合')
            confidence += 0.3

        # 2. 结果波动
        win_rate_std = float(np.std([r.result.win_rate for r in results]))
        profit_std = float(np.std([r.result.total_pnl for r in results]))
        if win_rate_std > 0.2 or profit_std > abs(avg_score) * 0.5:
            indicators.append('结果波动较大')
            confidence += 0.2

        # 3. 最优参数位于取值边界
        extreme = 0
        for name, value in best.parameters.items():
            values = [r.parameters[name] for r in results if name in r.parameters]
            if value == min(values) or value == max(values):
                extreme += 1
        if best.parameters and extreme > len(best.parameters) * 0.5:
            indicators.append('最优参数位于取值边界')
            confidence += 0.3

        # 4. 最优结果交易次数过少
        avg_trades = sum(r.result.total_trades for r in results) / len(results)
        if best.result.total_trades < avg_trades * 0.5:
            indicators.append('最优结果交易次数过少')
            confidence += 0.2

        confidence = min(confidence, 1.0)
        return {'is_overfitted': confidence > 0.6, 'confidence': confidence, 'indicators': indicators}

    def robustness_test(
        self,
        candles: CandleInput,
        strategy: StrategyRef,
        parameters: ParameterVector,
        objective: Union[Objective, str] = Objective.PROFIT,
        perturbation: float = 0.1,
        trials: int = 20,
        seed: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        参数扰动测试：每个参数乘以 (1 + U(-p, p)) 后重新评估

        Returns:
            {'original_score', 'perturbed_scores', 'robustness_score', 'is_robust'}
        """
        candles = ensure_candles(candles)
        rng = random.Random(seed)
        original = evaluate_parameters(candles, strategy, self.config, objective, parameters)

        perturbed_scores: List[float] = []
        for _ in range(trials):
            perturbed = {}
            for name, value in parameters.items():
                new_value = value * (1 + rng.uniform(-perturbation, perturbation))
                perturbed[name] = int(round(new_value)) if isinstance(value, int) else new_value
            try:
                perturbed_scores.append(
                    evaluate_parameters(candles, strategy, self.config, objective, perturbed).score
                )
            except ConfigError as e:
                logger.warning(f"扰动参数评估失败: {perturbed}, 错误: {e}")

        avg = sum(perturbed_scores) / len(perturbed_scores) if perturbed_scores else 0.0
        ratio = MetricsCalculator.safe(avg / original.score) if original.score != 0 else 0.0
        logger.info(f"稳健性测试完成: 原始得分 {original.score:.4f}, 稳健性 {ratio:.3f}")

        return {
            'original_score': original.score,
            'perturbed_scores': perturbed_scores,
            'robustness_score': ratio,
            'is_robust': ratio >= 0.8,
        }
