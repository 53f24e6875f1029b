"""
参数评估 - 单个参数组合执行完整回测+绩效分析并打分

每次评估独占自己的策略实例与模拟上下文，评估之间没有共享可变状态，
max_workers > 1 时分发到进程池，结果按提交顺序归并。
"""
import math
import threading
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from backtest.domain.errors import ConfigError, DataSourceError, ErrorCode
from backtest.domain.interfaces import Strategy
from backtest.domain.models import (
    BacktestResult, Candle, OptimizationResult, OptimizationStatus, ParameterVector, PerformanceMetrics,
)
from backtest.engine import SimulationEngine
from backtest.services.performance_analyzer import PerformanceAnalyzer
from config.validator import BacktestConfig, Objective
from logger_utils import get_logger

logger = get_logger("optimizer")

# 注册表中的策略名，或 factory(**params) -> Strategy（进程池模式下需可 pickle）
StrategyRef = Union[str, Callable[..., Strategy]]

_CONFIG_FIELDS = frozenset(BacktestConfig.model_fields)


class CancellationToken:
    """协作式取消标志，在两次评估之间检查"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def parameter_key(params: ParameterVector) -> Tuple[Tuple[str, float], ...]:
    """参数向量的规范形式：按参数名排序的 (name, value) 元组"""
    return tuple(sorted(params.items()))


def rank_results(results: Sequence[OptimizationResult], maximize: bool = True) -> List[OptimizationResult]:
    """
    按得分排序

    同分时按参数名字典序、再按取值升序排列，保证 results[0] 稳定。
    """
    def sort_key(r: OptimizationResult):
        return (-r.score if maximize else r.score, parameter_key(r.parameters))
    return sorted(results, key=sort_key)


def split_parameters(params: ParameterVector) -> Tuple[Dict[str, float], Dict[str, float]]:
    """拆分为 (回测配置覆盖, 策略参数)"""
    config_overrides = {k: v for k, v in params.items() if k in _CONFIG_FIELDS}
    strategy_params = {k: v for k, v in params.items() if k not in _CONFIG_FIELDS}
    return config_overrides, strategy_params


def build_strategy(strategy_ref: StrategyRef, params: Dict[str, Any]) -> Strategy:
    """按注册名或工厂函数创建策略实例"""
    if isinstance(strategy_ref, str):
        from strategies.strategies import get_strategy
        return get_strategy(strategy_ref, **params)
    try:
        return strategy_ref(**params)
    except TypeError as e:
        raise ConfigError(ErrorCode.INVALID_CONFIG, f"策略参数无效: {e}", {'parameters': params}) from e


def score_result(objective: Union[Objective, str], result: BacktestResult, metrics: PerformanceMetrics) -> float:
    """计算目标函数得分"""
    objective = Objective(objective)
    if objective == Objective.PROFIT:
        score = result.total_pnl
    elif objective == Objective.SHARPE:
        score = metrics.sharpe_ratio
    elif objective == Objective.WIN_RATE:
        score = metrics.win_rate
    elif objective == Objective.DRAWDOWN:
        # 回撤越小越好
        score = -result.max_drawdown
    elif objective == Objective.CALMAR:
        score = result.calmar_ratio
    elif objective == Objective.PROFIT_FACTOR:
        score = metrics.profit_factor
    else:
        score = (
            result.total_return * 0.4
            + metrics.sharpe_ratio * 0.3
            + metrics.win_rate * 0.2
            - result.max_drawdown * 0.1
        )
    return score if math.isfinite(score) else 0.0


def evaluate_parameters(
    candles: Sequence[Candle],
    strategy_ref: StrategyRef,
    config: BacktestConfig,
    objective: Union[Objective, str],
    params: ParameterVector,
    generation: Optional[int] = None
) -> OptimizationResult:
    """
    单个参数组合：回测 + 绩效分析 + 打分

    Raises:
        ConfigError: 参数无法应用到配置或策略
    """
    config_overrides, strategy_params = split_parameters(params)
    run_config = config.with_overrides(config_overrides)
    strategy = build_strategy(strategy_ref, strategy_params)

    result = SimulationEngine().run(candles, strategy, run_config)
    metrics = PerformanceAnalyzer(run_config.periods_per_year).calculate_metrics(result)
    return OptimizationResult(
        parameters=dict(params),
        result=result,
        metrics=metrics,
        score=score_result(objective, result, metrics),
        generation=generation,
    )


# ==================== 进程池工作函数 ====================

_worker_state: Dict[str, Any] = {}


def _init_worker(candles, strategy_ref, config, objective):
    """每个工作进程只接收一次K线和配置"""
    _worker_state.update(candles=candles, strategy_ref=strategy_ref, config=config, objective=objective)


def _evaluate_in_worker(params: ParameterVector, generation: Optional[int]) -> OptimizationResult:
    return evaluate_parameters(
        _worker_state['candles'], _worker_state['strategy_ref'], _worker_state['config'],
        _worker_state['objective'], params, generation
    )


class EvaluationPool:
    """
    评估池

    用作上下文管理器；max_workers > 1 时懒创建 ProcessPoolExecutor。
    取消与时间预算在两次评估之间检查，已完成的评估结果保留。
    """

    def __init__(
        self,
        candles: Sequence[Candle],
        strategy_ref: StrategyRef,
        config: BacktestConfig,
        objective: Union[Objective, str],
        max_workers: int = 1,
        cancel_token: Optional[CancellationToken] = None,
        time_budget_seconds: Optional[float] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ):
        self.candles = list(candles)
        self.strategy_ref = strategy_ref
        self.config = config
        self.objective = Objective(objective)
        self.max_workers = max_workers
        self.cancel_token = cancel_token
        self.time_budget_seconds = time_budget_seconds
        self.progress_callback = progress_callback

        self.stop_reason: Optional[OptimizationStatus] = None
        self.expected_total: Optional[int] = None
        self.completed = 0
        self.failed = 0
        self._started = time.monotonic()
        self._executor: Optional[ProcessPoolExecutor] = None

    def __enter__(self) -> "EvaluationPool":
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def should_stop(self) -> bool:
        """检查取消标志与时间预算"""
        if self.stop_reason is not None:
            return True
        if self.cancel_token is not None and self.cancel_token.cancelled:
            self.stop_reason = OptimizationStatus.CANCELLED
            logger.info("优化已取消，保留已完成的评估结果")
        elif self.time_budget_seconds and self.elapsed >= self.time_budget_seconds:
            self.stop_reason = OptimizationStatus.TIME_BUDGET_EXCEEDED
            logger.info(f"超出时间预算 {self.time_budget_seconds}s，停止评估")
        return self.stop_reason is not None

    def evaluate_batch(
        self,
        vectors: Sequence[ParameterVector],
        generation: Optional[int] = None
    ) -> List[Optional[OptimizationResult]]:
        """
        评估一批参数组合

        Returns:
            与 vectors 等长、同序的列表；失败或未评估（已停止）的位置为 None
        """
        if self.max_workers > 1 and len(vectors) > 1:
            return self._evaluate_parallel(vectors, generation)
        return self._evaluate_sequential(vectors, generation)

    def _evaluate_sequential(self, vectors, generation) -> List[Optional[OptimizationResult]]:
        outcomes: List[Optional[OptimizationResult]] = [None] * len(vectors)
        for idx, params in enumerate(vectors):
            if self.should_stop():
                break
            try:
                outcomes[idx] = evaluate_parameters(
                    self.candles, self.strategy_ref, self.config, self.objective, params, generation
                )
            except DataSourceError:
                raise
            except ConfigError as e:
                # 记录失败但继续
                self.failed += 1
                logger.warning(f"参数组合跳过: {params}, 错误: {e}")
            except Exception as e:
                self.failed += 1
                logger.error(f"参数组合评估异常: {params}, 错误: {e}", exc_info=True)
            self._report_progress(len(vectors), params, outcomes[idx])
        return outcomes

    def _evaluate_parallel(self, vectors, generation) -> List[Optional[OptimizationResult]]:
        outcomes: List[Optional[OptimizationResult]] = [None] * len(vectors)
        if self.should_stop():
            return outcomes

        if self._executor is None:
            self._executor = ProcessPoolExecutor(
                max_workers=self.max_workers,
                initializer=_init_worker,
                initargs=(self.candles, self.strategy_ref, self.config, self.objective),
            )

        future_to_idx = {
            self._executor.submit(_evaluate_in_worker, params, generation): idx
            for idx, params in enumerate(vectors)
        }
        for future in as_completed(future_to_idx):
            idx = future_to_idx[future]
            try:
                outcomes[idx] = future.result()
            except DataSourceError:
                raise
            except ConfigError as e:
                self.failed += 1
                logger.warning(f"参数组合跳过: {vectors[idx]}, 错误: {e}")
            except Exception as e:
                # 包括工作进程中的异常与 pickle 失败
                self.failed += 1
                logger.error(f"参数组合评估异常: {vectors[idx]}, 错误: {e}", exc_info=True)
            self._report_progress(len(vectors), vectors[idx], outcomes[idx])

            if self.should_stop():
                for pending in future_to_idx:
                    pending.cancel()
                break
        return outcomes

    def _report_progress(self, total: int, params: ParameterVector, outcome: Optional[OptimizationResult]):
        self.completed += 1
        if self.progress_callback:
            self.progress_callback({
                'completed': self.completed,
                'total': self.expected_total or total,
                'current_params': dict(params),
                'current_score': outcome.score if outcome else None,
                'elapsed': self.elapsed,
            })
