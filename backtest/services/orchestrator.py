"""
回测编排器 - 组合数据、回测、优化、滚动验证、策略对比与报告
"""
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from backtest.domain.candles import ensure_candles
from backtest.domain.errors import DataError, ErrorCode
from backtest.domain.models import (
    BacktestResult, BenchmarkComparison, Candle, FullAnalysisReport, OptimizationReport,
    OptimizationResult, StrategyComparison, WalkForwardResult,
)
from backtest.optimization.evaluator import CancellationToken, StrategyRef, evaluate_parameters
from backtest.services.advisor_service import AdvisorService
from backtest.services.comparison_service import StrategyComparator, StrategyEntry
from backtest.services.data_service import HistoricalDataStore
from backtest.services.export_service import ExportService
from backtest.services.optimization_service import ParameterOptimizer
from backtest.services.performance_analyzer import PerformanceAnalyzer
from backtest.services.walk_forward_service import WalkForwardValidator
from config.validator import BacktestConfig, Objective, OptimizationConfig, WalkForwardConfig
from logger_utils import get_logger

logger = get_logger("orchestrator")

CandleInput = Union[Sequence[Candle], pd.DataFrame, None]


class BacktestOrchestrator:
    """回测编排器"""

    def __init__(
        self,
        config: BacktestConfig,
        data_store: Optional[HistoricalDataStore] = None,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        """
        Args:
            config: 回测配置（start_date/end_date 用于从数据仓库取数）
            data_store: 历史数据仓库，未提供时各方法必须显式传入 candles
            symbol: 交易对
            timeframe: K线周期
            cancel_token: 传递给优化器与滚动验证的取消标志
        """
        self.config = config
        self.data_store = data_store
        self.symbol = symbol
        self.timeframe = timeframe
        self.cancel_token = cancel_token
        self.analyzer = PerformanceAnalyzer(config.periods_per_year)

    def load_candles(self, candles: CandleInput = None) -> List[Candle]:
        """优先使用传入的K线，否则从数据仓库加载（数据源错误直接抛出）"""
        if candles is not None:
            return ensure_candles(candles)
        if self.data_store is None or not self.symbol or not self.timeframe:
            raise DataError(ErrorCode.EMPTY_DATA, "未提供K线数据，也没有配置数据仓库")
        if self.config.start_date is None or self.config.end_date is None:
            raise DataError(ErrorCode.EMPTY_DATA, "从数据仓库加载需要 start_date 与 end_date")
        return self.data_store.get_candles(
            self.symbol, self.timeframe, self.config.start_date, self.config.end_date
        )

    def _evaluate(
        self,
        candles: List[Candle],
        strategy: StrategyRef,
        params: Optional[Dict[str, float]] = None
    ) -> OptimizationResult:
        return evaluate_parameters(candles, strategy, self.config, Objective.COMPOSITE, params or {})

    def run_backtest(
        self,
        strategy: StrategyRef,
        params: Optional[Dict[str, float]] = None,
        candles: CandleInput = None
    ) -> BacktestResult:
        """单次回测"""
        candles = self.load_candles(candles)
        result = self._evaluate(candles, strategy, params).result
        logger.info(
            f"回测完成: 收益率 {result.total_return_percent:.2f}%, 最大回撤 {result.max_drawdown_percent:.2f}%, "
            f"胜率 {result.win_rate*100:.1f}%, 交易 {result.total_trades} 笔"
        )
        return result

    def optimize(
        self,
        strategy: StrategyRef,
        opt_config: OptimizationConfig,
        candles: CandleInput = None
    ) -> OptimizationReport:
        """参数优化"""
        candles = self.load_candles(candles)
        return ParameterOptimizer(self.config, cancel_token=self.cancel_token).optimize(candles, strategy, opt_config)

    def optimize_and_backtest(
        self,
        strategy: StrategyRef,
        opt_config: OptimizationConfig,
        candles: CandleInput = None
    ) -> Tuple[OptimizationReport, Optional[BacktestResult]]:
        """优化后用最优参数重新回测；没有最优参数时第二项为 None"""
        candles = self.load_candles(candles)
        report = self.optimize(strategy, opt_config, candles)
        if report.best is None:
            logger.warning(f"没有最优参数，跳过重新回测（{report.status.value}）")
            return report, None
        return report, self.run_backtest(strategy, report.best.parameters, candles)

    def walk_forward(
        self,
        strategy: StrategyRef,
        opt_config: OptimizationConfig,
        wf_config: WalkForwardConfig,
        candles: CandleInput = None
    ) -> WalkForwardResult:
        """滚动验证"""
        candles = self.load_candles(candles)
        validator = WalkForwardValidator(self.config, cancel_token=self.cancel_token)
        return validator.validate(candles, strategy, opt_config, wf_config)

    def compare_strategies(
        self,
        strategies: Mapping[str, StrategyEntry],
        candles: CandleInput = None
    ) -> StrategyComparison:
        """多策略对比"""
        candles = self.load_candles(candles)
        return StrategyComparator(self.config).compare(candles, strategies)

    def benchmark(
        self,
        strategy: StrategyRef,
        params: Optional[Dict[str, float]] = None,
        candles: CandleInput = None
    ) -> BenchmarkComparison:
        """与买入持有对比"""
        candles = self.load_candles(candles)
        result = self.run_backtest(strategy, params, candles)
        return StrategyComparator.benchmark(candles, result)

    def run_full_analysis(
        self,
        strategy: StrategyRef,
        opt_config: OptimizationConfig,
        wf_config: Optional[WalkForwardConfig] = None,
        base_params: Optional[Dict[str, float]] = None,
        candles: CandleInput = None
    ) -> FullAnalysisReport:
        """
        完整分析

        数据质量 -> 缺口填补 -> 基线回测 -> 参数优化 -> 最优参数回测 -> 策略对比
        -> 买入持有基准 -> （可选）滚动验证 -> 目标达成 -> 详细报告与建议
        """
        raw = self.load_candles(candles)
        data_quality = HistoricalDataStore.analyze_quality(raw, self.timeframe)
        filled = HistoricalDataStore.fill_gaps(raw, self.timeframe)
        logger.info(
            f"数据质量 {data_quality.quality_score*100:.1f}%, 插值补齐 {len(filled) - len(HistoricalDataStore.clean_candles(raw))} 根"
        )

        base_params = base_params or {}
        baseline = self._evaluate(filled, strategy, base_params)

        optimization = self.optimize(strategy, opt_config, filled)
        optimized = None
        strategies: Dict[str, StrategyEntry] = {'baseline': (strategy, base_params)}
        if optimization.best is not None:
            optimized = self._evaluate(filled, strategy, optimization.best.parameters)
            strategies['optimized'] = (strategy, optimization.best.parameters)
        comparison = StrategyComparator(self.config).compare(filled, strategies)

        final = optimized or baseline
        benchmark = StrategyComparator.benchmark(filled, final.result)

        walk_forward = None
        if wf_config is not None:
            walk_forward = self.walk_forward(strategy, opt_config, wf_config, filled)

        target_analysis = AdvisorService.analyze_targets(final.metrics, baseline.metrics, walk_forward)
        detailed_report = self.analyzer.generate_detailed_report(final.result, filled, final.metrics)
        recommendations = AdvisorService.generate_recommendations(
            final.metrics,
            detailed_report.get('market_conditions', {}).get('performance', {}),
            walk_forward=walk_forward,
            optimization=optimization,
            target_analysis=target_analysis,
        )

        logger.info(
            f"完整分析完成: 基线 {baseline.result.total_return_percent:.2f}%, "
            f"优化后 {final.result.total_return_percent:.2f}%, 目标达成 {target_analysis['overall_score']:.1f}%"
        )

        return FullAnalysisReport(
            data_quality=data_quality,
            baseline=baseline.result,
            baseline_metrics=baseline.metrics,
            optimization=optimization,
            optimized=optimized.result if optimized else None,
            optimized_metrics=optimized.metrics if optimized else None,
            comparison=comparison,
            benchmark=benchmark,
            walk_forward=walk_forward,
            target_analysis=target_analysis,
            detailed_report=detailed_report,
            recommendations=recommendations,
            summary=AdvisorService.generate_summary(final.metrics),
        )

    @staticmethod
    def export_report(report: Any, fmt: str = 'json', path: Optional[str] = None) -> str:
        """导出报告（JSON 完整结构 / CSV 交易记录）"""
        return ExportService.export_report(report, fmt, path)
