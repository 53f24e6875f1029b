"""
ParameterOptimizer 单元测试
"""

import pytest

from backtest.domain.errors import ConfigError, DataSourceError
from backtest.domain.models import (
    BacktestResult, OptimizationReport, OptimizationResult, OptimizationStatus, PerformanceMetrics,
)
from backtest.optimization.evaluator import CancellationToken
from backtest.services.optimization_service import ParameterOptimizer
from config.validator import OptimizationConfig

POSITION_RANGE = {'max_position_size': {'min': 0.2, 'max': 0.5, 'step': 0.1}}


def _result(params, score, trades=5):
    result = BacktestResult(initial_balance=10000, final_balance=10000 + score, total_pnl=score, total_trades=trades)
    return OptimizationResult(parameters=params, result=result, metrics=PerformanceMetrics(), score=score)


class TestParameterOptimizer:
    """ParameterOptimizer 测试类"""

    @pytest.fixture
    def rising_candles(self, make_candles):
        return make_candles([100, 110, 120])

    @pytest.fixture
    def buyer(self, scripted):
        return lambda **params: scripted(['buy'])

    @pytest.fixture
    def optimizer(self, zero_cost_config):
        return ParameterOptimizer(zero_cost_config)

    def test_grid_search_report(self, optimizer, rising_candles, buyer):
        """测试网格搜索报告"""
        report = optimizer.grid_search(rising_candles, buyer, POSITION_RANGE, objective='profit')

        assert report.status == OptimizationStatus.COMPLETED
        assert report.method == 'grid'
        assert report.search_space_size == 4
        assert len(report.results) == 4
        assert report.best.parameters == {'max_position_size': 0.5}
        assert report.elapsed_seconds >= 0

    def test_grid_search_minimize(self, optimizer, rising_candles, buyer):
        """测试最小化方向"""
        report = optimizer.grid_search(rising_candles, buyer, POSITION_RANGE, objective='profit', direction='minimize')

        assert report.best.parameters == {'max_position_size': 0.2}

    def test_config_parameters_are_applied(self, optimizer, make_candles, buyer):
        """测试与回测配置同名的参数覆盖配置（止损比例影响结果）"""
        candles = make_candles([100, 97, 120])
        parameters = {'stop_loss_percent': {'min': 0.02, 'max': 0.04, 'step': 0.02}}

        report = optimizer.grid_search(candles, buyer, parameters, objective='profit')

        by_stop = {r.parameters['stop_loss_percent']: r for r in report.results}
        assert by_stop[0.02].result.trades[0].exit_reason.value == 'stop_loss'
        assert by_stop[0.04].result.trades[0].exit_reason.value == 'end of backtest'
        assert report.best.parameters == {'stop_loss_percent': 0.04}

    def test_invalid_range(self, optimizer, rising_candles, buyer):
        """测试无效参数范围返回空结果而不抛异常"""
        parameters = {'max_position_size': {'min': 0.5, 'max': 0.1, 'step': 0.1}}

        report = optimizer.grid_search(rising_candles, buyer, parameters, objective='profit')

        assert report.status == OptimizationStatus.NO_VALID_COMBINATIONS
        assert report.results == []
        assert report.search_space_size == 0
        assert report.best is None

    def test_insufficient_data(self, optimizer, make_candles, buyer):
        """测试K线不足"""
        report = optimizer.grid_search(make_candles([100]), buyer, POSITION_RANGE, objective='profit')

        assert report.status == OptimizationStatus.INSUFFICIENT_DATA
        assert report.results == []

    def test_all_evaluations_fail(self, optimizer, rising_candles):
        """测试全部组合评估失败"""
        report = optimizer.grid_search(rising_candles, 'does_not_exist', POSITION_RANGE, objective='profit')

        assert report.status == OptimizationStatus.NO_VALID_COMBINATIONS
        assert report.results == []

    def test_unexpected_error_skips_combination(self, optimizer, rising_candles, scripted):
        """测试单个组合抛出任意异常时跳过该组合，其余组合照常评估"""
        def factory(lookback):
            if lookback == 2:
                raise ValueError("bad combination")
            return scripted(['buy'])

        report = optimizer.grid_search(
            rising_candles, factory, {'lookback': {'min': 1, 'max': 3, 'step': 1}}, objective='profit'
        )

        assert report.status == OptimizationStatus.COMPLETED
        assert sorted(r.parameters['lookback'] for r in report.results) == [1, 3]

    def test_data_source_error_propagates(self, optimizer, rising_candles):
        """测试数据源错误不被吞掉"""
        def factory(lookback):
            raise DataSourceError("source offline")

        with pytest.raises(DataSourceError):
            optimizer.grid_search(
                rising_candles, factory, {'lookback': {'min': 1, 'max': 2, 'step': 1}}, objective='profit'
            )

    def test_unknown_objective(self, optimizer, rising_candles, buyer):
        """测试未知目标函数"""
        with pytest.raises(ConfigError):
            optimizer.grid_search(rising_candles, buyer, POSITION_RANGE, objective='bogus')

    def test_cancelled_before_start(self, zero_cost_config, rising_candles, buyer):
        """测试预先取消"""
        token = CancellationToken()
        token.cancel()

        report = ParameterOptimizer(zero_cost_config, cancel_token=token).grid_search(
            rising_candles, buyer, POSITION_RANGE, objective='profit'
        )

        assert report.status == OptimizationStatus.CANCELLED
        assert report.results == []

    def test_cancel_midway_keeps_completed(self, zero_cost_config, rising_candles, buyer):
        """测试中途取消保留已完成的评估"""
        token = CancellationToken()

        def on_progress(progress):
            if progress['completed'] == 2:
                token.cancel()

        report = ParameterOptimizer(zero_cost_config, cancel_token=token, progress_callback=on_progress).grid_search(
            rising_candles, buyer, POSITION_RANGE, objective='profit'
        )

        assert report.status == OptimizationStatus.CANCELLED
        assert len(report.results) == 2

    def test_time_budget(self, optimizer, rising_candles, buyer):
        """测试超出时间预算"""
        report = optimizer.grid_search(
            rising_candles, buyer, POSITION_RANGE, objective='profit', time_budget_seconds=1e-9
        )

        assert report.status == OptimizationStatus.TIME_BUDGET_EXCEEDED

    def test_genetic_search(self, optimizer, rising_candles, buyer):
        """测试遗传算法入口"""
        report = optimizer.genetic_search(
            rising_candles, buyer, POSITION_RANGE,
            genetic={'population_size': 6, 'generations': 3}, objective='profit', seed=5
        )

        assert report.method == 'genetic'
        assert report.status == OptimizationStatus.COMPLETED
        assert len(report.convergence) == 3
        assert len(report.evaluated) == 18
        assert len(report.results) <= 6

    def test_genetic_inferred_from_config(self, optimizer, rising_candles, buyer):
        """测试提供遗传算法配置时自动选择遗传算法"""
        opt_config = OptimizationConfig(
            parameters=POSITION_RANGE, objective='profit', genetic={'population_size': 4, 'generations': 2}, seed=1
        )

        report = optimizer.optimize(rising_candles, buyer, opt_config)

        assert report.method == 'genetic'
        assert len(report.convergence) == 2

    def test_parallel_matches_sequential(self, default_config, synthetic_candles):
        """测试多进程评估与顺序评估结果一致"""
        parameters = {
            'lookback': {'min': 5, 'max': 10, 'step': 5},
            'threshold': {'min': 0.01, 'max': 0.02, 'step': 0.01},
        }
        optimizer = ParameterOptimizer(default_config)

        sequential = optimizer.grid_search(synthetic_candles, 'momentum', parameters, objective='profit')
        parallel = optimizer.grid_search(
            synthetic_candles, 'momentum', parameters, objective='profit', max_workers=2
        )

        assert [(r.parameters, r.score) for r in parallel.results] == [
            (r.parameters, r.score) for r in sequential.results
        ]


class TestOptimizationDiagnostics:
    """过拟合与稳健性诊断测试类"""

    @pytest.fixture
    def evaluated(self):
        return [_result({'a': 1}, 10.0), _result({'a': 2}, 5.0), _result({'a': 3}, 0.0)]

    def test_overfitting_score(self, evaluated):
        """测试 (最优 - 最差) / |最优|"""
        assert ParameterOptimizer.overfitting_score(evaluated) == pytest.approx(1.0)

    def test_overfitting_score_zero_best(self, evaluated):
        """测试最优为0时返回0"""
        assert ParameterOptimizer.overfitting_score(evaluated, maximize=False) == 0.0

    def test_overfitting_score_counts_duplicates_once(self):
        """测试重复参数只计一次"""
        evaluated = [_result({'a': 1}, 10.0), _result({'a': 1}, 10.0), _result({'a': 2}, 5.0)]

        assert ParameterOptimizer.overfitting_score(evaluated) == pytest.approx(0.5)

    def test_robustness_score(self, evaluated):
        """测试头部得分稳定性"""
        assert ParameterOptimizer.robustness_score(evaluated) == 1.0
        full = ParameterOptimizer.robustness_score(evaluated, top_fraction=1.0)
        assert 0 < full < 1

    def test_detect_overfitting_needs_samples(self):
        """测试样本不足"""
        report = OptimizationReport(method='grid', objective='profit', direction='maximize')

        detection = ParameterOptimizer.detect_overfitting(report)

        assert detection['is_overfitted'] is False
        assert detection['indicators'] == ['样本不足']

    def test_detect_overfitting(self):
        """测试最优结果孤立且交易次数少时判定为过拟合"""
        evaluated = [_result({'a': 1}, 100.0, trades=1)] + [
            _result({'a': i}, 1.0, trades=20) for i in range(2, 12)
        ]
        report = OptimizationReport(method='grid', objective='profit', direction='maximize', evaluated=evaluated)

        detection = ParameterOptimizer.detect_overfitting(report)

        assert detection['is_overfitted'] is True
        assert 0 < detection['confidence'] <= 1

    def test_robustness_test(self, zero_cost_config, make_candles, scripted):
        """测试参数扰动：收益与仓位成正比，扰动10%后平均得分接近原始得分"""
        candles = make_candles([100, 110, 120])
        optimizer = ParameterOptimizer(zero_cost_config)

        outcome = optimizer.robustness_test(
            candles, lambda **p: scripted(['buy']), {'max_position_size': 0.5}, trials=10, seed=3
        )

        assert outcome['original_score'] == pytest.approx(10000)
        assert len(outcome['perturbed_scores']) == 10
        assert all(9000 <= s <= 11000 for s in outcome['perturbed_scores'])
        assert outcome['is_robust'] is True
