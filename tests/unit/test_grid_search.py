"""
GridSearchOptimizer / EvaluationPool 单元测试
"""

import pytest

from backtest.domain.errors import ConfigError, ErrorCode
from backtest.engine import SimulationEngine
from backtest.optimization.evaluator import (
    EvaluationPool, build_strategy, parameter_key, rank_results, score_result, split_parameters,
)
from backtest.optimization.grid_search import GridSearchOptimizer
from backtest.services.performance_analyzer import PerformanceAnalyzer
from config.validator import Objective, ParameterRange
from strategies.strategies import HoldStrategy


class TestGridSearch:
    """网格搜索测试类"""

    @pytest.fixture
    def rising_candles(self, make_candles):
        return make_candles([100, 110, 120])

    @pytest.fixture
    def buyer(self, scripted):
        """第一根K线全仓买入，忽略策略参数"""
        return lambda **params: scripted(['buy'])

    def test_generate_combinations(self):
        """测试笛卡尔积：3 x 3 = 9"""
        parameters = {
            'a': ParameterRange(min=0.01, max=0.03, step=0.01),
            'b': ParameterRange(min=0.01, max=0.03, step=0.01),
        }

        combinations = GridSearchOptimizer.generate_combinations(parameters)

        assert len(combinations) == 9
        assert GridSearchOptimizer.get_search_space_size(parameters) == 9
        assert {'a': 0.01, 'b': 0.03} in combinations
        assert {'a': 0.03, 'b': 0.03} in combinations

    def test_generate_combinations_integral(self):
        """测试整数范围生成整数取值"""
        combinations = GridSearchOptimizer.generate_combinations({'period': ParameterRange(min=5, max=20, step=5)})

        assert [c['period'] for c in combinations] == [5, 10, 15, 20]
        assert all(isinstance(c['period'], int) for c in combinations)

    def test_invalid_range_yields_nothing(self):
        """测试任一范围无效（min > max）时没有组合"""
        parameters = {
            'a': ParameterRange(min=0.05, max=0.01, step=0.01),
            'b': ParameterRange(min=1, max=3, step=1),
        }

        assert GridSearchOptimizer.generate_combinations(parameters) == []
        assert GridSearchOptimizer.get_search_space_size(parameters) == 0

    def test_zero_step_is_invalid(self):
        """测试步长为0"""
        assert GridSearchOptimizer.generate_combinations({'a': ParameterRange(min=1, max=3, step=0)}) == []

    def test_optimize_ranks_by_profit(self, rising_candles, buyer, zero_cost_config):
        """测试按收益排序：上涨行情中仓位越大收益越高"""
        parameters = {'max_position_size': ParameterRange(min=0.2, max=0.5, step=0.1)}

        with EvaluationPool(rising_candles, buyer, zero_cost_config, Objective.PROFIT) as pool:
            results = GridSearchOptimizer(pool).optimize(parameters)

        assert [r.parameters['max_position_size'] for r in results] == [0.5, 0.4, 0.3, 0.2]
        assert results[0].score == pytest.approx(10000)
        assert results[-1].score == pytest.approx(4000)

    def test_optimize_minimize(self, rising_candles, buyer, zero_cost_config):
        """测试最小化方向"""
        parameters = {'max_position_size': ParameterRange(min=0.2, max=0.5, step=0.1)}

        with EvaluationPool(rising_candles, buyer, zero_cost_config, Objective.PROFIT) as pool:
            results = GridSearchOptimizer(pool).optimize(parameters, maximize=False)

        assert results[0].parameters['max_position_size'] == 0.2

    def test_tie_break_by_parameters(self, make_candles, scripted, zero_cost_config):
        """测试同分时按参数升序排列"""
        candles = make_candles([100, 101, 99, 102])
        parameters = {
            'b': ParameterRange(min=1, max=2, step=1),
            'a': ParameterRange(min=1, max=2, step=1),
        }

        with EvaluationPool(candles, lambda **p: scripted(), zero_cost_config, Objective.SHARPE) as pool:
            results = GridSearchOptimizer(pool).optimize(parameters)

        assert all(r.score == 0 for r in results)
        assert [parameter_key(r.parameters) for r in results] == [
            (('a', 1), ('b', 1)),
            (('a', 1), ('b', 2)),
            (('a', 2), ('b', 1)),
            (('a', 2), ('b', 2)),
        ]

    def test_progress_callback(self, rising_candles, buyer, zero_cost_config):
        """测试进度回调"""
        events = []
        parameters = {'max_position_size': ParameterRange(min=0.2, max=0.5, step=0.1)}

        with EvaluationPool(
            rising_candles, buyer, zero_cost_config, Objective.PROFIT, progress_callback=events.append
        ) as pool:
            GridSearchOptimizer(pool).optimize(parameters)

        assert [e['completed'] for e in events] == [1, 2, 3, 4]
        assert all(e['total'] == 4 for e in events)
        assert events[0]['current_params'] == {'max_position_size': 0.2}

    def test_failed_evaluations_are_skipped(self, rising_candles, zero_cost_config):
        """测试策略参数无效时跳过该组合"""
        def factory(period):
            if period > 2:
                raise ConfigError(ErrorCode.INVALID_CONFIG, "bad period")
            return HoldStrategy()

        parameters = {'period': ParameterRange(min=1, max=3, step=1)}
        with EvaluationPool(rising_candles, factory, zero_cost_config, Objective.PROFIT) as pool:
            results = GridSearchOptimizer(pool).optimize(parameters)

        assert len(results) == 2
        assert pool.failed == 1


class TestEvaluator:
    """评估函数测试类"""

    def test_split_parameters(self):
        """测试配置字段与策略参数拆分"""
        config_overrides, strategy_params = split_parameters({'stop_loss_percent': 0.03, 'lookback': 10})

        assert config_overrides == {'stop_loss_percent': 0.03}
        assert strategy_params == {'lookback': 10}

    def test_build_strategy_unknown_name(self):
        """测试未知策略名"""
        with pytest.raises(ConfigError):
            build_strategy('does_not_exist', {})

    def test_build_strategy_bad_kwargs(self):
        """测试工厂函数参数不匹配"""
        def factory(period):
            return None

        with pytest.raises(ConfigError):
            build_strategy(factory, {'unknown': 1})

    def test_rank_results_is_stable(self, make_candles, zero_cost_config):
        """测试排序结果与输入顺序无关"""
        candles = make_candles([100, 101])
        parameters = {'a': ParameterRange(min=1, max=3, step=1)}
        with EvaluationPool(candles, lambda **p: HoldStrategy(), zero_cost_config, Objective.PROFIT) as pool:
            results = GridSearchOptimizer(pool).optimize(parameters)

        assert rank_results(list(reversed(results))) == rank_results(results)

    def test_score_objectives(self, make_candles, scripted, zero_cost_config):
        """测试各目标函数"""
        candles = make_candles([100, 90, 120])
        result = SimulationEngine().run(candles, scripted(['buy']), zero_cost_config)
        metrics = PerformanceAnalyzer().calculate_metrics(result)

        assert score_result(Objective.PROFIT, result, metrics) == pytest.approx(20000)
        assert score_result('drawdown', result, metrics) == pytest.approx(-0.1)
        assert score_result(Objective.CALMAR, result, metrics) == pytest.approx(result.calmar_ratio)
        assert score_result(Objective.WIN_RATE, result, metrics) == 1.0
        expected = (
            result.total_return * 0.4 + metrics.sharpe_ratio * 0.3
            + metrics.win_rate * 0.2 - result.max_drawdown * 0.1
        )
        assert score_result(Objective.COMPOSITE, result, metrics) == pytest.approx(expected)
