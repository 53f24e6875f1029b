"""
GeneticOptimizer 单元测试
"""

import random

import pytest

from backtest.optimization.evaluator import EvaluationPool, parameter_key
from backtest.optimization.genetic import GeneticOptimizer
from config.validator import GeneticConfig, Objective, ParameterRange


class TestGeneticOptimizer:
    """遗传算法测试类"""

    @pytest.fixture
    def parameters(self):
        return {
            'max_position_size': ParameterRange(min=0.1, max=1.0, step=0.1),
            'lookback': ParameterRange(min=1, max=5, step=1),
        }

    @pytest.fixture
    def run_genetic(self, make_candles, scripted, zero_cost_config, parameters):
        candles = make_candles([100, 105, 110, 120])

        def run(seed, maximize=True):
            config = GeneticConfig(population_size=10, generations=3)
            with EvaluationPool(candles, lambda **p: scripted(['buy']), zero_cost_config, Objective.PROFIT) as pool:
                optimizer = GeneticOptimizer(pool, config, random.Random(seed))
                return optimizer.optimize(parameters, maximize)
        return run

    def test_results_sorted_and_bounded(self, run_genetic):
        """测试结果非空、按得分降序、不超过种群大小且无重复"""
        results, history, convergence = run_genetic(seed=42)

        assert 0 < len(results) <= 10
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        keys = [parameter_key(r.parameters) for r in results]
        assert len(keys) == len(set(keys))

    def test_convergence_per_generation(self, run_genetic):
        """测试每代记录一个最优得分，且精英保留使其不下降"""
        results, history, convergence = run_genetic(seed=42)

        assert len(convergence) == 3
        assert convergence == sorted(convergence)
        assert results[0].score == convergence[-1]

    def test_history_tags_generation(self, run_genetic):
        """测试历史记录包含每代全部个体"""
        _, history, _ = run_genetic(seed=42)

        assert len(history) == 30
        assert {r.generation for r in history} == {0, 1, 2}

    def test_values_come_from_ranges(self, run_genetic, parameters):
        """测试个体取值都在参数取值集合内"""
        _, history, _ = run_genetic(seed=7)

        allowed = {name: set(r.values()) for name, r in parameters.items()}
        for r in history:
            for name, value in r.parameters.items():
                assert value in allowed[name]

    def test_reproducible_with_seed(self, run_genetic):
        """测试相同种子结果可复现"""
        first = run_genetic(seed=123)
        second = run_genetic(seed=123)

        assert [r.parameters for r in first[0]] == [r.parameters for r in second[0]]
        assert first[2] == second[2]

    def test_minimize(self, run_genetic):
        """测试最小化方向"""
        results, _, convergence = run_genetic(seed=42, maximize=False)

        scores = [r.score for r in results]
        assert scores == sorted(scores)
        assert convergence == sorted(convergence, reverse=True)

    def test_invalid_space(self, make_candles, scripted, zero_cost_config):
        """测试无效参数空间返回空结果"""
        with EvaluationPool(make_candles([100, 101]), lambda **p: scripted(), zero_cost_config, 'profit') as pool:
            optimizer = GeneticOptimizer(pool, GeneticConfig(population_size=4, generations=2), random.Random(1))
            results, history, convergence = optimizer.optimize({'a': ParameterRange(min=2, max=1, step=1)})

        assert results == [] and history == [] and convergence == []
