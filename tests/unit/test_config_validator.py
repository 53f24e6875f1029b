"""
配置验证单元测试
"""

import pytest

import config
from backtest.domain.errors import ConfigError, ErrorCode
from config.validator import (
    BacktestConfig, GeneticConfig, Objective, OptimizationConfig, ParameterRange, WalkForwardConfig,
    build_config, validate_config,
)


class TestBacktestConfig:
    """BacktestConfig 测试类"""

    def test_defaults(self):
        """测试默认值"""
        cfg = BacktestConfig()

        assert cfg.commission == pytest.approx(0.0006)
        assert cfg.max_concurrent_trades == 1
        assert cfg.allow_short is True

    def test_invalid_balance(self):
        """测试初始资金必须为正"""
        with pytest.raises(ConfigError) as exc_info:
            build_config(BacktestConfig, initial_balance=-1)

        assert exc_info.value.error_code == ErrorCode.INVALID_CONFIG
        assert exc_info.value.details['errors']

    def test_inverted_date_range(self):
        """测试结束时间早于开始时间"""
        with pytest.raises(ConfigError):
            build_config(BacktestConfig, start_date=2000, end_date=1000)

    def test_with_overrides_revalidates(self):
        """测试覆盖后重新校验"""
        cfg = BacktestConfig()

        assert cfg.with_overrides({'stop_loss_percent': 0.05}).stop_loss_percent == 0.05
        assert cfg.with_overrides({}) is cfg
        with pytest.raises(ConfigError):
            cfg.with_overrides({'max_position_size': 2})

    def test_from_settings(self):
        """测试从配置模块构建"""
        cfg = BacktestConfig.from_settings(initial_balance=5000)

        assert cfg.initial_balance == 5000
        assert cfg.commission == config.BACKTEST_COMMISSION

    def test_validate_config(self):
        """测试配置模块整体校验"""
        assert validate_config(config) is True


class TestParameterRange:
    """ParameterRange 测试类"""

    def test_float_values(self):
        """测试浮点范围包含端点"""
        param_range = ParameterRange(min=0.01, max=0.03, step=0.01)

        assert param_range.count() == 3
        assert param_range.values() == [0.01, 0.02, 0.03]

    def test_integral_values(self):
        """测试整数范围"""
        assert ParameterRange(min=5, max=20, step=5).values() == [5, 10, 15, 20]

    def test_step_not_dividing_range(self):
        """测试步长不能整除时不超过上限"""
        assert ParameterRange(min=1, max=10, step=4).values() == [1, 5, 9]

    def test_invalid(self):
        """测试无效范围"""
        assert ParameterRange(min=3, max=1, step=1).count() == 0
        assert not ParameterRange(min=1, max=3, step=0).is_valid
        assert ParameterRange(min=1, max=3, step=-1).values() == []


class TestOptimizationConfig:
    """OptimizationConfig 测试类"""

    def test_search_space_size(self):
        """测试搜索空间大小"""
        opt_config = OptimizationConfig(parameters={
            'a': {'min': 0.01, 'max': 0.03, 'step': 0.01},
            'b': {'min': 0.01, 'max': 0.03, 'step': 0.01},
        })

        assert opt_config.search_space_size() == 9
        assert opt_config.objective == Objective.SHARPE
        assert opt_config.method == 'grid'
        assert opt_config.maximize is True

    def test_invalid_parameters_listed(self):
        """测试列出无效参数"""
        opt_config = OptimizationConfig(parameters={
            'b': {'min': 5, 'max': 1, 'step': 1},
            'a': {'min': 1, 'max': 2, 'step': 0},
        })

        assert opt_config.invalid_parameters() == ['a', 'b']
        assert opt_config.search_space_size() == 0

    def test_empty_parameters(self):
        """测试参数空间不能为空"""
        with pytest.raises(ConfigError):
            build_config(OptimizationConfig, parameters={})

    def test_unknown_objective(self):
        """测试未知目标函数"""
        with pytest.raises(ConfigError):
            build_config(OptimizationConfig, parameters={'a': {'min': 1, 'max': 2, 'step': 1}}, objective='alpha')

    def test_genetic_method(self):
        """测试 method=genetic 时补全默认遗传算法配置"""
        opt_config = OptimizationConfig(parameters={'a': {'min': 1, 'max': 2, 'step': 1}}, method='genetic')

        assert opt_config.genetic == GeneticConfig()
        assert opt_config.genetic.population_size == 20
        assert opt_config.genetic.generations == 50


class TestWalkForwardConfig:
    """WalkForwardConfig 测试类"""

    def test_fraction_above_one(self):
        """测试比例模式下窗口不能超过1"""
        with pytest.raises(ConfigError):
            build_config(WalkForwardConfig, training_period=1.5, testing_period=0.2, unit='fraction')

    def test_resolve(self):
        """测试换算为K线数"""
        wf_config = WalkForwardConfig(training_period=0.6, testing_period=0.2, unit='fraction')

        assert wf_config.resolve(100) == (60, 20, 20)

    def test_resolve_periods(self):
        """测试绝对周期数与步长"""
        wf_config = WalkForwardConfig(training_period=30, testing_period=10, reoptimization_frequency=5)

        assert wf_config.resolve(1000) == (30, 10, 5)
