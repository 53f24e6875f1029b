"""
WalkForwardValidator 单元测试
"""

import pytest

from backtest.domain.models import OptimizationStatus
from backtest.optimization.evaluator import CancellationToken
from backtest.services.walk_forward_service import WalkForwardValidator
from config.validator import OptimizationConfig, WalkForwardConfig


class TestWalkForwardValidator:
    """WalkForwardValidator 测试类"""

    @pytest.fixture
    def opt_config(self):
        return OptimizationConfig(
            parameters={'max_position_size': {'min': 0.5, 'max': 1.0, 'step': 0.5}},
            objective='profit',
        )

    @pytest.fixture
    def buyer(self, scripted):
        return lambda **params: scripted(['buy'])

    def test_generate_windows_periods(self):
        """测试按周期数切分窗口"""
        wf_config = WalkForwardConfig(training_period=50, testing_period=25)

        windows = WalkForwardValidator.generate_windows(100, wf_config)

        assert windows == [(0, 50, 75), (25, 75, 100)]

    def test_generate_windows_fraction(self):
        """测试按比例切分窗口"""
        wf_config = WalkForwardConfig(training_period=0.5, testing_period=0.25, unit='fraction')

        assert WalkForwardValidator.generate_windows(100, wf_config) == [(0, 50, 75), (25, 75, 100)]

    def test_generate_windows_custom_step(self):
        """测试自定义步长"""
        wf_config = WalkForwardConfig(training_period=40, testing_period=20, reoptimization_frequency=10)

        windows = WalkForwardValidator.generate_windows(100, wf_config)

        assert windows[0] == (0, 40, 60)
        assert windows[-1] == (40, 80, 100)
        assert len(windows) == 5

    def test_insufficient_data_yields_no_segments(self, zero_cost_config, make_candles, buyer, opt_config):
        """测试数据不足一个窗口"""
        candles = make_candles([100 + i for i in range(10)])
        wf_config = WalkForwardConfig(training_period=20, testing_period=10)

        result = WalkForwardValidator(zero_cost_config).validate(candles, buyer, opt_config, wf_config)

        assert result.segments == []
        assert result.status == OptimizationStatus.INSUFFICIENT_DATA

    def test_degradation(self):
        """测试衰减计算"""
        assert WalkForwardValidator.degradation(1.0, 0.5) == pytest.approx(0.5)
        assert WalkForwardValidator.degradation(1.0, 2.0) == pytest.approx(-1.0)
        assert WalkForwardValidator.degradation(-2.0, -1.0) == pytest.approx(-0.5)
        assert WalkForwardValidator.degradation(0.0, 5.0) == 0.0

    def test_degradation_minimize(self):
        """测试最小化目标下得分越低越好"""
        assert WalkForwardValidator.degradation(-10.0, 5.0, maximize=False) == pytest.approx(1.5)
        assert WalkForwardValidator.degradation(-10.0, -20.0, maximize=False) == pytest.approx(-1.0)
        assert WalkForwardValidator.degradation(0.0, 5.0, maximize=False) == 0.0

    def test_minimize_worse_out_of_sample_is_not_robust(self, zero_cost_config, make_candles, buyer):
        """测试最小化目标下样本外更差时衰减为正且不计入稳健窗口"""
        train = [120 - i for i in range(20)]
        test = [101 + i * 2 for i in range(10)]
        candles = make_candles(train + test)
        opt_config = OptimizationConfig(
            parameters={'max_position_size': {'min': 0.5, 'max': 1.0, 'step': 0.5}},
            objective='profit',
            direction='minimize',
        )
        wf_config = WalkForwardConfig(training_period=20, testing_period=10)

        result = WalkForwardValidator(zero_cost_config).validate(candles, buyer, opt_config, wf_config)

        segment = result.segments[0]
        assert segment.optimal_parameters == {'max_position_size': 1.0}
        assert segment.in_sample_score < 0 < segment.out_sample_score
        assert segment.degradation > 0
        assert result.robustness.robustness_score == 0.0

    def test_out_of_sample_better_gives_negative_degradation(
        self, zero_cost_config, make_candles, buyer, opt_config
    ):
        """测试样本外表现更好时衰减为负"""
        train = [100 + i * 0.1 for i in range(20)]
        test = [102 + i * 2 for i in range(10)]
        candles = make_candles(train + test)
        wf_config = WalkForwardConfig(training_period=20, testing_period=10)

        result = WalkForwardValidator(zero_cost_config).validate(candles, buyer, opt_config, wf_config)

        assert len(result.segments) == 1
        segment = result.segments[0]
        assert segment.optimal_parameters == {'max_position_size': 1.0}
        assert segment.out_sample_score > segment.in_sample_score > 0
        assert segment.degradation < 0
        assert segment.train_range == (candles[0].timestamp, candles[19].timestamp)
        assert segment.test_range == (candles[20].timestamp, candles[29].timestamp)
        assert result.robustness.robustness_score == 1.0
        assert result.stability.consistency_score == 1.0
        assert result.status == OptimizationStatus.COMPLETED

    def test_multiple_segments_aggregate(self, zero_cost_config, make_candles, buyer, opt_config):
        """测试多窗口汇总"""
        candles = make_candles([100 + i for i in range(60)])
        wf_config = WalkForwardConfig(training_period=20, testing_period=10)
        progress = []

        result = WalkForwardValidator(zero_cost_config, progress_callback=progress.append).validate(
            candles, buyer, opt_config, wf_config
        )

        assert len(result.segments) == 4
        assert [s.index for s in result.segments] == [0, 1, 2, 3]
        assert progress[-1]['progress'] == pytest.approx(1.0)
        assert result.total_out_sample_return == pytest.approx(
            sum(s.out_sample_result.total_return for s in result.segments)
        )
        assert result.stability.parameter_stability == 1.0

    def test_cancelled(self, zero_cost_config, make_candles, buyer, opt_config):
        """测试取消后状态为 CANCELLED"""
        token = CancellationToken()
        token.cancel()
        candles = make_candles([100 + i for i in range(60)])
        wf_config = WalkForwardConfig(training_period=20, testing_period=10)

        result = WalkForwardValidator(zero_cost_config, cancel_token=token).validate(
            candles, buyer, opt_config, wf_config
        )

        assert result.status == OptimizationStatus.CANCELLED
        assert result.segments == []
