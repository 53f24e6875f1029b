"""
BacktestOrchestrator 单元测试
"""

import json

import pytest

from backtest.data_provider import SyntheticDataProvider
from backtest.adapters.cache.memory_cache import MemoryCache
from backtest.domain.errors import DataError, ErrorCode
from backtest.domain.models import OptimizationStatus
from backtest.services.data_service import HistoricalDataStore
from backtest.services.orchestrator import BacktestOrchestrator
from config.validator import BacktestConfig, OptimizationConfig, WalkForwardConfig


START_TS = 1_704_067_200_000
HOUR_MS = 3_600_000

EMA_PARAMETERS = {
    'short_period': {'min': 5, 'max': 10, 'step': 5},
    'long_period': {'min': 20, 'max': 30, 'step': 10},
}


class TestBacktestOrchestrator:
    """BacktestOrchestrator 测试类"""

    @pytest.fixture
    def orchestrator(self, default_config):
        return BacktestOrchestrator(default_config)

    @pytest.fixture
    def opt_config(self):
        return OptimizationConfig(parameters=EMA_PARAMETERS, objective='profit')

    def test_load_candles_without_store(self, orchestrator):
        """测试未提供K线也没有数据仓库"""
        with pytest.raises(DataError) as exc_info:
            orchestrator.load_candles()

        assert exc_info.value.error_code == ErrorCode.EMPTY_DATA

    def test_load_candles_from_store(self):
        """测试从数据仓库加载"""
        config = BacktestConfig(start_date=START_TS, end_date=START_TS + 47 * HOUR_MS)
        store = HistoricalDataStore(SyntheticDataProvider(seed=4), cache=MemoryCache())
        orchestrator = BacktestOrchestrator(config, data_store=store, symbol="BTC/USDT", timeframe="1h")

        candles = orchestrator.load_candles()

        assert len(candles) == 48
        assert candles[0].timestamp == START_TS

    def test_run_backtest(self, orchestrator, synthetic_candles):
        """测试单次回测"""
        result = orchestrator.run_backtest('ema_cross', {'short_period': 5, 'long_period': 20}, synthetic_candles)

        assert result.processed_candles == len(synthetic_candles)
        assert result.initial_balance == 10000

    def test_optimize_and_backtest(self, orchestrator, synthetic_candles, opt_config):
        """测试优化后用最优参数回测"""
        report, result = orchestrator.optimize_and_backtest('ema_cross', opt_config, synthetic_candles)

        assert report.status == OptimizationStatus.COMPLETED
        assert result is not None
        assert result.total_pnl == pytest.approx(report.best.result.total_pnl)

    def test_optimize_and_backtest_without_best(self, orchestrator, synthetic_candles):
        """测试没有有效组合时不再回测"""
        opt_config = OptimizationConfig(parameters={'short_period': {'min': 10, 'max': 5, 'step': 1}})

        report, result = orchestrator.optimize_and_backtest('ema_cross', opt_config, synthetic_candles)

        assert report.status == OptimizationStatus.NO_VALID_COMBINATIONS
        assert result is None

    def test_benchmark(self, orchestrator, synthetic_candles):
        """测试买入持有基准"""
        benchmark = orchestrator.benchmark('hold', candles=synthetic_candles)

        assert benchmark.start_price == synthetic_candles[0].close
        assert benchmark.end_price == synthetic_candles[-1].close

    def test_run_full_analysis(self, orchestrator, synthetic_candles, opt_config):
        """测试完整分析流程"""
        wf_config = WalkForwardConfig(training_period=0.5, testing_period=0.25, unit='fraction')

        report = orchestrator.run_full_analysis('ema_cross', opt_config, wf_config, candles=synthetic_candles)

        assert report.data_quality.quality_score == pytest.approx(1.0)
        assert report.baseline is not None
        assert report.optimized is not None
        assert report.optimization.search_space_size == 4
        assert {p.name for p in report.comparison.strategies} == {'baseline', 'optimized'}
        assert report.benchmark.start_price == synthetic_candles[0].close
        assert len(report.walk_forward.segments) == 2
        assert all(0 <= v <= 100 for v in report.target_analysis['achievements'].values())
        assert 0 <= report.target_analysis['overall_score'] <= 100
        assert set(report.detailed_report) >= {'summary', 'metrics', 'risk', 'trade_analysis'}
        assert report.summary

    def test_run_full_analysis_without_walk_forward(self, orchestrator, synthetic_candles, opt_config):
        """测试不做滚动验证"""
        report = orchestrator.run_full_analysis('ema_cross', opt_config, candles=synthetic_candles)

        assert report.walk_forward is None
        assert report.target_analysis['robustness'] == 0.0

    def test_export_report(self, orchestrator, synthetic_candles, opt_config, tmp_path):
        """测试完整报告导出为JSON与CSV"""
        report = orchestrator.run_full_analysis('ema_cross', opt_config, candles=synthetic_candles)

        data = json.loads(orchestrator.export_report(report, 'json'))
        csv_content = orchestrator.export_report(report, 'csv', str(tmp_path / "trades.csv"))

        assert data['optimization']['method'] == 'grid'
        assert data['optimization']['status'] == 'completed'
        assert csv_content.splitlines()[0] == (
            'id,timestamp,side,price,amount,profit,profitPercent,holdingPeriod,exitReason'
        )
        assert (tmp_path / "trades.csv").exists()
