"""
ExportService 单元测试
"""

import json

import pytest

from backtest.engine import SimulationEngine
from backtest.services.export_service import TRADE_COLUMNS, ExportService, to_serializable


class TestExportService:
    """ExportService 测试类"""

    @pytest.fixture
    def result(self, zero_cost_config, make_candles, scripted):
        candles = make_candles([100, 101, 102, 103])
        return SimulationEngine().run(candles, scripted(['buy']), zero_cost_config)

    def test_trades_csv_header(self, result):
        """测试交易CSV表头与行数"""
        content = ExportService.export_trades_csv(result.trades)
        lines = content.strip().splitlines()

        assert lines[0] == ','.join(TRADE_COLUMNS)
        assert lines[0] == 'id,timestamp,side,price,amount,profit,profitPercent,holdingPeriod,exitReason'
        assert len(lines) == 2
        assert lines[1].endswith('end of backtest')

    def test_empty_trades_csv(self):
        """测试无交易时只有表头"""
        content = ExportService.export_trades_csv([])

        assert content.strip() == ','.join(TRADE_COLUMNS)

    def test_report_json(self, result):
        """测试回测结果JSON导出"""
        data = json.loads(ExportService.export_report(result, 'json'))

        assert data['initial_balance'] == 100000
        assert data['total_trades'] == 1
        assert data['trades'][0]['side'] == 'long'
        assert data['trades'][0]['exit_reason'] == 'end of backtest'
        assert len(data['equity_curve']) == 4

    def test_report_csv_writes_file(self, result, tmp_path):
        """测试CSV写入文件"""
        path = tmp_path / "trades.csv"

        content = ExportService.export_report(result, 'csv', str(path))

        assert path.read_text(encoding='utf-8') == content

    def test_candles_csv(self, make_candles):
        """测试K线CSV导出"""
        content = ExportService.export_candles(make_candles([100, 101]), 'csv')
        lines = content.strip().splitlines()

        assert lines[0] == 'timestamp,open,high,low,close,volume'
        assert len(lines) == 3

    def test_candles_json(self, make_candles):
        """测试K线JSON导出"""
        candles = make_candles([100, 101])

        data = json.loads(ExportService.export_candles(candles))

        assert data[1]['timestamp'] == candles[1].timestamp
        assert data[1]['close'] == 101

    def test_unknown_format(self, result, make_candles):
        """测试不支持的格式"""
        with pytest.raises(ValueError):
            ExportService.export_report(result, 'xml')
        with pytest.raises(ValueError):
            ExportService.export_candles(make_candles([100]), 'parquet')

    def test_non_finite_floats_become_null(self):
        """测试 NaN / inf 导出为 null"""
        data = json.loads(ExportService.export_json({'a': float('nan'), 'b': [float('inf'), 1.5]}))

        assert data == {'a': None, 'b': [None, 1.5]}

    def test_to_serializable_tuple_keys(self):
        """测试非字符串键转为字符串"""
        assert to_serializable({(1, 2): (3, 4)}) == {'(1, 2)': [3, 4]}
