"""
导出服务 - 回测结果、分析报告与K线数据导出为 JSON / CSV
"""
import dataclasses
import json
import math
from enum import Enum
from typing import Any, Optional, Sequence, Union

import numpy as np
import pandas as pd

from backtest.domain.candles import CANDLE_COLUMNS
from backtest.domain.models import BacktestResult, Candle, FullAnalysisReport, Trade
from logger_utils import get_logger

logger = get_logger("export")

TRADE_COLUMNS = [
    'id', 'timestamp', 'side', 'price', 'amount', 'profit', 'profitPercent', 'holdingPeriod', 'exitReason',
]


def to_serializable(value: Any) -> Any:
    """递归转换为可JSON序列化的结构（非有限浮点数转为 None）"""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_serializable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k if isinstance(k, (str, int, float, bool)) else str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return to_serializable(value.reset_index().to_dict('records'))
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, np.generic):
        return to_serializable(value.item())
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _write(content: str, path: Optional[str]) -> str:
    if path:
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
        logger.info(f"已导出: {path}")
    return content


class ExportService:
    """导出服务"""

    @staticmethod
    def export_json(obj: Any, path: Optional[str] = None) -> str:
        """完整结构，缩进2格"""
        content = json.dumps(to_serializable(obj), ensure_ascii=False, indent=2)
        return _write(content, path)

    @staticmethod
    def trades_to_frame(trades: Sequence[Trade]) -> pd.DataFrame:
        """交易记录扁平表，timestamp/price 取平仓时间与价格"""
        data = [
            {
                'id': t.id,
                'timestamp': t.exit_timestamp,
                'side': t.side.value,
                'price': t.exit_price,
                'amount': t.amount,
                'profit': t.pnl,
                'profitPercent': t.pnl_percent,
                'holdingPeriod': t.holding_period,
                'exitReason': t.exit_reason.value,
            }
            for t in trades
        ]
        return pd.DataFrame(data, columns=TRADE_COLUMNS)

    @classmethod
    def export_trades_csv(cls, trades: Sequence[Trade], path: Optional[str] = None) -> str:
        content = cls.trades_to_frame(trades).to_csv(index=False)
        return _write(content, path)

    @staticmethod
    def export_candles(candles: Sequence[Candle], fmt: str = 'json', path: Optional[str] = None) -> str:
        """K线导出，CSV表头 timestamp,open,high,low,close,volume"""
        if fmt == 'csv':
            df = pd.DataFrame(
                [(c.timestamp, c.open, c.high, c.low, c.close, c.volume) for c in candles],
                columns=CANDLE_COLUMNS
            )
            return _write(df.to_csv(index=False), path)
        if fmt != 'json':
            raise ValueError(f"不支持的导出格式: {fmt}")
        return ExportService.export_json(list(candles), path)

    @classmethod
    def export_report(
        cls,
        report: Union[BacktestResult, FullAnalysisReport, Any],
        fmt: str = 'json',
        path: Optional[str] = None
    ) -> str:
        """
        导出报告

        Args:
            report: 回测结果、完整分析报告或任意数据类
            fmt: json（完整结构）或 csv（交易记录）
            path: 写入的文件路径，None 时只返回内容
        """
        if fmt == 'json':
            return cls.export_json(report, path)
        if fmt != 'csv':
            raise ValueError(f"不支持的导出格式: {fmt}")

        if isinstance(report, FullAnalysisReport):
            result = report.optimized or report.baseline
        else:
            result = report
        trades = getattr(result, 'trades', None)
        if trades is None:
            raise ValueError(f"{type(report).__name__} 不包含交易记录，无法导出CSV")
        return cls.export_trades_csv(trades, path)
