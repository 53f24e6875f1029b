"""
场景识别服务 - 识别市场状态（牛市/熊市/震荡/高波动/低波动）
"""
import pandas as pd
import numpy as np
from typing import Dict, List, Any, Sequence

from backtest.domain.models import Trade

MARKET_STATES = ('bull', 'bear', 'sideways', 'volatile', 'calm')


class ScenarioAnalyzer:
    """场景分析器"""

    @staticmethod
    def detect_market_state(klines: pd.DataFrame) -> Dict[str, Any]:
        """
        检测市场状态

        Args:
            klines: K线数据

        Returns:
            {'condition', 'trend', 'volatility', 'momentum', 'volume'}
        """
        if len(klines) < 2:
            return {'condition': 'unknown', 'trend': 0.0, 'volatility': 0.0, 'momentum': 0.0, 'volume': 0.0}

        close = klines['close']
        start_price = float(close.iloc[0])
        end_price = float(close.iloc[-1])
        trend = (end_price - start_price) / start_price if start_price > 0 else 0.0

        volatility = float(close.pct_change().dropna().std(ddof=0))
        if not np.isfinite(volatility):
            volatility = 0.0

        lookback = float(close.iloc[-min(10, len(close))])
        momentum = (end_price - lookback) / lookback if lookback > 0 else 0.0

        # 波动优先，其次看趋势
        if volatility > 0.03:
            condition = 'volatile'
        elif volatility < 0.01:
            condition = 'calm'
        elif trend > 0.05:
            condition = 'bull'
        elif trend < -0.05:
            condition = 'bear'
        else:
            condition = 'sideways'

        return {
            'condition': condition,
            'trend': trend,
            'volatility': volatility,
            'momentum': momentum,
            'volume': float(klines['volume'].mean()) if 'volume' in klines else 0.0,
        }

    @staticmethod
    def identify_market_conditions(klines: pd.DataFrame, window_size: int = 100) -> List[Dict[str, Any]]:
        """按固定窗口切分并逐段识别市场状态"""
        conditions = []
        if window_size <= 0:
            return conditions

        for start in range(0, len(klines) - window_size + 1, window_size):
            window = klines.iloc[start:start + window_size]
            state = ScenarioAnalyzer.detect_market_state(window)
            state['start'] = int(window.index[0].value // 10 ** 6)
            state['end'] = int(window.index[-1].value // 10 ** 6)
            conditions.append(state)

        return conditions

    @staticmethod
    def analyze_by_scenario(
        trades: Sequence[Trade],
        klines: pd.DataFrame,
        window_size: int = 100
    ) -> Dict[str, Dict[str, Any]]:
        """
        按场景分析回测结果

        Args:
            trades: 交易记录
            klines: K线数据
            window_size: 场景窗口大小

        Returns:
            各场景的指标统计
        """
        conditions = ScenarioAnalyzer.identify_market_conditions(klines, window_size)
        scenarios: Dict[str, List[Trade]] = {state: [] for state in MARKET_STATES}

        # 按平仓时间所在窗口归类
        for trade in trades:
            for condition in conditions:
                if condition['start'] <= trade.exit_timestamp <= condition['end']:
                    scenarios[condition['condition']].append(trade)
                    break

        results = {}
        for state, state_trades in scenarios.items():
            periods = sum(1 for c in conditions if c['condition'] == state)
            if not state_trades:
                results[state] = {
                    'periods': periods,
                    'count': 0,
                    'win_rate': 0,
                    'avg_pnl': 0,
                    'total_pnl': 0
                }
                continue

            winning = [t for t in state_trades if t.pnl > 0]
            total_pnl = sum(t.pnl for t in state_trades)

            results[state] = {
                'periods': periods,
                'count': len(state_trades),
                'win_rate': len(winning) / len(state_trades),
                'avg_pnl': total_pnl / len(state_trades),
                'total_pnl': total_pnl
            }

        return results
