"""
绩效分析器
把回测结果转换为风险调整收益、尾部风险、回撤与交易层面的统计
"""
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Union

import pandas as pd

from backtest.domain.candles import candles_to_frame, ensure_candles
from backtest.domain.models import BacktestResult, Candle, ExitReason, PerformanceMetrics, Trade
from backtest.services.advisor_service import AdvisorService
from backtest.services.metrics_calculator import MS_PER_YEAR, MetricsCalculator
from backtest.services.scenario_analyzer import ScenarioAnalyzer
from logger_utils import get_logger

logger = get_logger("performance_analyzer")

_safe = MetricsCalculator.safe


class PerformanceAnalyzer:
    """绩效分析器"""

    def __init__(self, periods_per_year: Optional[float] = None):
        """
        Args:
            periods_per_year: 年化周期数，None 时按权益曲线时间间隔推算
        """
        self.periods_per_year = periods_per_year

    def calculate_metrics(
        self,
        result: BacktestResult,
        periods_per_year: Optional[float] = None
    ) -> PerformanceMetrics:
        """
        计算绩效指标

        Args:
            result: 回测结果
            periods_per_year: 覆盖实例上的年化周期数

        Returns:
            PerformanceMetrics
        """
        curve = result.equity_curve
        timestamps = [p.timestamp for p in curve]
        ppy = periods_per_year or self.periods_per_year or MetricsCalculator.periods_per_year(timestamps)

        returns = MetricsCalculator.period_returns([p.equity for p in curve])
        drawdown_percents = [p.drawdown_percent for p in curve]

        total_return = result.total_return
        total_return_percent = result.total_return_percent

        years = (timestamps[-1] - timestamps[0]) / MS_PER_YEAR if len(timestamps) >= 2 else 0.0
        annualized_return = _safe(total_return / years) if years > 0 else 0.0

        var_95, cvar_95 = MetricsCalculator.value_at_risk(returns, 0.95)
        var_99, cvar_99 = MetricsCalculator.value_at_risk(returns, 0.99)

        ulcer = MetricsCalculator.ulcer_index(drawdown_percents)
        in_drawdown = [dd for dd in drawdown_percents if dd > 0]
        squared_dd = sum(dd ** 2 for dd in drawdown_percents)
        max_dd_percent = result.max_drawdown_percent

        trade_stats = self._trade_statistics(result.trades)

        return PerformanceMetrics(
            total_return=total_return,
            total_return_percent=total_return_percent,
            annualized_return=annualized_return,
            volatility=MetricsCalculator.volatility(returns, ppy),
            sharpe_ratio=MetricsCalculator.sharpe(returns, ppy),
            sortino_ratio=MetricsCalculator.sortino(returns, ppy),
            calmar_ratio=_safe(annualized_return / result.max_drawdown) if result.max_drawdown > 0 else 0.0,
            max_drawdown=result.max_drawdown,
            max_drawdown_percent=max_dd_percent,
            average_drawdown=sum(in_drawdown) / len(in_drawdown) if in_drawdown else 0.0,
            max_drawdown_duration=MetricsCalculator.max_drawdown_duration(drawdown_percents),
            downside_deviation=MetricsCalculator.downside_deviation(returns),
            skewness=MetricsCalculator.skewness(returns),
            kurtosis=MetricsCalculator.kurtosis(returns),
            var_95=var_95,
            cvar_95=cvar_95,
            var_99=var_99,
            cvar_99=cvar_99,
            ulcer_index=ulcer,
            gain_to_pain_ratio=MetricsCalculator.gain_to_pain(returns),
            sterling_ratio=_safe(total_return_percent / (max_dd_percent + 10)) if max_dd_percent > 0 else 0.0,
            burke_ratio=_safe(total_return_percent / squared_dd ** 0.5) if squared_dd > 0 else 0.0,
            martin_ratio=_safe(total_return_percent / ulcer) if ulcer > 0 else 0.0,
            periods_per_year=ppy,
            monthly_returns=list(result.monthly_returns),
            **trade_stats,
        )

    @staticmethod
    def _trade_statistics(trades: Sequence[Trade]) -> Dict[str, Any]:
        """单次遍历交易列表得到交易层面统计"""
        total = wins = 0
        gross_profit = gross_loss = 0.0
        largest_win = largest_loss = 0.0
        holding_total = 0.0
        holding_min = holding_max = None
        exits: Counter = Counter()
        pnls = []

        for trade in trades:
            total += 1
            pnls.append(trade.pnl)
            if trade.pnl > 0:
                wins += 1
                gross_profit += trade.pnl
                largest_win = max(largest_win, trade.pnl)
            else:
                gross_loss += abs(trade.pnl)
                largest_loss = min(largest_loss, trade.pnl)
            holding_total += trade.holding_period
            holding_min = trade.holding_period if holding_min is None else min(holding_min, trade.holding_period)
            holding_max = trade.holding_period if holding_max is None else max(holding_max, trade.holding_period)
            exits[trade.exit_reason.value] += 1

        if total == 0:
            return {'exit_reason_distribution': {reason.value: 0 for reason in ExitReason}}

        losses = total - wins
        max_wins, max_losses = MetricsCalculator.streaks(pnls)
        return {
            'total_trades': total,
            'winning_trades': wins,
            'losing_trades': losses,
            'win_rate': wins / total,
            'profit_factor': gross_profit / gross_loss if gross_loss > 0 else 0.0,
            'expectancy': sum(pnls) / total,
            'average_win': gross_profit / wins if wins else 0.0,
            'average_loss': gross_loss / losses if losses else 0.0,
            'largest_win': largest_win,
            'largest_loss': largest_loss,
            'max_consecutive_wins': max_wins,
            'max_consecutive_losses': max_losses,
            'average_holding_period': holding_total / total,
            'min_holding_period': float(holding_min),
            'max_holding_period': float(holding_max),
            'exit_reason_distribution': {reason.value: exits.get(reason.value, 0) for reason in ExitReason},
        }

    def analyze_trade_patterns(self, trades: Sequence[Trade]) -> Dict[str, Any]:
        """交易模式分析：盈亏分布、时间分布、平仓原因分布"""
        stats = self._trade_statistics(trades)
        pnls = [t.pnl for t in trades]

        hourly = [0.0] * 24
        daily = [0.0] * 7
        monthly = [0.0] * 12
        for trade in trades:
            # 按开仓时间（UTC）归类
            dt = datetime.fromtimestamp(trade.entry_timestamp / 1000, tz=timezone.utc)
            hourly[dt.hour] += trade.pnl
            daily[dt.weekday()] += trade.pnl
            monthly[dt.month - 1] += trade.pnl

        return {
            'total_trades': stats.get('total_trades', 0),
            'winning_trades': stats.get('winning_trades', 0),
            'losing_trades': stats.get('losing_trades', 0),
            'average_win': stats.get('average_win', 0.0),
            'average_loss': stats.get('average_loss', 0.0),
            'largest_win': stats.get('largest_win', 0.0),
            'largest_loss': stats.get('largest_loss', 0.0),
            'average_holding_period': stats.get('average_holding_period', 0.0),
            'win_streak': stats.get('max_consecutive_wins', 0),
            'lose_streak': stats.get('max_consecutive_losses', 0),
            'profit_distribution': MetricsCalculator.distribution(pnls),
            'time_distribution': {
                'hourly_profits': hourly,
                'daily_profits': daily,
                'monthly_profits': monthly,
                'best_hour': hourly.index(max(hourly)) if trades else None,
                'best_day': daily.index(max(daily)) if trades else None,
                'best_month': monthly.index(max(monthly)) + 1 if trades else None,
            },
            'exit_reason_distribution': stats['exit_reason_distribution'],
        }

    def analyze_market_conditions(
        self,
        candles: Union[Sequence[Candle], pd.DataFrame],
        trades: Sequence[Trade],
        window_size: int = 100
    ) -> Dict[str, Any]:
        """按市场状态拆分交易表现"""
        klines = candles if isinstance(candles, pd.DataFrame) else candles_to_frame(ensure_candles(candles))
        return {
            'windows': ScenarioAnalyzer.identify_market_conditions(klines, window_size),
            'performance': ScenarioAnalyzer.analyze_by_scenario(trades, klines, window_size),
        }

    def generate_detailed_report(
        self,
        result: BacktestResult,
        candles: Union[Sequence[Candle], pd.DataFrame, None] = None,
        metrics: Optional[PerformanceMetrics] = None
    ) -> Dict[str, Any]:
        """
        生成详细报告

        Args:
            result: 回测结果
            candles: K线数据（可选，用于市场状态分析）
            metrics: 已计算的指标（可选）

        Returns:
            报告字典
        """
        metrics = metrics or self.calculate_metrics(result)
        trade_analysis = self.analyze_trade_patterns(result.trades)

        market_conditions = {}
        if candles is not None and len(candles) > 0:
            market_conditions = self.analyze_market_conditions(candles, result.trades)

        risk = {
            'max_drawdown_percent': metrics.max_drawdown_percent,
            'average_drawdown': metrics.average_drawdown,
            'drawdown_recovery_time': metrics.max_drawdown_duration,
            'var_95': metrics.var_95,
            'cvar_95': metrics.cvar_95,
            'var_99': metrics.var_99,
            'cvar_99': metrics.cvar_99,
            'ulcer_index': metrics.ulcer_index,
            'downside_deviation': metrics.downside_deviation,
        }

        recommendations = AdvisorService.generate_recommendations(
            metrics, market_conditions.get('performance', {})
        )

        logger.debug(f"详细报告生成完成: {metrics.total_trades} 笔交易, {len(recommendations)} 条建议")

        return {
            'summary': AdvisorService.generate_summary(metrics),
            'metrics': metrics,
            'trade_analysis': trade_analysis,
            'risk': risk,
            'market_conditions': market_conditions,
            'recommendations': recommendations,
        }
