"""
建议生成器 - 基于回测结果生成优化建议
"""
from typing import Any, Dict, List, Optional

from backtest.domain.models import OptimizationReport, PerformanceMetrics, WalkForwardResult

# 目标：年化15%、最大回撤10%、胜率55%、夏普1.5
DEFAULT_TARGETS = {
    'annual_return': 15.0,
    'max_drawdown': 10.0,
    'win_rate': 55.0,
    'sharpe_ratio': 1.5,
}

PRIORITY_ORDER = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}


class AdvisorService:
    """建议生成服务"""

    @staticmethod
    def generate_recommendations(
        metrics: PerformanceMetrics,
        scenario_analysis: Optional[Dict[str, Dict[str, Any]]] = None,
        walk_forward: Optional[WalkForwardResult] = None,
        optimization: Optional[OptimizationReport] = None,
        target_analysis: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, str]]:
        """
        生成优化建议

        Args:
            metrics: 绩效指标
            scenario_analysis: 场景分析结果
            walk_forward: 滚动验证结果
            optimization: 参数优化结果
            target_analysis: 目标达成分析

        Returns:
            建议列表（按优先级排序）
        """
        recommendations = []

        # 1. 胜率分析
        if metrics.total_trades and metrics.win_rate < 0.4:
            recommendations.append({
                'type': 'strategy',
                'priority': 'high',
                'title': '胜率过低',
                'content': f'当前胜率仅{metrics.win_rate*100:.1f}%，建议优化入场条件，提高信号质量。可以考虑增加过滤器或调整参数阈值。',
                'action': '调整策略参数以提高信号准确性'
            })

        # 2. 盈亏比分析
        if metrics.total_trades and metrics.profit_factor < 1.5:
            recommendations.append({
                'type': 'risk',
                'priority': 'high',
                'title': '盈亏比不足',
                'content': f'当前盈亏比为{metrics.profit_factor:.2f}，建议优化止盈止损策略。可以考虑扩大止盈目标或收紧止损。',
                'action': '调整风险收益比，扩大盈利空间'
            })

        # 3. 最大回撤分析
        if metrics.max_drawdown > 0.2:
            recommendations.append({
                'type': 'risk',
                'priority': 'critical',
                'title': '回撤过大',
                'content': f'最大回撤达到{metrics.max_drawdown*100:.1f}%，风险过高。建议降低仓位或增加风控条件。',
                'action': '降低单笔交易仓位或增加止损保护'
            })

        # 4. 场景适应性分析
        active = {k: v for k, v in (scenario_analysis or {}).items() if v.get('count', 0) > 0}
        if len(active) >= 2:
            best_scenario = max(active.items(), key=lambda x: x[1].get('win_rate', 0))
            worst_scenario = min(active.items(), key=lambda x: x[1].get('win_rate', 0))

            if best_scenario[1].get('win_rate', 0) - worst_scenario[1].get('win_rate', 0) > 0.3:
                recommendations.append({
                    'type': 'parameter',
                    'priority': 'medium',
                    'title': '场景适应性差异大',
                    'content': f'策略在{best_scenario[0]}表现最好（胜率{best_scenario[1]["win_rate"]*100:.1f}%），'
                              f'但在{worst_scenario[0]}表现较差（胜率{worst_scenario[1]["win_rate"]*100:.1f}%）。'
                              f'建议添加市场状态过滤器，仅在适合的市场环境下交易。',
                    'action': f'添加市场状态检测，避免在{worst_scenario[0]}环境下开仓'
                })

        # 5. 交易频率分析
        if metrics.total_trades < 10:
            recommendations.append({
                'type': 'parameter',
                'priority': 'medium',
                'title': '交易次数过少',
                'content': f'回测期间仅产生{metrics.total_trades}笔交易，样本量不足。建议放宽入场条件或延长回测周期。',
                'action': '调整参数以增加交易频率，获得更多样本'
            })
        elif metrics.total_trades > 1000:
            recommendations.append({
                'type': 'parameter',
                'priority': 'low',
                'title': '交易频率过高',
                'content': f'回测期间产生{metrics.total_trades}笔交易，手续费与滑点影响显著。建议提高入场门槛。',
                'action': '收紧入场条件，减少低质量信号'
            })

        # 6. 夏普比率分析
        if metrics.sharpe_ratio > 1.5:
            recommendations.append({
                'type': 'info',
                'priority': 'low',
                'title': '风险调整后收益优秀',
                'content': f'夏普比率为{metrics.sharpe_ratio:.2f}，风险调整后收益优秀（excellent risk-adjusted return）。',
                'action': '保持当前参数，持续跟踪样本外表现'
            })
        elif metrics.sharpe_ratio < 1.0:
            recommendations.append({
                'type': 'strategy',
                'priority': 'high',
                'title': '风险调整后收益不足',
                'content': f'夏普比率为{metrics.sharpe_ratio:.2f}，低于1.0。建议优化策略以提高稳定性和收益率。',
                'action': '提高策略稳定性，降低收益波动'
            })

        # 7. 滚动验证
        if walk_forward is not None and walk_forward.segments:
            if walk_forward.stability.consistency_score < 0.7:
                recommendations.append({
                    'type': 'parameter',
                    'priority': 'medium',
                    'title': '参数稳定性不足',
                    'content': f'样本外盈利窗口占比{walk_forward.stability.consistency_score*100:.1f}%，参数在不同时间段表现不一致。',
                    'action': '放宽参数范围，选择更稳健的参数区间'
                })
            if walk_forward.robustness.robustness_score < 0.6:
                recommendations.append({
                    'type': 'risk',
                    'priority': 'high',
                    'title': '疑似过拟合',
                    'content': f'仅{walk_forward.robustness.robustness_score*100:.1f}%的窗口样本外衰减在可接受范围内。',
                    'action': '简化模型或延长训练窗口'
                })

        # 8. 参数敏感度
        if optimization is not None and optimization.overfitting_score > 1.0:
            recommendations.append({
                'type': 'parameter',
                'priority': 'medium',
                'title': '参数敏感度高',
                'content': f'最优与最差参数组合的得分差异为{optimization.overfitting_score:.2f}倍，结果对参数选择敏感。',
                'action': '优先选择邻域表现平稳的参数组合'
            })

        # 9. 目标达成
        if target_analysis:
            achievements = target_analysis.get('achievements', {})
            if achievements.get('annual_return', 100) < 80:
                recommendations.append({
                    'type': 'strategy',
                    'priority': 'medium',
                    'title': '年化收益未达标',
                    'content': f'年化收益目标达成度{achievements["annual_return"]:.1f}%。',
                    'action': '考虑更积极的仓位管理或调整进出场条件'
                })

        recommendations.sort(key=lambda x: PRIORITY_ORDER.get(x['priority'], 999))

        return recommendations

    @staticmethod
    def analyze_targets(
        optimized: PerformanceMetrics,
        baseline: PerformanceMetrics,
        walk_forward: Optional[WalkForwardResult] = None,
        targets: Optional[Dict[str, float]] = None
    ) -> Dict[str, Any]:
        """目标达成度（每项上限100）与相对基线的改进"""
        targets = targets or DEFAULT_TARGETS

        def capped(value: float) -> float:
            return max(0.0, min(100.0, value))

        achievements = {
            'annual_return': capped(optimized.annualized_return * 100 / targets['annual_return'] * 100),
            'max_drawdown': capped(targets['max_drawdown'] / max(optimized.max_drawdown_percent, 0.1) * 100),
            'win_rate': capped(optimized.win_rate * 100 / targets['win_rate'] * 100),
            'sharpe_ratio': capped(optimized.sharpe_ratio / targets['sharpe_ratio'] * 100),
        }

        return {
            'targets': dict(targets),
            'achievements': achievements,
            'overall_score': sum(achievements.values()) / len(achievements),
            'improvement': {
                'annual_return': optimized.annualized_return - baseline.annualized_return,
                'max_drawdown': baseline.max_drawdown_percent - optimized.max_drawdown_percent,
                'win_rate': optimized.win_rate - baseline.win_rate,
                'sharpe_ratio': optimized.sharpe_ratio - baseline.sharpe_ratio,
            },
            'robustness': walk_forward.robustness.robustness_score if walk_forward else 0.0,
            'stability': walk_forward.stability.consistency_score if walk_forward else 0.0,
        }

    @staticmethod
    def generate_summary(metrics: PerformanceMetrics) -> str:
        """生成回测摘要"""
        total_return = metrics.total_return_percent
        sharpe = metrics.sharpe_ratio
        max_drawdown = metrics.max_drawdown

        if total_return > 20 and sharpe > 1.5 and max_drawdown < 0.15:
            grade = '优秀'
            summary = '策略表现优异，收益稳定且风险可控。'
        elif total_return > 10 and sharpe > 1.0 and max_drawdown < 0.25:
            grade = '良好'
            summary = '策略表现良好，但仍有优化空间。'
        elif total_return > 0 and sharpe > 0.5:
            grade = '一般'
            summary = '策略盈利但不稳定，需要进一步优化。'
        else:
            grade = '较差'
            summary = '策略表现不佳，建议重新设计或调整参数。'

        return (
            f'【{grade}】{summary} 总收益率{total_return:.2f}%，胜率{metrics.win_rate*100:.1f}%，'
            f'夏普比率{sharpe:.2f}，最大回撤{max_drawdown*100:.1f}%。'
        )
