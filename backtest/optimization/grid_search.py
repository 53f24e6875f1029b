"""
网格搜索算法 - 穷举参数组合
"""
import itertools
from typing import Dict, List

from backtest.domain.models import OptimizationResult, ParameterVector
from backtest.optimization.evaluator import EvaluationPool, rank_results
from config.validator import ParameterRange
from logger_utils import get_logger

logger = get_logger("optimizer")


class GridSearchOptimizer:
    """网格搜索优化器"""

    def __init__(self, pool: EvaluationPool):
        """
        Args:
            pool: 评估池（负责回测、打分、并行与取消）
        """
        self.pool = pool

    @staticmethod
    def generate_combinations(parameters: Dict[str, ParameterRange]) -> List[ParameterVector]:
        """
        生成全部参数组合（含端点的笛卡尔积）

        任一参数范围无效（step <= 0 或 min > max）时返回空列表。
        """
        if not parameters or any(not r.is_valid for r in parameters.values()):
            return []
        names = list(parameters.keys())
        values = [parameters[name].values() for name in names]
        return [dict(zip(names, combo)) for combo in itertools.product(*values)]

    @staticmethod
    def get_search_space_size(parameters: Dict[str, ParameterRange]) -> int:
        """计算搜索空间大小"""
        size = 1
        for param_range in parameters.values():
            size *= param_range.count()
        return size

    def optimize(self, parameters: Dict[str, ParameterRange], maximize: bool = True) -> List[OptimizationResult]:
        """
        执行网格搜索

        Args:
            parameters: 参数空间，如 {'period': ParameterRange(min=10, max=30, step=10)}
            maximize: True 时按得分降序

        Returns:
            已评估的结果（按得分排序）；停止后未评估的组合不出现
        """
        combinations = self.generate_combinations(parameters)
        if not combinations:
            logger.warning("网格搜索没有有效的参数组合")
            return []

        logger.info(f"网格搜索: {len(combinations)} 个参数组合")
        self.pool.expected_total = len(combinations)
        outcomes = self.pool.evaluate_batch(combinations)
        results = [r for r in outcomes if r is not None]

        return rank_results(results, maximize)
