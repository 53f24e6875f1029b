"""
遗传算法 - 小规模参数优化（默认种群20，迭代50）
"""
import random
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from backtest.domain.models import OptimizationResult, ParameterVector
from backtest.optimization.evaluator import EvaluationPool, parameter_key, rank_results
from config.validator import GeneticConfig, ParameterRange
from logger_utils import get_logger

logger = get_logger("optimizer")


class GeneticOptimizer:
    """遗传算法优化器"""

    def __init__(self, pool: EvaluationPool, config: GeneticConfig, rng: Optional[random.Random] = None):
        """
        Args:
            pool: 评估池
            config: 种群大小、迭代次数、交叉率、变异率等
            rng: 可注入的随机源，相同种子结果可复现
        """
        self.pool = pool
        self.config = config
        self.rng = rng or random.Random()
        self._cache: Dict[tuple, Optional[OptimizationResult]] = {}

    def optimize(
        self,
        parameters: Dict[str, ParameterRange],
        maximize: bool = True
    ) -> Tuple[List[OptimizationResult], List[OptimizationResult], List[float]]:
        """
        执行遗传算法优化

        Args:
            parameters: 参数空间
            maximize: 适应度方向

        Returns:
            (最后一代按适应度排序的结果, 全部历史评估记录, 每代最优得分)
        """
        if not parameters or any(not r.is_valid for r in parameters.values()):
            logger.warning("遗传算法没有有效的参数空间")
            return [], [], []

        allowed = {name: r.values() for name, r in parameters.items()}
        population = self._initialize_population(allowed)
        self.pool.expected_total = self.config.population_size * self.config.generations

        history: List[OptimizationResult] = []
        convergence: List[float] = []
        last_generation: List[OptimizationResult] = []

        for gen in range(self.config.generations):
            evaluated = self._evaluate_population(population, gen)
            generation_results = [r for r in evaluated if r is not None]
            if not generation_results:
                break

            history.extend(generation_results)
            last_generation = generation_results
            best = rank_results(generation_results, maximize)[0]
            convergence.append(best.score)

            logger.info(
                f"第 {gen + 1}/{self.config.generations} 代: 最优得分 {best.score:.4f}, 参数 {best.parameters}"
            )

            if self.pool.should_stop() or gen == self.config.generations - 1:
                break

            fitness = [self._fitness(r, maximize) for r in evaluated]
            population = self._next_generation(population, fitness, allowed)

        return self._unique(rank_results(last_generation, maximize)), history, convergence

    def _initialize_population(self, allowed: Dict[str, List[float]]) -> List[ParameterVector]:
        """从各参数的取值集合中均匀采样"""
        return [
            {name: self.rng.choice(values) for name, values in allowed.items()}
            for _ in range(self.config.population_size)
        ]

    def _evaluate_population(self, population: List[ParameterVector], gen: int) -> List[Optional[OptimizationResult]]:
        """评估种群，相同个体只回测一次"""
        pending = []
        pending_keys = set()
        for individual in population:
            key = parameter_key(individual)
            if key not in self._cache and key not in pending_keys:
                pending_keys.add(key)
                pending.append(individual)

        if pending:
            outcomes = self.pool.evaluate_batch(pending, gen)
            for individual, outcome in zip(pending, outcomes):
                if outcome is not None or not self.pool.should_stop():
                    self._cache[parameter_key(individual)] = outcome

        evaluated = []
        for individual in population:
            cached = self._cache.get(parameter_key(individual))
            evaluated.append(replace(cached, generation=gen) if cached is not None else None)
        return evaluated

    @staticmethod
    def _fitness(result: Optional[OptimizationResult], maximize: bool) -> float:
        if result is None:
            return float('-inf')
        return result.score if maximize else -result.score

    def _next_generation(
        self,
        population: List[ParameterVector],
        fitness: List[float],
        allowed: Dict[str, List[float]]
    ) -> List[ParameterVector]:
        """精英保留 + 锦标赛选择 + 逐基因交叉与变异"""
        order = sorted(range(len(population)), key=lambda i: (-fitness[i], parameter_key(population[i])))
        elite_count = max(1, int(self.config.population_size * self.config.elite_fraction))
        next_population = [dict(population[i]) for i in order[:elite_count]]

        while len(next_population) < self.config.population_size:
            parent1 = self._selection(population, fitness)
            parent2 = self._selection(population, fitness)
            next_population.append(self._mutate(self._crossover(parent1, parent2), allowed))

        return next_population

    def _selection(self, population: List[ParameterVector], fitness: List[float]) -> ParameterVector:
        """锦标赛选择"""
        size = min(self.config.tournament_size, len(population))
        indices = self.rng.sample(range(len(population)), size)
        best_idx = max(indices, key=lambda i: fitness[i])
        return population[best_idx]

    def _crossover(self, parent1: ParameterVector, parent2: ParameterVector) -> ParameterVector:
        """逐基因交叉：以 crossover_rate 概率取 parent2 的基因"""
        return {
            name: parent2[name] if self.rng.random() < self.config.crossover_rate else value
            for name, value in parent1.items()
        }

    def _mutate(self, individual: ParameterVector, allowed: Dict[str, List[float]]) -> ParameterVector:
        """逐基因变异：从取值集合重新采样"""
        mutated = dict(individual)
        for name in mutated:
            if self.rng.random() < self.config.mutation_rate:
                mutated[name] = self.rng.choice(allowed[name])
        return mutated

    @staticmethod
    def _unique(results: List[OptimizationResult]) -> List[OptimizationResult]:
        seen = set()
        unique = []
        for r in results:
            key = parameter_key(r.parameters)
            if key not in seen:
                seen.add(key)
                unique.append(r)
        return unique
