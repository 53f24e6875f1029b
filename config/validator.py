"""
配置验证模块 - 使用 Pydantic 进行类型安全验证
"""
import math
from enum import Enum
from typing import Dict, List, Optional, Tuple, Literal, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from backtest.domain.errors import ConfigError, ErrorCode
from logger_utils import get_logger

logger = get_logger("config")

Number = Union[int, float]


class BacktestConfig(BaseModel):
    """回测配置"""
    start_date: Optional[int] = Field(None, description="开始时间（毫秒）")
    end_date: Optional[int] = Field(None, description="结束时间（毫秒）")
    initial_balance: float = Field(10000, gt=0, description="初始资金")
    commission: float = Field(0.0006, ge=0, lt=1, description="手续费率")
    slippage: float = Field(0.0005, ge=0, lt=1, description="滑点比例")
    max_position_size: float = Field(0.1, gt=0, le=1, description="单笔最大仓位（占现金余额）")
    stop_loss_percent: float = Field(0.02, ge=0, lt=1, description="止损比例，0 表示关闭")
    take_profit_percent: float = Field(0.04, ge=0, description="止盈比例，0 表示关闭")
    max_concurrent_trades: int = Field(1, ge=1, description="最大同时持仓数")
    min_trade_interval_ms: int = Field(0, ge=0, description="两次开仓最小间隔（毫秒）")
    allow_short: bool = Field(True, description="是否允许卖出信号开空")
    periods_per_year: Optional[float] = Field(None, gt=0, description="年化周期数，默认按K线间隔推算")

    @model_validator(mode='after')
    def validate_date_range(self):
        """验证时间区间"""
        if self.start_date is not None and self.end_date is not None and self.end_date < self.start_date:
            raise ValueError(f"结束时间早于开始时间: {self.start_date} > {self.end_date}")
        return self

    @classmethod
    def from_settings(cls, settings_module=None, **overrides) -> "BacktestConfig":
        """从 config.settings 构建，overrides 优先"""
        if settings_module is None:
            from config.settings import settings as settings_module

        values = {
            'initial_balance': settings_module.BACKTEST_INITIAL_BALANCE,
            'commission': settings_module.BACKTEST_COMMISSION,
            'slippage': settings_module.BACKTEST_SLIPPAGE,
            'max_position_size': settings_module.BACKTEST_MAX_POSITION_SIZE,
            'stop_loss_percent': settings_module.BACKTEST_STOP_LOSS,
            'take_profit_percent': settings_module.BACKTEST_TAKE_PROFIT,
            'max_concurrent_trades': settings_module.BACKTEST_MAX_CONCURRENT_TRADES,
            'min_trade_interval_ms': settings_module.BACKTEST_MIN_TRADE_INTERVAL_MS,
            'allow_short': getattr(settings_module, 'BACKTEST_ALLOW_SHORT', True),
        }
        values.update(overrides)
        return build_config(cls, **values)

    def with_overrides(self, overrides: Dict[str, Number]) -> "BacktestConfig":
        """返回应用覆盖后的新配置（重新校验）"""
        if not overrides:
            return self
        return build_config(BacktestConfig, **{**self.model_dump(), **overrides})


class ParameterRange(BaseModel):
    """
    参数取值范围 {min, max, step}

    step <= 0 或 min > max 不在此处报错，由 is_valid 标记，
    优化器据此返回空结果。
    """
    min: float
    max: float
    step: float

    @property
    def is_valid(self) -> bool:
        return self.step > 0 and self.min <= self.max

    @property
    def is_integral(self) -> bool:
        return all(float(v).is_integer() for v in (self.min, self.max, self.step))

    def count(self) -> int:
        """取值个数 floor((max-min)/step)+1"""
        if not self.is_valid:
            return 0
        # 1e-9 吸收 0.03-0.01 之类的浮点误差
        return int(math.floor((self.max - self.min) / self.step + 1e-9)) + 1

    def values(self) -> List[Number]:
        """包含端点的全部取值"""
        if self.is_integral:
            return [int(self.min) + i * int(self.step) for i in range(self.count())]
        return [round(self.min + i * self.step, 10) for i in range(self.count())]


class Objective(str, Enum):
    """优化目标"""
    PROFIT = "profit"
    SHARPE = "sharpe"
    WIN_RATE = "winRate"
    DRAWDOWN = "drawdown"
    CALMAR = "calmar"
    PROFIT_FACTOR = "profit_factor"
    COMPOSITE = "composite"


class GeneticConfig(BaseModel):
    """遗传算法配置"""
    population_size: int = Field(20, ge=2, description="种群大小")
    generations: int = Field(50, ge=1, description="迭代次数")
    crossover_rate: float = Field(0.7, ge=0, le=1, description="逐基因交叉概率")
    mutation_rate: float = Field(0.1, ge=0, le=1, description="逐基因变异概率")
    elite_fraction: float = Field(0.1, ge=0, lt=1, description="精英保留比例")
    tournament_size: int = Field(3, ge=1, description="锦标赛规模")

    @classmethod
    def from_settings(cls, settings_module=None) -> "GeneticConfig":
        if settings_module is None:
            from config.settings import settings as settings_module
        return cls(
            population_size=settings_module.GA_POPULATION_SIZE,
            generations=settings_module.GA_GENERATIONS,
            crossover_rate=settings_module.GA_CROSSOVER_RATE,
            mutation_rate=settings_module.GA_MUTATION_RATE,
        )


class OptimizationConfig(BaseModel):
    """参数优化配置"""
    parameters: Dict[str, ParameterRange] = Field(..., description="参数空间 name -> {min, max, step}")
    objective: Objective = Field(Objective.SHARPE, description="优化目标")
    direction: Literal['maximize', 'minimize'] = Field('maximize', description="排序方向")
    method: Literal['grid', 'genetic'] = Field('grid', description="搜索算法")
    genetic: Optional[GeneticConfig] = Field(None, description="遗传算法参数")
    seed: Optional[int] = Field(None, description="随机种子")
    max_workers: int = Field(1, ge=1, description="并行进程数，1 表示进程内顺序执行")
    time_budget_seconds: Optional[float] = Field(None, gt=0, description="总时间预算（秒）")
    top_fraction: float = Field(0.1, gt=0, le=1, description="稳健性评分使用的头部比例")

    @field_validator('parameters')
    @classmethod
    def validate_parameters(cls, v):
        """至少需要一个参数"""
        if not v:
            raise ValueError("参数空间不能为空")
        return v

    @model_validator(mode='after')
    def infer_method(self):
        """提供了 genetic 配置且未显式指定 method 时使用遗传算法"""
        if self.genetic is not None and 'method' not in self.model_fields_set:
            self.method = 'genetic'
        if self.method == 'genetic' and self.genetic is None:
            self.genetic = GeneticConfig()
        return self

    @property
    def maximize(self) -> bool:
        return self.direction == 'maximize'

    def search_space_size(self) -> int:
        size = 1
        for param_range in self.parameters.values():
            size *= param_range.count()
        return size

    def invalid_parameters(self) -> List[str]:
        return sorted(name for name, r in self.parameters.items() if not r.is_valid)


class WalkForwardConfig(BaseModel):
    """滚动验证配置（比例或绝对周期数）"""
    training_period: float = Field(..., gt=0, description="训练窗口")
    testing_period: float = Field(..., gt=0, description="测试窗口")
    reoptimization_frequency: Optional[float] = Field(None, gt=0, description="窗口步长，默认等于测试窗口")
    unit: Literal['fraction', 'periods'] = Field('periods', description="窗口单位")
    max_degradation: float = Field(0.5, ge=0, description="视为稳健的最大衰减")

    @model_validator(mode='after')
    def validate_fractions(self):
        """比例模式下各窗口不超过1"""
        if self.unit == 'fraction':
            for name in ('training_period', 'testing_period', 'reoptimization_frequency'):
                value = getattr(self, name)
                if value is not None and value > 1:
                    raise ValueError(f"{name} 为比例时必须 <= 1，当前: {value}")
        return self

    def resolve(self, total: int) -> Tuple[int, int, int]:
        """换算为 (训练K线数, 测试K线数, 步长)"""
        def to_periods(value: float) -> int:
            if self.unit == 'fraction':
                return max(1, int(value * total))
            return max(1, int(value))

        train = to_periods(self.training_period)
        test = to_periods(self.testing_period)
        step = to_periods(self.reoptimization_frequency) if self.reoptimization_frequency else test
        return train, test, step


def build_config(model_cls, **values):
    """构建配置模型，校验失败统一转换为 ConfigError"""
    try:
        return model_cls(**values)
    except ValidationError as e:
        raise ConfigError(
            ErrorCode.INVALID_CONFIG,
            f"{model_cls.__name__} 配置无效",
            {'errors': e.errors(include_url=False)}
        ) from e


def validate_config(settings_module) -> bool:
    """
    验证配置模块

    Args:
        settings_module: 配置模块对象

    Returns:
        bool: 验证是否通过
    """
    try:
        BacktestConfig.from_settings(settings_module)
        logger.info("✅ 回测配置验证通过")

        GeneticConfig.from_settings(settings_module)
        logger.info("✅ 遗传算法配置验证通过")

        if settings_module.WALK_FORWARD_UNIT not in ('fraction', 'periods'):
            raise ConfigError(ErrorCode.INVALID_CONFIG, f"未知的窗口单位: {settings_module.WALK_FORWARD_UNIT}")
        return True

    except (ConfigError, ValidationError) as e:
        logger.error(f"❌ 配置验证失败: {e}")
        return False


if __name__ == "__main__":
    from config.settings import settings as config
    validate_config(config)
