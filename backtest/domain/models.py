"""
领域模型

一次回测/优化调用内创建并消费的全部数据结构。除显式导出外，
这些对象都不会在调用结束后保留。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

# 参数名 -> 数值
ParameterVector = Dict[str, float]


class SignalAction(str, Enum):
    """交易信号动作"""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class PositionSide(str, Enum):
    """持仓方向"""
    LONG = "long"
    SHORT = "short"


class ExitReason(str, Enum):
    """平仓原因"""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    SIGNAL = "signal"
    END_OF_BACKTEST = "end of backtest"


class EngineState(str, Enum):
    """模拟引擎状态: Idle -> Running -> Flushing -> Done"""
    IDLE = "idle"
    RUNNING = "running"
    FLUSHING = "flushing"
    DONE = "done"


@dataclass(frozen=True)
class Candle:
    """K线（时间戳为毫秒）"""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def is_valid(self) -> bool:
        """价格为正、高低点包住开收盘、成交量非负"""
        if self.timestamp <= 0:
            return False
        if min(self.open, self.high, self.low, self.close) <= 0:
            return False
        if self.volume < 0:
            return False
        return self.high >= max(self.open, self.close) and self.low <= min(self.open, self.close)


@dataclass(frozen=True)
class Signal:
    """
    策略每个tick产生的信号

    amount <= 0 表示由引擎按 max_position_size 计算下单数量；
    stop_loss / take_profit 为可选的动态止损止盈价格。
    """
    action: SignalAction = SignalAction.HOLD
    confidence: float = 0.0
    price: float = 0.0
    amount: float = 0.0
    reason: str = ""
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @classmethod
    def hold(cls, reason: str = "") -> "Signal":
        return cls(SignalAction.HOLD, reason=reason)

    @property
    def is_entry(self) -> bool:
        return self.action in (SignalAction.BUY, SignalAction.SELL)


@dataclass
class Position:
    """持仓，生命周期内由模拟引擎独占"""
    id: int
    side: PositionSide
    amount: float
    entry_price: float
    entry_timestamp: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_commission: float = 0.0
    entry_slippage: float = 0.0
    order_ref: Optional[str] = None

    def unrealized_pnl(self, price: float) -> float:
        if self.side == PositionSide.LONG:
            return (price - self.entry_price) * self.amount
        return (self.entry_price - price) * self.amount

    def market_value(self, price: float) -> float:
        """
        按市价估值：多头为持仓市值，空头为保证金加浮动盈亏（不低于0）
        """
        if self.side == PositionSide.LONG:
            return price * self.amount
        return max(0.0, self.entry_price * self.amount + self.unrealized_pnl(price))


@dataclass(frozen=True)
class Trade:
    """平仓后生成的不可变交易记录"""
    id: int
    position_id: int
    side: PositionSide
    entry_timestamp: int
    exit_timestamp: int
    entry_price: float
    exit_price: float
    amount: float
    commission: float
    slippage: float
    pnl: float
    pnl_percent: float
    holding_period: int
    exit_reason: ExitReason
    order_ref: Optional[str] = None

    @property
    def is_win(self) -> bool:
        return self.pnl > 0


@dataclass(frozen=True)
class EquityPoint:
    """权益曲线点（drawdown 为相对峰值的比例）"""
    timestamp: int
    equity: float
    balance: float
    drawdown: float
    drawdown_percent: float


@dataclass(frozen=True)
class DrawdownPoint:
    """回撤曲线点（drawdown 为金额）"""
    timestamp: int
    drawdown: float
    drawdown_percent: float
    underwater: float


@dataclass(frozen=True)
class MonthlyReturn:
    """月度收益"""
    year: int
    month: int
    monthly_return: float
    return_percent: float


@dataclass
class BacktestResult:
    """回测结果，模拟引擎交给绩效分析器的唯一产物"""
    initial_balance: float
    final_balance: float
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    drawdown_curve: List[DrawdownPoint] = field(default_factory=list)
    monthly_returns: List[MonthlyReturn] = field(default_factory=list)

    # 收益
    total_pnl: float = 0.0
    total_return: float = 0.0
    total_return_percent: float = 0.0
    total_commission: float = 0.0
    total_slippage: float = 0.0

    # 回撤 / 上涨
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    max_drawdown_amount: float = 0.0
    max_runup: float = 0.0
    max_runup_percent: float = 0.0

    # 交易统计
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_holding_period: float = 0.0
    expectancy: float = 0.0
    calmar_ratio: float = 0.0
    recovery_factor: float = 0.0

    # 运行诊断
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    processed_candles: int = 0
    skipped_candles: int = 0
    strategy_errors: List[Tuple[int, str]] = field(default_factory=list)
    rejected_signals: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PerformanceMetrics:
    """绩效指标（计算后只读）"""
    total_return: float = 0.0
    total_return_percent: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    average_drawdown: float = 0.0
    max_drawdown_duration: int = 0
    downside_deviation: float = 0.0
    skewness: float = 0.0
    kurtosis: float = 0.0
    var_95: float = 0.0
    cvar_95: float = 0.0
    var_99: float = 0.0
    cvar_99: float = 0.0
    ulcer_index: float = 0.0
    gain_to_pain_ratio: float = 0.0
    sterling_ratio: float = 0.0
    burke_ratio: float = 0.0
    martin_ratio: float = 0.0

    # 交易层面
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_holding_period: float = 0.0
    min_holding_period: float = 0.0
    max_holding_period: float = 0.0

    periods_per_year: float = 0.0
    exit_reason_distribution: Dict[str, int] = field(default_factory=dict)
    monthly_returns: List[MonthlyReturn] = field(default_factory=list)


@dataclass(frozen=True)
class OptimizationResult:
    """单个参数组合的评估结果"""
    parameters: ParameterVector
    result: BacktestResult
    metrics: PerformanceMetrics
    score: float
    generation: Optional[int] = None


class OptimizationStatus(str, Enum):
    """优化结束状态（不抛异常，调用方据此继续批处理）"""
    COMPLETED = "completed"
    NO_VALID_COMBINATIONS = "no_valid_combinations"
    INSUFFICIENT_DATA = "insufficient_data"
    CANCELLED = "cancelled"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"


@dataclass
class OptimizationReport:
    """参数优化输出"""
    method: str
    objective: str
    direction: str
    status: OptimizationStatus = OptimizationStatus.COMPLETED
    results: List[OptimizationResult] = field(default_factory=list)
    evaluated: List[OptimizationResult] = field(default_factory=list)
    search_space_size: int = 0
    convergence: List[float] = field(default_factory=list)
    overfitting_score: float = 0.0
    robustness_score: float = 0.0
    elapsed_seconds: float = 0.0
    message: str = ""

    @property
    def best(self) -> Optional[OptimizationResult]:
        return self.results[0] if self.results else None


@dataclass(frozen=True)
class WalkForwardSegment:
    """滚动验证窗口"""
    index: int
    train_range: Tuple[int, int]
    test_range: Tuple[int, int]
    optimal_parameters: ParameterVector
    in_sample_result: BacktestResult
    out_sample_result: BacktestResult
    in_sample_score: float
    out_sample_score: float
    degradation: float


@dataclass(frozen=True)
class StabilityMetrics:
    """滚动验证稳定性"""
    return_dispersion: float = 0.0
    performance_stability: float = 0.0
    parameter_stability: float = 0.0
    consistency_score: float = 0.0


@dataclass(frozen=True)
class RobustnessMetrics:
    """滚动验证稳健性"""
    robustness_score: float = 0.0
    average_degradation: float = 0.0
    bounded_segments: int = 0


@dataclass
class WalkForwardResult:
    """滚动验证输出"""
    segments: List[WalkForwardSegment] = field(default_factory=list)
    stability: StabilityMetrics = field(default_factory=StabilityMetrics)
    robustness: RobustnessMetrics = field(default_factory=RobustnessMetrics)
    status: OptimizationStatus = OptimizationStatus.COMPLETED
    total_out_sample_return: float = 0.0
    average_out_sample_return: float = 0.0
    average_in_sample_score: float = 0.0
    average_out_sample_score: float = 0.0
    message: str = ""


@dataclass(frozen=True)
class DataGap:
    """数据缺口"""
    start: int
    end: int
    duration: int
    missing: int
    severity: str


@dataclass(frozen=True)
class DataQualityReport:
    """数据质量报告"""
    total_candles: int = 0
    missing_candles: int = 0
    duplicate_candles: int = 0
    invalid_candles: int = 0
    gaps: List[DataGap] = field(default_factory=list)
    quality_score: float = 0.0
    timeframe: str = ""

    @property
    def gaps_count(self) -> int:
        return len(self.gaps)


@dataclass
class BenchmarkComparison:
    """与买入持有基准对比"""
    strategy_return: float
    benchmark_return: float
    excess_return: float
    benchmark_max_drawdown: float
    outperformed: bool
    start_price: float = 0.0
    end_price: float = 0.0


@dataclass
class StrategyPerformance:
    """单个策略在对比中的表现"""
    name: str
    parameters: ParameterVector
    result: BacktestResult
    metrics: PerformanceMetrics
    score: float = 0.0
    rank: int = 0
    score_components: Dict[str, float] = field(default_factory=dict)


@dataclass
class StrategyComparison:
    """多策略对比结果"""
    strategies: List[StrategyPerformance] = field(default_factory=list)
    correlation: List[List[float]] = field(default_factory=list)

    @property
    def ranking(self) -> List[StrategyPerformance]:
        return sorted(self.strategies, key=lambda s: s.rank)


@dataclass
class FullAnalysisReport:
    """完整分析报告"""
    data_quality: DataQualityReport
    baseline: BacktestResult
    baseline_metrics: PerformanceMetrics
    optimization: OptimizationReport
    optimized: Optional[BacktestResult]
    optimized_metrics: Optional[PerformanceMetrics]
    comparison: StrategyComparison
    benchmark: BenchmarkComparison
    walk_forward: Optional[WalkForwardResult] = None
    target_analysis: Dict[str, Any] = field(default_factory=dict)
    detailed_report: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[Dict[str, str]] = field(default_factory=list)
    summary: str = ""
