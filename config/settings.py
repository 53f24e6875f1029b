"""
配置文件 - 回测与参数优化
所有默认值均可通过环境变量或 .env 覆盖
"""
import os
import sys
from dotenv import load_dotenv

# 加载 .env 文件
load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


# ==================== 数据源配置 ====================

DATA_EXCHANGE = os.getenv("DATA_EXCHANGE", "binance")    # ccxt 交易所 id
SYMBOL = os.getenv("BACKTEST_SYMBOL", "BTC/USDT")
TIMEFRAME = os.getenv("BACKTEST_TIMEFRAME", "15m")
DATA_DIR = os.getenv("DATA_DIR", "data")                 # K线文件缓存目录
DATA_CACHE_TTL = _env_int("DATA_CACHE_TTL", 3600)        # 内存缓存过期时间（秒）
DATA_CACHE_MAX_MB = _env_int("DATA_CACHE_MAX_MB", 100)   # 内存缓存上限
FETCH_LIMIT = 1000                                       # 单次请求K线数量

# ==================== 回测账户配置 ====================

BACKTEST_INITIAL_BALANCE = _env_float("BACKTEST_INITIAL_BALANCE", 10000)
BACKTEST_COMMISSION = _env_float("BACKTEST_COMMISSION", 0.0006)       # 手续费率
BACKTEST_SLIPPAGE = _env_float("BACKTEST_SLIPPAGE", 0.0005)           # 滑点比例
BACKTEST_MAX_POSITION_SIZE = _env_float("BACKTEST_MAX_POSITION_SIZE", 0.1)  # 单笔最大仓位（占余额）
BACKTEST_ALLOW_SHORT = _env_bool("BACKTEST_ALLOW_SHORT", True)

# ==================== 止损止盈配置 ====================

BACKTEST_STOP_LOSS = _env_float("BACKTEST_STOP_LOSS", 0.02)       # 止损比例 2%，0 表示关闭
BACKTEST_TAKE_PROFIT = _env_float("BACKTEST_TAKE_PROFIT", 0.04)   # 止盈比例 4%，0 表示关闭

# ==================== 交易频率控制 ====================

BACKTEST_MAX_CONCURRENT_TRADES = _env_int("BACKTEST_MAX_CONCURRENT_TRADES", 1)
BACKTEST_MIN_TRADE_INTERVAL_MS = _env_int("BACKTEST_MIN_TRADE_INTERVAL_MS", 0)

# ==================== 参数优化配置 ====================

OPTIMIZER_OBJECTIVE = os.getenv("OPTIMIZER_OBJECTIVE", "sharpe")
OPTIMIZER_MAX_WORKERS = _env_int("OPTIMIZER_MAX_WORKERS", os.cpu_count() or 1)
OPTIMIZER_TIME_BUDGET = _env_float("OPTIMIZER_TIME_BUDGET", 0)   # 秒，0 表示不限制
OPTIMIZER_SEED = _env_int("OPTIMIZER_SEED", 42)

# 遗传算法（种群20，迭代50）
GA_POPULATION_SIZE = _env_int("GA_POPULATION_SIZE", 20)
GA_GENERATIONS = _env_int("GA_GENERATIONS", 50)
GA_CROSSOVER_RATE = _env_float("GA_CROSSOVER_RATE", 0.7)
GA_MUTATION_RATE = _env_float("GA_MUTATION_RATE", 0.1)

# ==================== 滚动验证配置 ====================

WALK_FORWARD_TRAINING = _env_float("WALK_FORWARD_TRAINING", 0.5)
WALK_FORWARD_TESTING = _env_float("WALK_FORWARD_TESTING", 0.25)
WALK_FORWARD_UNIT = os.getenv("WALK_FORWARD_UNIT", "fraction")   # fraction / periods
WALK_FORWARD_MAX_DEGRADATION = _env_float("WALK_FORWARD_MAX_DEGRADATION", 0.5)

# ==================== 日志配置 ====================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FILE = os.getenv("LOG_FILE", "backtest.log")
LOG_TO_FILE = _env_bool("LOG_TO_FILE", False)

settings = sys.modules[__name__]
