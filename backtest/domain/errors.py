"""
回测错误码定义和异常类
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """错误码枚举"""

    # 数据相关错误
    INVALID_CANDLE = "INVALID_CANDLE"
    DATA_SOURCE_FAILURE = "DATA_SOURCE_FAILURE"
    EMPTY_DATA = "EMPTY_DATA"

    # 配置相关错误
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_PARAMETER_RANGE = "INVALID_PARAMETER_RANGE"
    UNKNOWN_OBJECTIVE = "UNKNOWN_OBJECTIVE"
    UNKNOWN_STRATEGY = "UNKNOWN_STRATEGY"

    # 模拟撮合拒单原因
    MAX_CONCURRENT_TRADES = "MAX_CONCURRENT_TRADES"
    MIN_TRADE_INTERVAL = "MIN_TRADE_INTERVAL"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    MAX_POSITION_SIZE = "MAX_POSITION_SIZE"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    # 优化相关错误
    NO_VALID_COMBINATIONS = "NO_VALID_COMBINATIONS"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class BacktestError(Exception):
    """回测自定义异常基类"""

    def __init__(
        self,
        error_code: ErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            error_code: 错误码
            message: 错误消息（可选，默认使用错误码本身）
            details: 错误详情（可选）
        """
        self.error_code = error_code
        self.message = message or error_code.value
        self.details = details or {}
        super().__init__(self.message)

    def __reduce__(self):
        # 子类构造参数不同，跨进程传递时按属性重建
        return (_restore_error, (type(self), self.__dict__.copy()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_code': self.error_code.value,
            'message': self.message,
            'details': self.details,
        }


class DataError(BacktestError):
    """K线缺失或无效（本地跳过并计数）"""


class DataSourceError(DataError):
    """数据源网络/IO失败，唯一需要向调用方抛出的错误"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.DATA_SOURCE_FAILURE, message, details)


class ConfigError(BacktestError):
    """参数范围或目标函数无效"""


class SimulationError(BacktestError):
    """违反风控约束的开仓请求（记录后拒绝，不向外抛出）"""


class OptimizationError(BacktestError):
    """搜索没有产生任何可用候选"""


def _restore_error(cls, state: Dict[str, Any]) -> BacktestError:
    error = cls.__new__(cls)
    Exception.__init__(error, state.get('message'))
    error.__dict__.update(state)
    return error
