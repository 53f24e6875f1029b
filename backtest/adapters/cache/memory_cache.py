"""
内存缓存适配器 - 实现ICandleCache接口
"""
import sys
import time
from typing import Any, Dict, Optional, Tuple

import pandas as pd

from backtest.domain.interfaces import ICandleCache


def _estimate_size(value: Any) -> int:
    """简单的大小估算"""
    if isinstance(value, pd.DataFrame):
        return int(value.memory_usage(index=True, deep=True).sum())
    if isinstance(value, (list, tuple)):
        return sys.getsizeof(value) + sum(sys.getsizeof(v) for v in value)
    return sys.getsizeof(value)


class MemoryCache(ICandleCache):
    """带TTL和容量上限的内存缓存，超限时淘汰最早写入的项"""

    def __init__(self, max_size_mb: int = 100, default_ttl: Optional[int] = None):
        self.max_size_mb = max_size_mb
        self.default_ttl = default_ttl
        self._cache: Dict[str, Tuple[Any, Optional[float], int]] = {}
        self._size_bytes = 0

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    def get(self, key: str) -> Optional[Any]:
        """获取缓存"""
        if key not in self._cache:
            return None

        value, expire_at, _ = self._cache[key]

        # 检查是否过期
        if expire_at and time.time() > expire_at:
            self.delete(key)
            return None

        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """设置缓存"""
        ttl = ttl if ttl is not None else self.default_ttl
        expire_at = time.time() + ttl if ttl else None
        value_size = _estimate_size(value)
        limit = self.max_size_mb * 1024 * 1024

        self.delete(key)
        while self._cache and self._size_bytes + value_size > limit:
            self._evict_oldest()

        self._cache[key] = (value, expire_at, value_size)
        self._size_bytes += value_size

    def delete(self, key: str) -> None:
        """删除缓存"""
        if key in self._cache:
            _, _, value_size = self._cache.pop(key)
            self._size_bytes -= value_size

    def clear(self) -> None:
        """清空缓存"""
        self._cache.clear()
        self._size_bytes = 0

    def _evict_oldest(self) -> None:
        """清理最旧的缓存项"""
        if not self._cache:
            return

        # 删除第一个键（简单策略）
        key = next(iter(self._cache))
        self.delete(key)
