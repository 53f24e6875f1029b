"""
数据服务 - 负责K线数据获取、缓存、清洗、质量分析与缺口填补
"""
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from backtest.adapters.cache.memory_cache import MemoryCache
from backtest.adapters.storage.file_store import CandleFileStore
from backtest.domain.candles import TIMEFRAME_MS, frame_to_candles
from backtest.domain.errors import BacktestError, DataError, DataSourceError, ErrorCode
from backtest.domain.interfaces import ICandleCache, ICandleSource
from backtest.domain.models import Candle, DataGap, DataQualityReport
from backtest.services.export_service import ExportService
from config.settings import settings as config
from logger_utils import get_logger

logger = get_logger("data")

# 相邻K线间隔超过预期的1.5倍视为缺口
GAP_TOLERANCE = 1.5


class HistoricalDataStore:
    """
    历史数据仓库

    读取顺序：内存缓存 -> 文件缓存 -> 数据源。必须在回测开始前取完数据。
    """

    def __init__(
        self,
        source: ICandleSource,
        cache: Optional[ICandleCache] = None,
        file_store: Optional[CandleFileStore] = None,
        cache_ttl: Optional[int] = None
    ):
        self.source = source
        self.cache = cache if cache is not None else MemoryCache(config.DATA_CACHE_MAX_MB)
        self.file_store = file_store
        self.cache_ttl = cache_ttl if cache_ttl is not None else config.DATA_CACHE_TTL

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start_ts: int,
        end_ts: int,
        force_refresh: bool = False
    ) -> List[Candle]:
        """
        获取K线数据（带缓存）

        Raises:
            DataSourceError: 数据源或文件缓存读取失败
            DataError: 区间内没有任何有效K线
        """
        cache_key = f"kline:{symbol}:{timeframe}:{start_ts}:{end_ts}"

        # 1. 内存缓存
        if not force_refresh:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return list(cached)

        # 2. 文件缓存
        candles: List[Candle] = []
        from_file = False
        if self.file_store is not None and not force_refresh:
            df = self.file_store.load(symbol, timeframe, start_ts, end_ts)
            if df is not None:
                candles = frame_to_candles(df)
                from_file = True

        # 3. 数据源
        if not from_file:
            try:
                df = self.source.fetch_klines(symbol, timeframe, start_ts, end_ts)
            except BacktestError:
                raise
            except Exception as e:
                logger.error(f"数据源异常: {symbol} {timeframe}", exc_info=True)
                raise DataSourceError(
                    f"无法获取K线数据: {symbol} {timeframe}", {'error': str(e)}
                ) from e
            candles = frame_to_candles(df)

        candles = self.clean_candles(candles)
        if not candles:
            raise DataError(ErrorCode.EMPTY_DATA, f"无法获取K线数据: {symbol} {timeframe}")

        if self.file_store is not None and not from_file:
            self.file_store.save(candles, symbol, timeframe, start_ts, end_ts)
        self.cache.set(cache_key, candles, ttl=self.cache_ttl)
        logger.info(f"加载 {len(candles)} 根K线: {symbol} {timeframe}")
        return list(candles)

    def clear_cache(self):
        """清空内存缓存"""
        self.cache.clear()

    @staticmethod
    def clean_candles(candles: Sequence[Candle]) -> List[Candle]:
        """去除无效K线，按时间升序，重复时间戳保留首个"""
        valid = sorted((c for c in candles if c.is_valid()), key=lambda c: c.timestamp)
        cleaned = []
        seen = set()
        for candle in valid:
            if candle.timestamp in seen:
                continue
            seen.add(candle.timestamp)
            cleaned.append(candle)

        dropped = len(candles) - len(cleaned)
        if dropped:
            logger.warning(f"清洗K线: 丢弃 {dropped} 根无效或重复数据")
        return cleaned

    @staticmethod
    def interval_ms(timeframe: str) -> int:
        return TIMEFRAME_MS.get(timeframe, TIMEFRAME_MS['1m'])

    @staticmethod
    def detect_timeframe(candles: Sequence[Candle]) -> str:
        """根据前9个间隔的平均值推断周期"""
        if len(candles) < 2:
            return '1m'

        sample = candles[:10]
        intervals = [b.timestamp - a.timestamp for a, b in zip(sample, sample[1:])]
        avg_interval = sum(intervals) / len(intervals)

        if avg_interval <= 70_000:
            return '1m'
        if avg_interval <= 350_000:
            return '5m'
        if avg_interval <= 950_000:
            return '15m'
        if avg_interval <= 1_900_000:
            return '30m'
        if avg_interval <= 3_700_000:
            return '1h'
        if avg_interval <= 14_800_000:
            return '4h'
        return '1d'

    @staticmethod
    def _gap_severity(missing: int) -> str:
        if missing <= 5:
            return 'minor'
        if missing <= 60:
            return 'major'
        return 'critical'

    @classmethod
    def analyze_quality(cls, candles: Sequence[Candle], timeframe: Optional[str] = None) -> DataQualityReport:
        """
        数据质量分析

        Args:
            candles: 原始K线（可含无效、重复、乱序数据）
            timeframe: 预期周期，None 时自动推断
        """
        if not candles:
            return DataQualityReport()

        invalid = sum(1 for c in candles if not c.is_valid())
        valid = sorted((c for c in candles if c.is_valid()), key=lambda c: c.timestamp)
        unique = cls.clean_candles(valid)
        duplicates = len(valid) - len(unique)
        if not unique:
            return DataQualityReport(total_candles=len(candles), invalid_candles=invalid)

        timeframe = timeframe or cls.detect_timeframe(unique)
        interval = cls.interval_ms(timeframe)

        gaps = []
        missing_total = 0
        for previous, current in zip(unique, unique[1:]):
            diff = current.timestamp - previous.timestamp
            if diff > interval * GAP_TOLERANCE:
                missing = diff // interval - 1
                if missing > 0:
                    missing_total += missing
                    gaps.append(DataGap(
                        start=previous.timestamp,
                        end=current.timestamp,
                        duration=diff,
                        missing=missing,
                        severity=cls._gap_severity(missing),
                    ))

        expected = (unique[-1].timestamp - unique[0].timestamp) // interval + 1
        quality_score = max(0.0, (expected - missing_total - duplicates) / expected)

        report = DataQualityReport(
            total_candles=len(candles),
            missing_candles=missing_total,
            duplicate_candles=duplicates,
            invalid_candles=invalid,
            gaps=gaps,
            quality_score=quality_score,
            timeframe=timeframe,
        )
        if gaps:
            logger.info(f"数据质量: 得分 {quality_score:.3f}, 缺口 {len(gaps)} 个, 缺失 {missing_total} 根")
        return report

    @classmethod
    def fill_gaps(cls, candles: Sequence[Candle], timeframe: Optional[str] = None) -> List[Candle]:
        """线性插值填补缺口：价格从缺口前收盘价过渡到缺口后开盘价，成交量为0"""
        candles = cls.clean_candles(candles)
        if len(candles) < 2:
            return candles

        interval = cls.interval_ms(timeframe or cls.detect_timeframe(candles))
        filled = []
        for current, nxt in zip(candles, candles[1:]):
            filled.append(current)
            diff = nxt.timestamp - current.timestamp
            if diff <= interval * GAP_TOLERANCE:
                continue
            missing = diff // interval - 1
            for j in range(1, missing + 1):
                price = current.close + (nxt.open - current.close) * j / (missing + 1)
                filled.append(Candle(current.timestamp + j * interval, price, price, price, price, 0.0))
        filled.append(candles[-1])
        return filled

    @staticmethod
    def get_statistics(candles: Sequence[Candle]) -> Dict[str, Any]:
        """基础统计"""
        if not candles:
            return {'count': 0}

        closes = np.array([c.close for c in candles], dtype=float)
        volumes = np.array([c.volume for c in candles], dtype=float)
        returns = np.diff(closes) / closes[:-1] if len(closes) > 1 else np.array([])

        return {
            'count': len(candles),
            'start': candles[0].timestamp,
            'end': candles[-1].timestamp,
            'min_price': float(closes.min()),
            'max_price': float(closes.max()),
            'mean_price': float(closes.mean()),
            'average_volume': float(volumes.mean()),
            'price_change_percent': float((closes[-1] - closes[0]) / closes[0] * 100),
            'volatility': float(returns.std()) if len(returns) else 0.0,
        }

    @staticmethod
    def export_candles(candles: Sequence[Candle], fmt: str = 'json', path: Optional[str] = None) -> str:
        return ExportService.export_candles(candles, fmt, path)
