"""
洞察缓存存储

持有缓存的洞察集合与生成状态，所有修改在同一把锁内完成，并持久化到键值存储。
"""

import logging
import threading
from copy import deepcopy
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .kv_store import KeyValueStore, MemoryKeyValueStore
from ..core.exceptions import PersistenceError
from ..core.models import CachedInsightSet, GenerationState, Insight, InsightSource


logger = logging.getLogger(__name__)

STORAGE_KEY = "nutrition_insights.insight_cache"
DEFAULT_TTL_SECONDS = 4 * 60 * 60


class InsightStore:
    """洞察缓存与生成状态"""

    def __init__(
        self,
        kv_store: Optional[KeyValueStore] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        初始化存储并恢复持久化的状态

        Args:
            kv_store: 键值存储，默认为内存存储
            ttl_seconds: 洞察有效期（秒）
            clock: 返回当前本地时间的函数
        """
        self.kv_store = kv_store if kv_store is not None else MemoryKeyValueStore()
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.RLock()
        self._cached: Optional[CachedInsightSet] = None
        self._state = GenerationState()
        self._generation_owner: Optional[int] = None
        self._restore()

    def _now(self) -> Tuple[float, str]:
        now = self.clock()
        return now.timestamp(), now.strftime("%Y-%m-%d")

    def _restore(self) -> None:
        try:
            record = self.kv_store.get(STORAGE_KEY)
        except Exception as e:
            logger.error(f"读取洞察缓存失败: {str(e)}")
            return
        if not record:
            return

        try:
            cached = record.get("cached_insights")
            self._cached = CachedInsightSet.from_dict(cached) if cached else None
            # 生成中标志不恢复
            self._state = GenerationState(
                is_generating=False,
                generation_error=record.get("generation_error"),
            )
            logger.debug("已恢复洞察缓存")
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"洞察缓存记录无效，已丢弃: {str(e)}")
            self._cached = None
            self._state = GenerationState()

    def _persist(self) -> None:
        record = {
            "cached_insights": self._cached.to_dict() if self._cached else None,
            "generation_error": self._state.generation_error,
        }
        try:
            self.kv_store.set(STORAGE_KEY, record)
        except PersistenceError as e:
            logger.error(f"保存洞察缓存失败: {str(e)}")

    def should_regenerate(self) -> bool:
        """没有缓存或缓存已过期时需要重新生成"""
        with self._lock:
            if self._cached is None:
                return True
            now, today = self._now()
            return self._cached.is_stale(now, today)

    def _reset_state(self, generation_error: Optional[str] = None) -> None:
        self._state = GenerationState(is_generating=False, generation_error=generation_error)
        self._generation_owner = None

    def _store_set(self, insights: List[Insight], source: InsightSource) -> None:
        now, today = self._now()
        self._cached = CachedInsightSet(
            insights=list(insights),
            source=source,
            generated_at=now,
            valid_until=now + self.ttl_seconds,
            date=today,
        )

    def set_insights(self, insights: List[Insight], source: InsightSource) -> CachedInsightSet:
        """
        保存新的洞察集合，并清除生成中标志和错误

        Args:
            insights: 洞察列表
            source: 洞察来源

        Returns:
            CachedInsightSet: 保存的缓存集合
        """
        with self._lock:
            self._store_set(insights, source)
            self._reset_state()
            self._persist()
            return deepcopy(self._cached)

    def set_fallback_insights(
        self,
        insights: List[Insight],
        generation_error: Optional[str] = None,
    ) -> CachedInsightSet:
        """
        保存规则洞察，同时记录导致降级的错误

        集合、错误和生成中标志在同一次加锁中更新，观察者不会看到中间状态。

        Args:
            insights: 规则洞察列表
            generation_error: 模型路径的错误信息，没有错误时为None

        Returns:
            CachedInsightSet: 保存的缓存集合
        """
        with self._lock:
            self._store_set(insights, InsightSource.FALLBACK)
            self._reset_state(generation_error)
            self._persist()
            return deepcopy(self._cached)

    def set_generation_error(self, message: str) -> None:
        with self._lock:
            self._reset_state(message)
            self._persist()

    def clear_insights(self) -> None:
        with self._lock:
            self._cached = None
            self._reset_state()
            self._persist()

    def try_begin_generation(self) -> bool:
        """
        尝试开始生成，成功时当前线程持有生成权

        Returns:
            bool: 成功获得生成权时返回True，已有生成在进行时返回False
        """
        with self._lock:
            if self._state.is_generating:
                return False
            self._state = GenerationState(is_generating=True, generation_error=None)
            self._generation_owner = threading.get_ident()
            return True

    def end_generation(self) -> bool:
        """
        释放当前线程持有的生成权，不修改缓存

        Returns:
            bool: 确实释放了生成权时返回True；生成权已被释放或由其他线程持有时返回False
        """
        with self._lock:
            if not self._state.is_generating or self._generation_owner != threading.get_ident():
                return False
            self._state.is_generating = False
            self._generation_owner = None
            return True

    def snapshot(self) -> Tuple[Optional[CachedInsightSet], GenerationState]:
        """原子地获取缓存集合与生成状态的副本"""
        with self._lock:
            return deepcopy(self._cached), deepcopy(self._state)

    def get_cached_insights(self) -> List[Insight]:
        with self._lock:
            if self._cached is None:
                return []
            return deepcopy(self._cached.insights)

    @property
    def generation_state(self) -> GenerationState:
        with self._lock:
            return deepcopy(self._state)
