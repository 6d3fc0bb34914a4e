"""
洞察缓存存储测试

测试过期判断、状态标志、单飞保护和持久化恢复。
"""

import shutil
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

from nutrition_insights.core.exceptions import PersistenceError
from nutrition_insights.core.models import Insight, InsightCategory, InsightSource
from nutrition_insights.services.insight_store import STORAGE_KEY, InsightStore
from nutrition_insights.services.kv_store import JsonKeyValueStore, MemoryKeyValueStore


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_insight(body: str = "Steady week.") -> Insight:
    category = InsightCategory.TREND
    return Insight(id="t-1", category=category, title=category.title, body=body, icon=category.icon)


class TestInsightStore:
    """洞察缓存测试类"""

    def setup_method(self):
        """测试前准备"""
        self.clock = FakeClock(datetime(2024, 5, 10, 9, 0, 0))
        self.kv = MemoryKeyValueStore()
        self.store = InsightStore(self.kv, clock=self.clock)

    def test_empty_store_should_regenerate(self):
        """测试没有缓存时需要生成"""
        assert self.store.should_regenerate() is True
        assert self.store.get_cached_insights() == []

    def test_fresh_insights_not_stale(self):
        """测试新缓存有效"""
        self.store.set_insights([make_insight()], InsightSource.FALLBACK)
        self.clock.advance(hours=3, minutes=59)

        assert self.store.should_regenerate() is False

    def test_stale_after_ttl(self):
        """测试超过4小时后过期"""
        self.store.set_insights([make_insight()], InsightSource.FALLBACK)
        self.clock.advance(hours=4, seconds=1)

        assert self.store.should_regenerate() is True

    def test_stale_after_date_change(self):
        """测试跨天后过期，即使未超过有效期"""
        self.clock.now = datetime(2024, 5, 10, 23, 0, 0)
        self.store.set_insights([make_insight()], InsightSource.MODEL)
        self.clock.advance(hours=1, minutes=30)

        assert self.store.should_regenerate() is True

    def test_set_insights_stamps_times(self):
        """测试保存时记录时间和日期"""
        cached = self.store.set_insights([make_insight()], InsightSource.MODEL)

        assert cached.source == InsightSource.MODEL
        assert cached.date == "2024-05-10"
        assert cached.valid_until - cached.generated_at == 4 * 3600

    def test_set_insights_clears_flags(self):
        """测试保存洞察会清除生成中标志和错误"""
        assert self.store.try_begin_generation() is True
        self.store.set_generation_error("timed out")

        self.store.set_insights([make_insight()], InsightSource.FALLBACK)
        state = self.store.generation_state

        assert state.is_generating is False
        assert state.generation_error is None

    def test_set_generation_error_clears_generating(self):
        """测试设置错误会清除生成中标志"""
        self.store.try_begin_generation()
        self.store.set_generation_error("model failed")
        state = self.store.generation_state

        assert state.is_generating is False
        assert state.generation_error == "model failed"

    def test_single_flight(self):
        """测试同一时间只允许一个生成"""
        assert self.store.try_begin_generation() is True
        assert self.store.try_begin_generation() is False

        self.store.end_generation()
        assert self.store.try_begin_generation() is True

    def test_concurrent_begin_generation(self):
        """测试并发开始生成只有一个成功"""
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(self.store.try_begin_generation())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_end_generation_only_releases_own_slot(self):
        """测试只有持有生成权的线程可以释放"""
        assert self.store.try_begin_generation() is True
        released = []

        other = threading.Thread(target=lambda: released.append(self.store.end_generation()))
        other.start()
        other.join()

        assert released == [False]
        assert self.store.generation_state.is_generating is True
        assert self.store.end_generation() is True
        assert self.store.generation_state.is_generating is False

    def test_end_generation_after_result_is_noop(self):
        """测试结果写入后生成权已释放"""
        self.store.try_begin_generation()
        self.store.set_insights([make_insight()], InsightSource.MODEL)

        assert self.store.end_generation() is False

    def test_set_fallback_insights_keeps_error(self):
        """测试保存规则洞察时同时记录错误"""
        self.store.try_begin_generation()
        cached = self.store.set_fallback_insights([make_insight()], "Insight generation timed out")
        state = self.store.generation_state

        assert cached.source == InsightSource.FALLBACK
        assert state.is_generating is False
        assert state.generation_error == "Insight generation timed out"
        assert self.kv.get(STORAGE_KEY)["generation_error"] == "Insight generation timed out"
        assert self.store.end_generation() is False

    def test_set_fallback_insights_without_error(self):
        """测试没有错误时保存规则洞察"""
        self.store.set_generation_error("old error")
        self.store.set_fallback_insights([make_insight()])

        assert self.store.generation_state.generation_error is None
        assert self.store.should_regenerate() is False

    def test_clear_insights(self):
        """测试清空缓存"""
        self.store.set_insights([make_insight()], InsightSource.FALLBACK)
        self.store.clear_insights()

        assert self.store.should_regenerate() is True
        assert self.store.get_cached_insights() == []

    def test_snapshot_is_copy(self):
        """测试快照不受后续修改影响"""
        self.store.set_insights([make_insight("first")], InsightSource.FALLBACK)
        cached, state = self.store.snapshot()
        self.store.set_insights([make_insight("second")], InsightSource.FALLBACK)

        assert cached.insights[0].body == "first"
        assert state.is_generating is False

    def test_persists_on_mutation(self):
        """测试修改后写入存储"""
        self.store.set_insights([make_insight()], InsightSource.MODEL)
        record = self.kv.get(STORAGE_KEY)

        assert record["cached_insights"]["source"] == "model"
        assert record["generation_error"] is None

    def test_restore_never_restores_generating(self):
        """测试恢复时不会恢复生成中标志"""
        self.store.set_insights([make_insight()], InsightSource.MODEL)
        self.store.try_begin_generation()

        restored = InsightStore(self.kv, clock=self.clock)

        assert restored.generation_state.is_generating is False
        assert restored.get_cached_insights()[0].body == "Steady week."
        assert restored.should_regenerate() is False

    def test_corrupt_record_discarded(self):
        """测试损坏的记录被丢弃"""
        self.kv.set(STORAGE_KEY, {"cached_insights": {"insights": "oops"}})

        restored = InsightStore(self.kv, clock=self.clock)

        assert restored.get_cached_insights() == []
        assert restored.should_regenerate() is True

    def test_persistence_error_is_logged(self):
        """测试写入失败不影响内存状态"""
        kv = Mock()
        kv.get.return_value = None
        kv.set.side_effect = PersistenceError("disk full")
        store = InsightStore(kv, clock=self.clock)

        store.set_insights([make_insight()], InsightSource.FALLBACK)

        assert store.should_regenerate() is False


class TestInsightStoreWithJsonFile:
    """文件持久化测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.path = str(Path(self.temp_dir) / "cache.json")
        self.clock = FakeClock(datetime(2024, 5, 10, 9, 0, 0))

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_survives_restart(self):
        """测试重启后恢复缓存"""
        store = InsightStore(JsonKeyValueStore(self.path), clock=self.clock)
        store.set_insights([make_insight("persisted")], InsightSource.FALLBACK)

        restored = InsightStore(JsonKeyValueStore(self.path), clock=self.clock)

        assert restored.get_cached_insights()[0].body == "persisted"
