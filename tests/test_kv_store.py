"""
键值存储测试
"""

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from nutrition_insights.core.exceptions import PersistenceError
from nutrition_insights.services.kv_store import JsonKeyValueStore, MemoryKeyValueStore


class TestJsonKeyValueStore:
    """JSON文件存储测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "nested" / "store.json"

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_is_empty(self):
        """测试文件不存在时为空"""
        store = JsonKeyValueStore(str(self.path))
        assert store.get("anything") is None

    def test_set_get_and_persist(self):
        """测试写入后可读取并持久化"""
        store = JsonKeyValueStore(str(self.path))
        store.set("greeting", {"text": "你好", "count": 2})

        assert store.get("greeting") == {"text": "你好", "count": 2}
        with open(self.path, "r", encoding="utf-8") as f:
            assert json.load(f)["greeting"]["text"] == "你好"

        reopened = JsonKeyValueStore(str(self.path))
        assert reopened.get("greeting")["count"] == 2

    def test_remove(self):
        """测试删除键"""
        store = JsonKeyValueStore(str(self.path))
        store.set("key", 1)
        store.remove("key")
        store.remove("missing")

        assert JsonKeyValueStore(str(self.path)).get("key") is None

    def test_corrupt_file_ignored(self):
        """测试损坏的文件被忽略"""
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")

        store = JsonKeyValueStore(str(self.path))

        assert store.get("key") is None
        store.set("key", "value")
        assert JsonKeyValueStore(str(self.path)).get("key") == "value"

    def test_non_dict_file_ignored(self):
        """测试非字典内容被忽略"""
        self.path.parent.mkdir(parents=True)
        self.path.write_text("[1, 2, 3]", encoding="utf-8")

        assert JsonKeyValueStore(str(self.path)).get("key") is None

    def test_write_failure_raises_persistence_error(self):
        """测试写入失败"""
        store = JsonKeyValueStore(str(self.path))
        with patch("nutrition_insights.services.kv_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                store.set("key", "value")


class TestMemoryKeyValueStore:
    """内存存储测试类"""

    def test_roundtrip(self):
        store = MemoryKeyValueStore()
        store.set("a", 1)
        assert store.get("a") == 1
        store.remove("a")
        assert store.get("a") is None
