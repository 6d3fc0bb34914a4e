"""
键值存储

为洞察缓存提供持久化，默认实现保存在本地JSON文件中。
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from ..core.exceptions import PersistenceError


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """键值存储接口"""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """内存键值存储，不做持久化"""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonKeyValueStore:
    """基于JSON文件的键值存储"""

    def __init__(self, path: str):
        """
        初始化存储

        Args:
            path: JSON文件路径
        """
        self.path = Path(os.path.expanduser(path))
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            logger.debug(f"存储文件不存在，使用空存储: {self.path}")
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"加载存储文件失败，已忽略: {str(e)}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"存储文件格式无效，已忽略: {self.path}")
            return {}
        return data

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_name(self.path.name + ".tmp")
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"保存存储文件失败: {str(e)}") from e

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        """
        写入键值并立即保存

        Raises:
            PersistenceError: 写入文件失败
        """
        with self._lock:
            self._data[key] = value
            self._save()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()
