"""
设备能力探测

根据内存、架构和运行环境判断设备是否支持本地推理，并推荐模型档位。
"""

import importlib.util
import logging
import os
import platform
import threading
from typing import Any, Dict, Optional

import psutil

from ..core.catalog import get_model_by_tier, select_model_for_device
from ..core.models import DeviceClassification


logger = logging.getLogger(__name__)

RESTRICTED_ENV_VAR = "NUTRITION_INSIGHTS_RESTRICTED"


class DeviceProbe:
    """设备探测器，分类结果只计算一次"""

    def __init__(self, model_tier: Optional[str] = None):
        """
        初始化设备探测器

        Args:
            model_tier: 强制使用的模型档位（可选）
        """
        self.model_tier = model_tier
        self._classification: Optional[DeviceClassification] = None
        self._lock = threading.Lock()

    def get_total_ram_gb(self) -> float:
        return psutil.virtual_memory().total / (1024 ** 3)

    def get_machine(self) -> str:
        return platform.machine() or "unknown"

    def is_restricted(self) -> bool:
        """受限运行环境（如沙箱、模拟器）不启用本地推理"""
        return os.environ.get(RESTRICTED_ENV_VAR, "").strip().lower() in ("1", "true", "yes")

    def has_llama_runtime(self) -> bool:
        return importlib.util.find_spec("llama_cpp") is not None

    def classify(self) -> DeviceClassification:
        """
        对设备进行分类

        Returns:
            DeviceClassification: 分类结果，recommended_model为None表示不支持
        """
        with self._lock:
            if self._classification is None:
                self._classification = self._classify()
            return self._classification

    def _classify(self) -> DeviceClassification:
        total_ram_gb = self.get_total_ram_gb()
        machine = self.get_machine()
        restricted = self.is_restricted()
        has_runtime = self.has_llama_runtime()

        def unsupported(reason: str) -> DeviceClassification:
            logger.info(f"设备不支持本地推理: {reason}")
            return DeviceClassification(
                total_ram_gb=total_ram_gb,
                machine=machine,
                is_restricted=restricted,
                has_llama_runtime=has_runtime,
                recommended_model=None,
                reason=reason,
            )

        if restricted:
            return unsupported("On-device insights are not available in this environment.")
        if not has_runtime:
            return unsupported("The local inference runtime (llama-cpp-python) is not installed.")

        if self.model_tier:
            model = get_model_by_tier(self.model_tier)
        else:
            model = select_model_for_device(total_ram_gb)

        if model is None:
            return unsupported(
                f"This device has {total_ram_gb:.1f} GB of memory, which is not enough for on-device insights."
            )

        logger.info(f"设备内存 {total_ram_gb:.1f}GB ({machine})，推荐模型: {model.name}")
        return DeviceClassification(
            total_ram_gb=total_ram_gb,
            machine=machine,
            is_restricted=restricted,
            has_llama_runtime=has_runtime,
            recommended_model=model,
        )

    def reset(self) -> None:
        """清除缓存的分类结果"""
        with self._lock:
            self._classification = None

    def check_memory_availability(self, required_mb: int) -> bool:
        """检查是否有足够的可用内存"""
        available_mb = psutil.virtual_memory().available / (1024 * 1024)
        return available_mb > required_mb

    def get_memory_usage(self) -> Dict[str, Any]:
        """获取当前进程内存使用情况"""
        process = psutil.Process()
        memory_info = process.memory_info()
        return {
            "rss": memory_info.rss,
            "percent": process.memory_percent(),
            "available": psutil.virtual_memory().available,
        }
