"""
基础推理提供者

定义推理提供者的通用接口。
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..core.models import ProviderStatus


class BaseInsightProvider(ABC):
    """基础推理提供者抽象类"""

    name: str = ""

    def __init__(self):
        """初始化推理提供者"""
        self.status = ProviderStatus.UNINITIALIZED

    @abstractmethod
    def is_available(self) -> bool:
        """检查运行时是否可用"""
        pass

    @abstractmethod
    def initialize(self) -> None:
        """初始化推理句柄"""
        pass

    @abstractmethod
    def generate(self, system_prompt: str, user_message: str) -> str:
        """生成完整文本"""
        pass

    @abstractmethod
    def cleanup(self) -> None:
        """释放推理句柄"""
        pass

    @abstractmethod
    def get_model_info(self) -> Dict[str, Any]:
        """获取模型信息"""
        pass

    def get_status(self) -> ProviderStatus:
        """获取当前状态"""
        return self.status

    def is_ready(self) -> bool:
        """检查是否已就绪"""
        return self.status == ProviderStatus.READY
