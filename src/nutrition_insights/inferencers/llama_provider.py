"""
Llama推理提供者

使用llama-cpp-python库加载本地GGUF模型并生成洞察文本。
"""

import gc
import logging
import threading
import time
from typing import Any, Dict, Optional

try:
    from llama_cpp import Llama
except ImportError:
    Llama = None

from .base import BaseInsightProvider
from .model_store import ModelAssetStore, ProgressCallback
from .prompt_templates import format_prompt, registered_template_kinds
from ..core.exceptions import (
    ConfigurationError,
    InferenceError,
    ModelDownloadError,
    ModelIntegrityError,
    ModelLoadError,
)
from ..core.models import DownloadOutcome, DownloadStatus, ModelConfig, ProviderStatus
from ..core.validators import ModelConfigValidator


logger = logging.getLogger(__name__)

# 字符数/token数的估算比例
CHARS_PER_TOKEN = 3.5
DEFAULT_N_PREDICT = 512
TEMPERATURE = 0.7
TOP_P = 0.9


class LlamaInsightProvider(BaseInsightProvider):
    """本地Llama模型推理提供者"""

    def __init__(
        self,
        model: ModelConfig,
        models_dir: str = "models",
        asset_store: Optional[ModelAssetStore] = None,
        n_predict: int = DEFAULT_N_PREDICT,
    ):
        """
        初始化推理提供者

        Args:
            model: 模型配置
            models_dir: 模型存放目录（未提供asset_store时使用）
            asset_store: 模型文件存储
            n_predict: 为生成结果预留的token数

        Raises:
            ConfigurationError: 模型配置无效
        """
        super().__init__()

        is_valid, errors = ModelConfigValidator().validate_config(model, registered_template_kinds())
        if not is_valid:
            raise ConfigurationError(f"模型配置验证失败: {'; '.join(errors)}")
        if n_predict >= model.context_size:
            raise ConfigurationError(
                f"n_predict ({n_predict}) 必须小于上下文长度 ({model.context_size})"
            )

        self.model = model
        self.name = f"llama-{model.tier}"
        self.asset_store = asset_store or ModelAssetStore(model, models_dir)
        self.n_predict = n_predict
        self.llm: Optional[Any] = None
        self._init_lock = threading.Lock()
        self._generate_lock = threading.Lock()

    def is_available(self) -> bool:
        """检查llama-cpp-python运行时是否可用"""
        return Llama is not None

    # 模型文件管理

    def is_model_downloaded(self) -> bool:
        return self.asset_store.is_downloaded()

    def get_model_size(self) -> int:
        return self.asset_store.size()

    def download_model(self, progress_callback: Optional[ProgressCallback] = None) -> DownloadOutcome:
        return self.asset_store.download(progress_callback)

    def cancel_download(self) -> None:
        self.asset_store.cancel_download()

    # 生命周期

    def initialize(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        初始化推理句柄，必要时先下载模型

        已就绪时直接返回；并发调用只会创建一个句柄。

        Args:
            progress_callback: 下载进度回调

        Raises:
            ModelDownloadError: 模型下载失败
            ModelLoadError: 模型加载失败
        """
        with self._init_lock:
            if self.llm is not None:
                return

            if Llama is None:
                self.status = ProviderStatus.ERROR
                raise ModelLoadError(
                    "llama-cpp-python库未安装。请运行: pip install llama-cpp-python"
                )

            if not self.asset_store.is_downloaded():
                outcome = self.asset_store.download(progress_callback)
                if not outcome.success:
                    self.status = ProviderStatus.ERROR
                    if outcome.status == DownloadStatus.INTEGRITY_ERROR:
                        raise ModelIntegrityError(f"模型完整性校验失败: {outcome.error}")
                    raise ModelDownloadError(f"模型下载失败: {outcome.error}")

            model_path = str(self.asset_store.model_path)
            logger.info(
                f"开始初始化 {self.model.name}: n_ctx={self.model.context_size}, "
                f"threads={self.model.threads}"
            )

            try:
                self.llm = Llama(
                    model_path=model_path,
                    n_ctx=self.model.context_size,
                    n_threads=self.model.threads,
                    n_gpu_layers=0,
                    verbose=False,
                )
            except Exception as e:
                self.llm = None
                self.status = ProviderStatus.ERROR
                error_msg = f"模型加载失败: {str(e)}"
                logger.error(error_msg)
                raise ModelLoadError(error_msg) from e

            self.status = ProviderStatus.READY
            logger.info(f"{self.model.name} 初始化成功")

    def build_prompt(self, system_prompt: str, user_message: str) -> str:
        """
        按模板格式化提示词并截断到上下文预算内

        优先从system prompt末尾截断，其次截断用户消息末尾。

        Args:
            system_prompt: 系统提示词
            user_message: 用户消息

        Returns:
            str: 最终提交给模型的提示词
        """
        kind = self.model.template_kind
        max_chars = int((self.model.context_size - self.n_predict) * CHARS_PER_TOKEN)

        prompt = format_prompt(kind, system_prompt, user_message)
        if len(prompt) <= max_chars:
            return prompt

        original_length = len(prompt)
        overflow = len(prompt) - max_chars
        if overflow < len(system_prompt):
            prompt = format_prompt(kind, system_prompt[:len(system_prompt) - overflow], user_message)
        else:
            prompt = format_prompt(kind, "", user_message)
            overflow = len(prompt) - max_chars
            if overflow > 0:
                prompt = format_prompt(kind, "", user_message[:max(0, len(user_message) - overflow)])

        # 模板标记本身超出预算时直接截断
        if len(prompt) > max_chars:
            prompt = prompt[:max_chars]

        logger.warning(f"提示词超出上下文预算，已从 {original_length} 截断到 {len(prompt)} 字符")
        return prompt

    def generate(self, system_prompt: str, user_message: str) -> str:
        """
        生成完整文本，未初始化时自动初始化

        每次调用前清空上一轮的解码缓存，不保留对话记忆。

        Args:
            system_prompt: 系统提示词
            user_message: 用户消息

        Returns:
            str: 生成的文本，无结果时返回空字符串

        Raises:
            ModelDownloadError: 自动初始化时下载失败
            ModelLoadError: 自动初始化时加载失败
            InferenceError: 推理过程出错
        """
        if self.llm is None:
            self.initialize()

        with self._generate_lock:
            llm = self.llm
            if llm is None:
                raise InferenceError("模型未加载，无法进行推理")

            prompt = self.build_prompt(system_prompt, user_message)
            logger.info(f"开始生成，提示词长度: {len(prompt)}")
            start_time = time.time()

            try:
                llm.reset()
                result = llm(
                    prompt,
                    max_tokens=self.n_predict,
                    temperature=TEMPERATURE,
                    top_p=TOP_P,
                    stop=list(self.model.stop_tokens),
                    echo=False,
                )
            except Exception as e:
                error_msg = f"生成过程出错: {str(e)}"
                logger.error(error_msg, exc_info=True)
                raise InferenceError(error_msg) from e

        text = ""
        if isinstance(result, dict) and result.get('choices'):
            text = result['choices'][0].get('text') or ""
        else:
            logger.warning(f"意外的输出格式: {type(result)}")

        logger.info(f"生成完成，用时{time.time() - start_time:.2f}秒，输出{len(text)}字符")
        return text

    def cleanup(self) -> None:
        """释放推理句柄，释放失败只记录日志"""
        if self.llm is not None:
            try:
                self.llm.close()
            except Exception as e:
                logger.error(f"释放推理句柄失败: {str(e)}")
            self.llm = None
            gc.collect()
            logger.info(f"{self.model.name} 推理句柄已释放")
        self.status = ProviderStatus.UNINITIALIZED

    def delete_model(self) -> None:
        """释放句柄并删除模型文件，错误只记录日志"""
        self.cleanup()
        try:
            self.asset_store.delete()
            logger.info(f"{self.model.name} 模型已删除")
        except Exception as e:
            logger.error(f"删除模型失败: {str(e)}")

    def get_model_info(self) -> Dict[str, Any]:
        """
        获取模型信息

        Returns:
            Dict[str, Any]: 模型信息字典
        """
        info = {
            "type": "GGUF",
            "provider": self.name,
            "name": self.model.name,
            "path": str(self.asset_store.model_path),
            "status": self.status.value,
            "is_downloaded": self.asset_store.is_downloaded(),
            "template_kind": self.model.template_kind.value,
        }

        if self.llm is not None:
            try:
                info.update({
                    "n_ctx": self.llm.n_ctx(),
                    "n_vocab": self.llm.n_vocab(),
                })
            except Exception as e:
                logger.warning(f"获取模型详细信息失败: {str(e)}")

        return info
