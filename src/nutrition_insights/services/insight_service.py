"""
洞察服务

协调缓存、本地模型推理和规则洞察，对外提供状态查询与洞察生成接口。
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Protocol

from .device_probe import DeviceProbe
from .error_handler import ErrorHandler, get_error_handler
from .fallback_generator import generate_fallback_insights, get_empty_state_message
from .insight_store import InsightStore
from .kv_store import JsonKeyValueStore
from .prompt_builder import build_system_prompt, build_user_message
from .response_sanitizer import parse_insight_response
from ..core.config import InsightSettings
from ..core.exceptions import GenerationTimeoutError, InferenceError, UnsupportedDeviceError
from ..core.models import (
    DownloadOutcome,
    Insight,
    InsightCategory,
    InsightRequest,
    InsightSource,
    LLMStatus,
    NutritionAggregates,
)
from ..inferencers.llama_provider import LlamaInsightProvider
from ..inferencers.model_store import ProgressCallback


logger = logging.getLogger(__name__)

LLM_DISABLED_MESSAGE = "On-device insights are turned off in settings."


class NutritionDataSource(Protocol):
    """营养数据源接口"""

    def get_aggregates(self) -> NutritionAggregates:
        ...


class InsightService:
    """洞察服务"""

    def __init__(
        self,
        data_source: NutritionDataSource,
        settings: Optional[InsightSettings] = None,
        store: Optional[InsightStore] = None,
        provider: Optional[LlamaInsightProvider] = None,
        device_probe: Optional[DeviceProbe] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        """
        初始化洞察服务

        Args:
            data_source: 营养数据源
            settings: 流水线设置，默认使用内置默认值
            store: 洞察缓存，默认持久化到settings.cache_file
            provider: 推理提供者，默认按设备推荐的模型创建
            device_probe: 设备探测器
            error_handler: 错误处理器，默认使用全局实例
        """
        self.data_source = data_source
        self.settings = settings or InsightSettings()
        self.store = store or InsightStore(
            JsonKeyValueStore(str(self.settings.resolved_cache_file())),
            ttl_seconds=self.settings.cache_ttl_seconds,
        )
        self.device_probe = device_probe or DeviceProbe(self.settings.model_tier)
        self.error_handler = error_handler or get_error_handler()
        self._provider = provider
        self._provider_lock = threading.Lock()
        # 单线程执行推理，原生调用不会重叠
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="insight-generate")

    def _get_provider(self) -> Optional[LlamaInsightProvider]:
        """获取推理提供者，设备不支持时返回None"""
        with self._provider_lock:
            if self._provider is None:
                classification = self.device_probe.classify()
                if not classification.supported:
                    return None
                self._provider = LlamaInsightProvider(
                    classification.recommended_model,
                    models_dir=str(self.settings.resolved_models_dir()),
                )
            return self._provider

    def get_status(self) -> LLMStatus:
        """
        获取模型可用性状态

        Returns:
            LLMStatus: ready、model-download-required或unsupported
        """
        if not self.settings.llm_enabled:
            return LLMStatus.unsupported(LLM_DISABLED_MESSAGE)

        classification = self.device_probe.classify()
        if not classification.supported:
            return LLMStatus.unsupported(classification.reason or "Device not supported")

        provider = self._get_provider()
        if provider is None:
            return LLMStatus.unsupported(classification.reason or "Device not supported")
        if not provider.is_model_downloaded():
            return LLMStatus.download_required(provider.model)
        return LLMStatus.ready_with(provider.name)

    def generate(self, request: Optional[InsightRequest] = None) -> List[Insight]:
        """
        获取洞察，缓存有效时直接返回缓存

        Args:
            request: 按类别或问题限定的请求（可选）

        Returns:
            List[Insight]: 洞察列表
        """
        if not self.store.should_regenerate():
            logger.debug("使用缓存的洞察")
            return self.store.get_cached_insights()
        return self._run_generation(request)

    def refresh(self, request: Optional[InsightRequest] = None) -> List[Insight]:
        """忽略缓存有效期，重新生成洞察"""
        return self._run_generation(request)

    def _run_generation(self, request: Optional[InsightRequest]) -> List[Insight]:
        if not self.store.try_begin_generation():
            logger.info("已有生成任务在进行，忽略本次请求")
            return self.store.get_cached_insights()

        try:
            return self._generate_holding_slot(request)
        except Exception as e:
            # 规则洞察也失败时保留原有缓存
            error_info = self.error_handler.handle_error(e, context={'stage': 'fallback'})
            self.store.set_generation_error(error_info.user_message)
            return self.store.get_cached_insights()
        finally:
            if self.store.end_generation():
                logger.warning("生成结束时仍持有生成权，已释放")

    def _generate_holding_slot(self, request: Optional[InsightRequest]) -> List[Insight]:
        """持有生成权时执行一次生成，结果与错误一次性写入缓存"""
        try:
            data = self.data_source.get_aggregates()
        except Exception as e:
            error_info = self.error_handler.handle_error(e, context={'stage': 'aggregates'})
            self.store.set_generation_error(error_info.user_message)
            return self.store.get_cached_insights()

        category = request.category if request is not None else None
        generation_error = None
        try:
            status = self.get_status()
            if status.ready:
                insights = self._generate_with_model(data, request)
                return self.store.set_insights(insights, InsightSource.MODEL).insights
            logger.info(f"模型不可用 ({status.reason})，使用规则洞察")
        except Exception as e:
            error_info = self.error_handler.handle_error(
                e,
                context={
                    'stage': 'model',
                    'provider': self._provider.name if self._provider is not None else None,
                    'category': category.value if category else None,
                },
            )
            generation_error = error_info.user_message

        insights = generate_fallback_insights(data, category)
        return self.store.set_fallback_insights(insights, generation_error).insights

    def _generate_with_model(
        self,
        data: NutritionAggregates,
        request: Optional[InsightRequest],
    ) -> List[Insight]:
        """
        通过本地模型生成一条洞察

        Raises:
            GenerationTimeoutError: 超过等待时间
            InferenceError: 推理失败或输出为空
        """
        provider = self._get_provider()
        if provider is None:
            raise UnsupportedDeviceError("设备不支持本地推理")

        system_prompt = build_system_prompt()
        user_message = build_user_message(data, request)

        timeout = self.settings.generation_timeout_seconds
        start_time = time.time()
        future = self._executor.submit(provider.generate, system_prompt, user_message)
        try:
            text = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise GenerationTimeoutError(f"生成超过 {timeout} 秒未完成")

        parsed = parse_insight_response(text)
        if parsed.validation_issues:
            logger.debug(f"模型输出已修正: {parsed.validation_issues}")
        if not parsed.narrative:
            raise InferenceError("模型输出为空")

        category = (request.category if request is not None else None) or InsightCategory.PATTERN
        logger.info(f"模型洞察生成完成，用时{time.time() - start_time:.2f}秒")
        return [
            Insight(
                id=f"model-{category.value}-{int(start_time)}",
                category=category,
                title=category.title,
                body=parsed.narrative,
                icon=parsed.leading_glyph,
            )
        ]

    def get_empty_state(self) -> Optional[Dict[str, str]]:
        """没有缓存洞察时返回空状态提示，否则返回None"""
        if self.store.get_cached_insights():
            return None
        try:
            data = self.data_source.get_aggregates()
        except Exception as e:
            logger.warning(f"获取营养数据失败，使用默认空状态: {e}")
            data = NutritionAggregates()
        return get_empty_state_message(data)

    # 模型管理

    def download_model(self, progress_callback: Optional[ProgressCallback] = None) -> DownloadOutcome:
        """
        下载推荐的模型

        Raises:
            UnsupportedDeviceError: 设备不支持本地推理
        """
        provider = self._get_provider()
        if provider is None:
            raise UnsupportedDeviceError(
                self.device_probe.classify().reason or "设备不支持本地推理"
            )

        outcome = provider.download_model(progress_callback)
        if not outcome.success and not outcome.cancelled:
            self.store.set_generation_error(outcome.error or "Download failed")
        return outcome

    def cancel_download(self) -> None:
        provider = self._provider
        if provider is not None:
            provider.cancel_download()

    def delete_model(self) -> None:
        """删除模型文件并清空缓存的洞察"""
        provider = self._provider
        if provider is None:
            provider = self._get_provider()
        if provider is not None:
            provider.delete_model()
        self.store.clear_insights()

    def clear_insights(self) -> None:
        self.store.clear_insights()

    def get_model_size(self) -> int:
        """模型文件在磁盘上的大小（字节），设备不支持或未下载时返回0"""
        provider = self._get_provider()
        return provider.get_model_size() if provider is not None else 0

    def shutdown(self) -> None:
        """释放推理句柄并关闭执行器"""
        if self._provider is not None:
            self._provider.cleanup()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("洞察服务已关闭")
