"""
错误处理服务

对洞察流水线中的异常进行分类、记录日志，并生成简短的用户提示。
"""

import json
import logging
import os
import sys
import traceback
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.exceptions import (
    ConfigurationError,
    GenerationTimeoutError,
    InferenceError,
    ModelDownloadError,
    ModelIntegrityError,
    ModelLoadError,
    PersistenceError,
    UnsupportedDeviceError,
)


DEFAULT_LOG_FILE = "logs/insights_error.log"
LOGGER_NAME = "nutrition_insights.error_handler"


class ErrorSeverity(Enum):
    """错误严重程度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """错误类别"""
    DOWNLOAD = "download"
    INTEGRITY = "integrity"
    MODEL_LOADING = "model_loading"
    INFERENCE = "inference"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    DEVICE = "device"
    PERSISTENCE = "persistence"
    SYSTEM = "system"


class ErrorInfo:
    """错误信息封装"""

    def __init__(
        self,
        error: Exception,
        category: ErrorCategory,
        severity: ErrorSeverity,
        user_message: str,
        technical_details: str,
        suggestions: List[str],
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = True
    ):
        self.error = error
        self.category = category
        self.severity = severity
        self.user_message = user_message
        self.technical_details = technical_details
        self.suggestions = suggestions
        self.context = context or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now()
        self.error_id = f"{category.value}_{int(self.timestamp.timestamp())}"


class ErrorHandler:
    """错误处理器"""

    def __init__(self, log_file: Optional[str] = None):
        """
        初始化错误处理器

        Args:
            log_file: 日志文件路径，如果为None则使用默认路径
        """
        self.log_file = log_file or DEFAULT_LOG_FILE
        self.logger = logging.getLogger(LOGGER_NAME)
        self.setup_logging()
        self.error_history: List[ErrorInfo] = []
        self.max_history_size = 100

        # 按顺序匹配，子类在父类之前
        self.error_handlers = [
            (GenerationTimeoutError, self._handle_timeout_error),
            (ModelIntegrityError, self._handle_integrity_error),
            (ModelDownloadError, self._handle_download_error),
            (requests.RequestException, self._handle_download_error),
            (ModelLoadError, self._handle_model_load_error),
            (InferenceError, self._handle_inference_error),
            (ConfigurationError, self._handle_configuration_error),
            (UnsupportedDeviceError, self._handle_device_error),
            (PersistenceError, self._handle_persistence_error),
            (OSError, self._handle_os_error),
            (Exception, self._handle_generic_error),
        ]

    def setup_logging(self) -> None:
        """设置日志记录，同一日志文件的处理器只挂载一次"""
        log_path = Path(self.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        abs_path = os.path.abspath(self.log_file)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        self.logger.setLevel(logging.DEBUG)

        has_file_handler = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == abs_path
            for h in self.logger.handlers
        )
        if not has_file_handler:
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        has_console_handler = any(
            type(h) is logging.StreamHandler for h in self.logger.handlers
        )
        if not has_console_handler:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(logging.WARNING)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def handle_error(
        self,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
        user_callback: Optional[Callable[[ErrorInfo], None]] = None
    ) -> ErrorInfo:
        """
        处理错误

        Args:
            error: 异常对象
            context: 错误上下文信息
            user_callback: 用户回调函数

        Returns:
            ErrorInfo: 错误信息对象
        """
        handler = self._handle_generic_error
        for error_type, error_handler in self.error_handlers:
            if isinstance(error, error_type):
                handler = error_handler
                break

        error_info = handler(error, context)
        self._log_error(error_info)
        self._add_to_history(error_info)

        if user_callback:
            try:
                user_callback(error_info)
            except Exception as callback_error:
                self.logger.error(f"用户回调函数执行失败: {callback_error}")

        return error_info

    def _build(
        self,
        error: Exception,
        category: ErrorCategory,
        severity: ErrorSeverity,
        user_message: str,
        suggestions: List[str],
        context: Optional[Dict] = None,
        recoverable: bool = True
    ) -> ErrorInfo:
        return ErrorInfo(
            error=error,
            category=category,
            severity=severity,
            user_message=user_message,
            technical_details=str(error),
            suggestions=suggestions,
            context=context,
            recoverable=recoverable
        )

    def _handle_download_error(self, error: Exception, context: Optional[Dict] = None) -> ErrorInfo:
        """处理下载错误"""
        return self._build(
            error, ErrorCategory.DOWNLOAD, ErrorSeverity.MEDIUM,
            "Model download failed",
            [
                "Check your network connection",
                "Retry the download; partial progress is kept",
            ],
            context,
        )

    def _handle_integrity_error(self, error: ModelIntegrityError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理模型完整性错误"""
        return self._build(
            error, ErrorCategory.INTEGRITY, ErrorSeverity.MEDIUM,
            "Downloaded model failed verification",
            [
                "Download the model again",
                "Make sure there is enough free storage",
            ],
            context,
        )

    def _handle_model_load_error(self, error: ModelLoadError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理模型加载错误"""
        model_name = context.get('model_name', 'model') if context else 'model'
        return self._build(
            error, ErrorCategory.MODEL_LOADING, ErrorSeverity.HIGH,
            f"Could not load {model_name}",
            [
                "Close other apps to free memory",
                "Delete and re-download the model",
                "Make sure llama-cpp-python is installed",
            ],
            context,
        )

    def _handle_inference_error(self, error: InferenceError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理推理错误"""
        return self._build(
            error, ErrorCategory.INFERENCE, ErrorSeverity.MEDIUM,
            "Insight generation failed",
            ["Try refreshing insights again later"],
            context,
        )

    def _handle_timeout_error(self, error: GenerationTimeoutError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理生成超时"""
        return self._build(
            error, ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM,
            "Insight generation timed out",
            [
                "Try again when the device is less busy",
                "Choose a smaller model tier in settings",
            ],
            context,
        )

    def _handle_configuration_error(self, error: ConfigurationError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理配置错误"""
        return self._build(
            error, ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH,
            "Configuration error",
            [
                "Check ~/.nutrition_insights/config.json",
                "Remove the file to restore defaults",
            ],
            context,
            recoverable=False,
        )

    def _handle_device_error(self, error: UnsupportedDeviceError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理设备不支持错误"""
        return self._build(
            error, ErrorCategory.DEVICE, ErrorSeverity.LOW,
            "On-device insights are not supported here",
            ["Rule-based insights remain available"],
            context,
            recoverable=False,
        )

    def _handle_persistence_error(self, error: PersistenceError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理持久化错误"""
        return self._build(
            error, ErrorCategory.PERSISTENCE, ErrorSeverity.LOW,
            "Could not save insights",
            ["Check free storage and file permissions"],
            context,
        )

    def _handle_os_error(self, error: OSError, context: Optional[Dict] = None) -> ErrorInfo:
        """处理操作系统错误"""
        return self._build(
            error, ErrorCategory.SYSTEM, ErrorSeverity.HIGH,
            "System operation failed",
            [
                "Check free storage",
                "Check file permissions",
            ],
            context,
        )

    def _handle_generic_error(self, error: Exception, context: Optional[Dict] = None) -> ErrorInfo:
        """处理通用错误"""
        return self._build(
            error, ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM,
            "Unexpected error",
            ["Retry the operation", "See the error log for details"],
            context,
        )

    def _log_error(self, error_info: ErrorInfo) -> None:
        """记录错误到日志"""
        safe_context = {}
        for key, value in error_info.context.items():
            try:
                json.dumps(value)
                safe_context[key] = value
            except (TypeError, ValueError):
                safe_context[key] = str(value)

        error = error_info.error
        log_data = {
            'error_id': error_info.error_id,
            'timestamp': error_info.timestamp.isoformat(),
            'category': error_info.category.value,
            'severity': error_info.severity.value,
            'user_message': error_info.user_message,
            'technical_details': error_info.technical_details,
            'context': safe_context,
            'recoverable': error_info.recoverable,
            'traceback': ''.join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
        }
        message = json.dumps(log_data, ensure_ascii=False, indent=2)

        if error_info.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(f"CRITICAL ERROR: {message}")
        elif error_info.severity == ErrorSeverity.HIGH:
            self.logger.error(f"HIGH SEVERITY ERROR: {message}")
        elif error_info.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(f"MEDIUM SEVERITY ERROR: {message}")
        else:
            self.logger.info(f"LOW SEVERITY ERROR: {message}")

    def _add_to_history(self, error_info: ErrorInfo) -> None:
        """添加错误到历史记录"""
        self.error_history.append(error_info)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_history(self, limit: Optional[int] = None) -> List[ErrorInfo]:
        """
        获取错误历史记录

        Args:
            limit: 返回的最大记录数

        Returns:
            List[ErrorInfo]: 错误历史记录列表
        """
        if limit:
            return self.error_history[-limit:]
        return self.error_history.copy()

    def get_error_statistics(self) -> Dict[str, Any]:
        """
        获取错误统计信息

        Returns:
            Dict[str, Any]: 错误统计信息
        """
        by_category: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for error_info in self.error_history:
            category = error_info.category.value
            by_category[category] = by_category.get(category, 0) + 1
            severity = error_info.severity.value
            by_severity[severity] = by_severity.get(severity, 0) + 1

        recoverable_count = sum(1 for e in self.error_history if e.recoverable)
        return {
            'total_errors': len(self.error_history),
            'by_category': by_category,
            'by_severity': by_severity,
            'recoverable_count': recoverable_count,
            'non_recoverable_count': len(self.error_history) - recoverable_count,
        }

    def clear_history(self) -> None:
        """清空错误历史记录"""
        self.error_history.clear()
        self.logger.info("错误历史记录已清空")


# 全局错误处理器实例
_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """获取全局错误处理器实例"""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def handle_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    user_callback: Optional[Callable[[ErrorInfo], None]] = None
) -> ErrorInfo:
    """处理错误的便捷函数"""
    return get_error_handler().handle_error(error, context, user_callback)


def setup_error_handling(log_file: Optional[str] = None) -> ErrorHandler:
    """
    设置全局错误处理

    Args:
        log_file: 日志文件路径

    Returns:
        ErrorHandler: 新的全局错误处理器
    """
    global _global_error_handler
    _global_error_handler = ErrorHandler(log_file)
    return _global_error_handler
