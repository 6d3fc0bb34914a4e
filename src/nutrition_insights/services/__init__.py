"""
服务模块

包含洞察服务、缓存存储、输出清洗、规则洞察、设备探测和错误处理。
"""

from .device_probe import DeviceProbe
from .error_handler import ErrorHandler, get_error_handler, handle_error, setup_error_handling
from .fallback_generator import generate_fallback_insights, get_empty_state_message
from .insight_service import InsightService, NutritionDataSource
from .insight_store import InsightStore
from .kv_store import JsonKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .prompt_builder import build_system_prompt, build_user_message
from .response_sanitizer import parse_insight_response

__all__ = [
    'DeviceProbe',
    'ErrorHandler',
    'get_error_handler',
    'handle_error',
    'setup_error_handling',
    'generate_fallback_insights',
    'get_empty_state_message',
    'InsightService',
    'NutritionDataSource',
    'InsightStore',
    'JsonKeyValueStore',
    'KeyValueStore',
    'MemoryKeyValueStore',
    'build_system_prompt',
    'build_user_message',
    'parse_insight_response',
]
