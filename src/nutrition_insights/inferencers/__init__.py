"""
推理模块

包含模型文件存储、提示词模板和本地推理提供者。
"""

from .base import BaseInsightProvider
from .model_store import ModelAssetStore
from .prompt_templates import format_prompt, register_template, registered_template_kinds
from .llama_provider import LlamaInsightProvider

__all__ = [
    'BaseInsightProvider',
    'ModelAssetStore',
    'format_prompt',
    'register_template',
    'registered_template_kinds',
    'LlamaInsightProvider',
]
