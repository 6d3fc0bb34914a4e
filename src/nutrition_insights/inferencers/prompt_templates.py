"""
提示词模板

按模型家族格式化 system/user/assistant 轮次，格式化函数登记在注册表中。
"""

from typing import Callable, Dict, List

from ..core.exceptions import ConfigurationError
from ..core.models import TemplateKind


PromptFormatter = Callable[[str, str], str]

_FORMATTERS: Dict[TemplateKind, PromptFormatter] = {}


def register_template(kind: TemplateKind) -> Callable[[PromptFormatter], PromptFormatter]:
    """
    注册模板格式化函数的装饰器

    Args:
        kind: 模板类型

    Returns:
        装饰器，原样返回被装饰的函数
    """
    def decorator(formatter: PromptFormatter) -> PromptFormatter:
        _FORMATTERS[kind] = formatter
        return formatter
    return decorator


def get_formatter(kind: TemplateKind) -> PromptFormatter:
    """
    获取模板格式化函数

    Raises:
        ConfigurationError: 模板类型未注册
    """
    try:
        return _FORMATTERS[kind]
    except KeyError:
        raise ConfigurationError(f"模板类型未注册: {kind}")


def registered_template_kinds() -> List[TemplateKind]:
    """返回所有已注册的模板类型"""
    return list(_FORMATTERS.keys())


def format_prompt(kind: TemplateKind, system_prompt: str, user_message: str) -> str:
    """使用指定模板格式化提示词"""
    return get_formatter(kind)(system_prompt, user_message)


@register_template(TemplateKind.CHATML)
def format_chatml(system_prompt: str, user_message: str) -> str:
    prompt = ""
    if system_prompt:
        prompt += f"<|im_start|>system\n{system_prompt}<|im_end|>\n"
    prompt += f"<|im_start|>user\n{user_message}<|im_end|>\n<|im_start|>assistant\n"
    return prompt


@register_template(TemplateKind.LLAMA3)
def format_llama3(system_prompt: str, user_message: str) -> str:
    prompt = "<|begin_of_text|>"
    if system_prompt:
        prompt += f"<|start_header_id|>system<|end_header_id|>\n\n{system_prompt}<|eot_id|>"
    prompt += (
        f"<|start_header_id|>user<|end_header_id|>\n\n{user_message}<|eot_id|>"
        "<|start_header_id|>assistant<|end_header_id|>\n\n"
    )
    return prompt
