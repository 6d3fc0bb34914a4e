"""
参数验证器

实现模型配置与应用设置的验证规则。
"""

from typing import Any, Iterable, List, Optional, Tuple

from .models import ModelConfig, TemplateKind


class ModelConfigValidator:
    """模型配置验证器"""

    # 参数范围定义
    PARAMETER_RANGES = {
        "context_size": (256, 32768),
        "threads": (1, 64),
        "size_bytes": (1, 64 * 1024 ** 3),
        "min_ram_gb": (0, 1024),
    }

    def validate_parameter(self, param_name: str, value: Any) -> Tuple[bool, Optional[str]]:
        """
        验证单个数值参数

        Args:
            param_name: 参数名称
            value: 参数值

        Returns:
            (is_valid, error_message)
        """
        if param_name not in self.PARAMETER_RANGES:
            return True, None

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False, f"参数 '{param_name}' 类型错误，期望数值，得到 {type(value).__name__}"

        min_val, max_val = self.PARAMETER_RANGES[param_name]
        if not min_val <= value <= max_val:
            return False, f"参数 '{param_name}' 超出有效范围 [{min_val}, {max_val}]"

        return True, None

    def validate_config(
        self,
        config: ModelConfig,
        registered_kinds: Optional[Iterable[TemplateKind]] = None
    ) -> Tuple[bool, List[str]]:
        """
        验证完整的模型配置

        Args:
            config: 模型配置
            registered_kinds: 已注册格式化函数的模板类型（可选）

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        for param_name in self.PARAMETER_RANGES:
            is_valid, error = self.validate_parameter(param_name, getattr(config, param_name))
            if not is_valid:
                errors.append(error)

        if not config.filename:
            errors.append("模型文件名不能为空")

        if not config.download_url.startswith(("http://", "https://")):
            errors.append(f"下载地址无效: {config.download_url}")

        if not config.stop_tokens:
            errors.append("停止序列不能为空")

        if not isinstance(config.template_kind, TemplateKind):
            errors.append(f"未知的模板类型: {config.template_kind}")
        elif registered_kinds is not None and config.template_kind not in set(registered_kinds):
            errors.append(f"模板类型 '{config.template_kind.value}' 未注册格式化函数")

        return len(errors) == 0, errors
