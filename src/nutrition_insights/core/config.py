"""
配置管理

处理应用程序配置的读写和验证。
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .catalog import get_model_by_tier
from .exceptions import ConfigurationError


DEFAULT_CONFIG_DIR = "~/.nutrition_insights"


@dataclass
class InsightSettings:
    """洞察流水线设置"""
    models_dir: str = os.path.join(DEFAULT_CONFIG_DIR, "models")
    cache_file: str = os.path.join(DEFAULT_CONFIG_DIR, "insights_cache.json")
    llm_enabled: bool = True
    cache_ttl_hours: float = 4
    generation_timeout_seconds: Optional[float] = 120
    model_tier: Optional[str] = None
    log_file: str = "logs/insights_error.log"

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600

    def resolved_models_dir(self) -> Path:
        return Path(os.path.expanduser(self.models_dir))

    def resolved_cache_file(self) -> Path:
        return Path(os.path.expanduser(self.cache_file))


class ConfigManager:
    """配置管理器"""

    def __init__(self, config_dir: Optional[str] = None):
        """初始化配置管理器"""
        if config_dir is None:
            config_dir = os.path.expanduser(DEFAULT_CONFIG_DIR)

        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"

    def save_config(self, config: Dict[str, Any]) -> None:
        """保存配置到文件"""
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(config, f, indent=2, ensure_ascii=False)

    def load_config(self) -> Dict[str, Any]:
        """从文件加载配置"""
        if not self.config_file.exists():
            return {}

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"配置文件格式错误: {self.config_file}: {e}")

    def get_settings(self) -> InsightSettings:
        """
        获取洞察设置，未配置的项使用默认值

        Returns:
            InsightSettings: 设置对象

        Raises:
            ConfigurationError: 配置值无效
        """
        config = self.load_config()
        known = {f.name for f in fields(InsightSettings)}
        settings_dict = {k: v for k, v in config.get("insights", {}).items() if k in known}

        settings = InsightSettings(**settings_dict)
        self.validate_settings(settings)
        return settings

    def save_settings(self, settings: InsightSettings) -> None:
        """保存洞察设置"""
        self.validate_settings(settings)

        config = self.load_config()
        config["insights"] = asdict(settings)
        self.save_config(config)

    @staticmethod
    def validate_settings(settings: InsightSettings) -> None:
        """验证设置"""
        errors = []

        if settings.cache_ttl_hours <= 0:
            errors.append("cache_ttl_hours必须大于0")

        timeout = settings.generation_timeout_seconds
        if timeout is not None and timeout <= 0:
            errors.append("generation_timeout_seconds必须大于0或为null")

        if settings.model_tier is not None and get_model_by_tier(settings.model_tier) is None:
            errors.append(f"未知的模型档位: {settings.model_tier}")

        if errors:
            raise ConfigurationError(f"配置验证失败: {'; '.join(errors)}")
