"""
核心模块

包含数据模型、模型目录、配置管理、参数验证和异常定义。
"""

from .models import (
    TemplateKind,
    ProviderStatus,
    DownloadStatus,
    DownloadProgress,
    DownloadOutcome,
    ModelConfig,
    ParsedInsightResponse,
    InsightCategory,
    InsightSource,
    Insight,
    CachedInsightSet,
    GenerationState,
    NutritionAggregates,
    InsightRequest,
    LLMStatus,
    DeviceClassification,
)
from .catalog import MODEL_CATALOG, get_model_by_tier, select_model_for_device
from .config import ConfigManager, InsightSettings
from .validators import ModelConfigValidator
from .exceptions import (
    NutritionInsightsError,
    ModelDownloadError,
    ModelIntegrityError,
    ModelLoadError,
    InferenceError,
    GenerationTimeoutError,
    ConfigurationError,
    UnsupportedDeviceError,
    PersistenceError,
)

__all__ = [
    # Models
    "TemplateKind",
    "ProviderStatus",
    "DownloadStatus",
    "DownloadProgress",
    "DownloadOutcome",
    "ModelConfig",
    "ParsedInsightResponse",
    "InsightCategory",
    "InsightSource",
    "Insight",
    "CachedInsightSet",
    "GenerationState",
    "NutritionAggregates",
    "InsightRequest",
    "LLMStatus",
    "DeviceClassification",

    # Catalog
    "MODEL_CATALOG",
    "get_model_by_tier",
    "select_model_for_device",

    # Configuration
    "ConfigManager",
    "InsightSettings",

    # Validation
    "ModelConfigValidator",

    # Exceptions
    "NutritionInsightsError",
    "ModelDownloadError",
    "ModelIntegrityError",
    "ModelLoadError",
    "InferenceError",
    "GenerationTimeoutError",
    "ConfigurationError",
    "UnsupportedDeviceError",
    "PersistenceError",
]
