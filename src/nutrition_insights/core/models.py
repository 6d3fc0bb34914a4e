"""
数据模型定义

定义洞察流水线中使用的核心数据结构。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TemplateKind(Enum):
    """提示词模板类型枚举"""
    CHATML = "chatml"
    LLAMA3 = "llama3"


class ProviderStatus(Enum):
    """推理提供者状态枚举"""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    ERROR = "error"


class DownloadStatus(Enum):
    """下载结果类型"""
    COMPLETED = "completed"
    ALREADY_PRESENT = "already_present"
    NETWORK_ERROR = "network_error"
    INTEGRITY_ERROR = "integrity_error"
    INSUFFICIENT_STORAGE = "insufficient_storage"
    CANCELLED = "cancelled"


class InsightCategory(Enum):
    """洞察类别枚举"""
    MACRO_BALANCE = "macro_balance"
    PROTEIN = "protein"
    CONSISTENCY = "consistency"
    PATTERN = "pattern"
    TREND = "trend"
    HYDRATION = "hydration"
    TIMING = "timing"
    REST = "rest"

    @property
    def title(self) -> str:
        return CATEGORY_TITLES.get(self, "Insight")

    @property
    def icon(self) -> str:
        return CATEGORY_ICONS.get(self, "💡")


CATEGORY_TITLES = {
    InsightCategory.MACRO_BALANCE: "Macro Balance",
    InsightCategory.PROTEIN: "Protein Pacing",
    InsightCategory.CONSISTENCY: "Consistency Win",
    InsightCategory.PATTERN: "Pattern Spotted",
    InsightCategory.TREND: "Trend Update",
    InsightCategory.HYDRATION: "Hydration",
    InsightCategory.TIMING: "Meal Timing",
    InsightCategory.REST: "Rest Day",
}

CATEGORY_ICONS = {
    InsightCategory.MACRO_BALANCE: "⚖️",
    InsightCategory.PROTEIN: "💪",
    InsightCategory.CONSISTENCY: "🔥",
    InsightCategory.PATTERN: "🧩",
    InsightCategory.TREND: "📈",
    InsightCategory.HYDRATION: "💧",
    InsightCategory.TIMING: "⏰",
    InsightCategory.REST: "🌙",
}


class InsightSource(Enum):
    """洞察来源"""
    MODEL = "model"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ModelConfig:
    """模型配置（每个模型档位一份，构建时固定）"""
    tier: str
    name: str
    filename: str
    download_url: str
    size_bytes: int
    min_ram_gb: float
    context_size: int
    threads: int
    template_kind: TemplateKind
    stop_tokens: Tuple[str, ...]

    @property
    def download_size_mb(self) -> int:
        return round(self.size_bytes / (1024 * 1024))


@dataclass
class DownloadProgress:
    """下载进度"""
    bytes_downloaded: int
    total_bytes: int
    percentage: int
    estimated_seconds_remaining: Optional[int] = None


@dataclass
class DownloadOutcome:
    """下载结果数据类"""
    success: bool
    status: DownloadStatus
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status == DownloadStatus.CANCELLED


@dataclass
class ParsedInsightResponse:
    """模型输出经过清洗后的结果"""
    leading_glyph: str
    narrative: str
    is_valid: bool
    validation_issues: List[str] = field(default_factory=list)


@dataclass
class Insight:
    """单条面向用户的洞察"""
    id: str
    category: InsightCategory
    title: str
    body: str
    icon: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Insight":
        category = InsightCategory(data["category"])
        return cls(
            id=data["id"],
            category=category,
            title=data.get("title", category.title),
            body=data["body"],
            icon=data.get("icon", category.icon),
        )


@dataclass
class CachedInsightSet:
    """缓存的洞察集合"""
    insights: List[Insight]
    source: InsightSource
    generated_at: float  # Unix时间戳（秒）
    valid_until: float
    date: str  # YYYY-MM-DD

    def is_stale(self, now: float, today: str) -> bool:
        """超过有效期或跨天即视为过期"""
        return now > self.valid_until or self.date != today

    def to_dict(self) -> Dict[str, Any]:
        return {
            "insights": [insight.to_dict() for insight in self.insights],
            "source": self.source.value,
            "generated_at": self.generated_at,
            "valid_until": self.valid_until,
            "date": self.date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedInsightSet":
        return cls(
            insights=[Insight.from_dict(item) for item in data["insights"]],
            source=InsightSource(data["source"]),
            generated_at=float(data["generated_at"]),
            valid_until=float(data["valid_until"]),
            date=data["date"],
        )


@dataclass
class GenerationState:
    """全局生成状态"""
    is_generating: bool = False
    generation_error: Optional[str] = None


@dataclass
class NutritionAggregates:
    """营养汇总数据（由外部数据源提供，只读）"""
    today_calories: float = 0
    today_protein: float = 0
    today_carbs: float = 0
    today_fat: float = 0
    today_fiber: float = 0
    today_water: float = 0  # 毫升
    today_meal_count: int = 0
    today_foods: List[str] = field(default_factory=list)
    calorie_target: float = 2000
    protein_target: float = 150
    water_target: float = 2000
    avg_calories_7d: float = 0
    avg_protein_7d: float = 0
    logging_streak: int = 0
    calorie_streak: int = 0
    days_using_app: int = 0
    user_goal: str = "maintain"  # lose | maintain | gain
    current_hour: int = 12

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NutritionAggregates":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class InsightRequest:
    """按类别限定的洞察请求"""
    category: Optional[InsightCategory] = None
    question: Optional[str] = None


@dataclass
class LLMStatus:
    """模型可用性状态"""
    ready: bool
    provider: Optional[str] = None
    reason: Optional[str] = None
    download_size_mb: Optional[int] = None
    model_name: Optional[str] = None
    message: Optional[str] = None

    REASON_DOWNLOAD_REQUIRED = "model-download-required"
    REASON_UNSUPPORTED = "unsupported"

    @classmethod
    def ready_with(cls, provider: str) -> "LLMStatus":
        return cls(ready=True, provider=provider)

    @classmethod
    def download_required(cls, model: ModelConfig) -> "LLMStatus":
        return cls(
            ready=False,
            reason=cls.REASON_DOWNLOAD_REQUIRED,
            download_size_mb=model.download_size_mb,
            model_name=model.name,
        )

    @classmethod
    def unsupported(cls, message: str) -> "LLMStatus":
        return cls(ready=False, reason=cls.REASON_UNSUPPORTED, message=message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外暴露的三种结构之一"""
        if self.ready:
            return {"ready": True, "provider": self.provider}
        if self.reason == self.REASON_DOWNLOAD_REQUIRED:
            return {
                "ready": False,
                "reason": self.reason,
                "downloadSizeMB": self.download_size_mb,
                "modelName": self.model_name,
            }
        return {"ready": False, "reason": self.REASON_UNSUPPORTED, "message": self.message}


@dataclass
class DeviceClassification:
    """设备能力分类结果"""
    total_ram_gb: float
    machine: str
    is_restricted: bool
    has_llama_runtime: bool
    recommended_model: Optional[ModelConfig]
    reason: Optional[str] = None

    @property
    def supported(self) -> bool:
        return self.recommended_model is not None
