"""
模型目录

按设备内存划分的模型档位，构建时固定。
"""

from typing import List, Optional

from .models import ModelConfig, TemplateKind


CHATML_STOP_TOKENS = ("<|im_end|>", "<|im_start|>")
LLAMA3_STOP_TOKENS = ("<|eot_id|>", "<|end_of_text|>")


STANDARD_MODEL = ModelConfig(
    tier="standard",
    name="SmolLM2 1.7B",
    filename="smollm2-1.7b-instruct-q4_k_m.gguf",
    download_url=(
        "https://huggingface.co/HuggingFaceTB/SmolLM2-1.7B-Instruct-GGUF/"
        "resolve/main/smollm2-1.7b-instruct-q4_k_m.gguf"
    ),
    size_bytes=1_070_000_000,
    min_ram_gb=6,
    context_size=2048,
    threads=4,
    template_kind=TemplateKind.CHATML,
    stop_tokens=CHATML_STOP_TOKENS,
)

COMPACT_MODEL = ModelConfig(
    tier="compact",
    name="Llama 3.2 1B",
    filename="llama-3.2-1b-instruct-q4_k_m.gguf",
    download_url=(
        "https://huggingface.co/bartowski/Llama-3.2-1B-Instruct-GGUF/"
        "resolve/main/Llama-3.2-1B-Instruct-Q4_K_M.gguf"
    ),
    size_bytes=808_000_000,
    min_ram_gb=4,
    context_size=2048,
    threads=4,
    template_kind=TemplateKind.LLAMA3,
    stop_tokens=LLAMA3_STOP_TOKENS,
)

MINIMAL_MODEL = ModelConfig(
    tier="minimal",
    name="Qwen2.5 0.5B",
    filename="qwen2.5-0.5b-instruct-q4_k_m.gguf",
    download_url=(
        "https://huggingface.co/Qwen/Qwen2.5-0.5B-Instruct-GGUF/"
        "resolve/main/qwen2.5-0.5b-instruct-q4_k_m.gguf"
    ),
    size_bytes=491_000_000,
    min_ram_gb=3,
    context_size=2048,
    threads=2,
    template_kind=TemplateKind.CHATML,
    stop_tokens=CHATML_STOP_TOKENS,
)

# 按内存要求从高到低排列
MODEL_CATALOG: List[ModelConfig] = [STANDARD_MODEL, COMPACT_MODEL, MINIMAL_MODEL]


def get_model_by_tier(tier: str) -> Optional[ModelConfig]:
    """根据档位名称获取模型配置"""
    for model in MODEL_CATALOG:
        if model.tier == tier:
            return model
    return None


def select_model_for_device(ram_gb: float) -> Optional[ModelConfig]:
    """
    根据设备内存选择合适的模型

    Args:
        ram_gb: 设备总内存（GB）

    Returns:
        Optional[ModelConfig]: 满足内存要求的最大模型，内存不足时返回None
    """
    for model in MODEL_CATALOG:
        if ram_gb >= model.min_ram_gb:
            return model
    return None
