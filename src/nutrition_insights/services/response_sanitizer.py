"""
模型输出清洗

将模型原始文本转换为安全、长度受控的洞察叙述。纯函数，无I/O。
"""

import re
import unicodedata
from typing import List, Tuple

from ..core.models import ParsedInsightResponse


DEFAULT_GLYPH = "💡"

# 超过该句数才触发截断
SENTENCE_TRUNCATION_THRESHOLD = 5
# 截断后保留的句数
MAX_SENTENCES = 3

VARIATION_SELECTOR = "\ufe0f"
ZERO_WIDTH_JOINER = "\u200d"
KEYCAP = "\u20e3"

# 按顺序匹配，较长的短语在前
BANNED_TERMS: List[Tuple[str, str]] = [
    ("falling short", "room to grow"),
    ("failed", "fell short of"),
    ("cheated", "deviated from"),
    ("warning", "note"),
    ("bad", "less ideal"),
    ("poor", "limited"),
    ("behind", "below"),
]

_BANNED_PATTERNS = [
    (term, replacement, re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE))
    for term, replacement in BANNED_TERMS
]

_SENTENCE_PATTERN = re.compile(r"[^.!?]+(?:[.!?]+|$)")


def _is_glyph(char: str) -> bool:
    """判断字符是否为图标/emoji类字符"""
    code_point = ord(char)
    if 0x1F000 <= code_point <= 0x1FAFF:
        return True
    return unicodedata.category(char) == "So"


def _is_modifier(char: str) -> bool:
    """变体选择符、肤色修饰符、组合键帽和标签字符附着在前一个图标上"""
    code_point = ord(char)
    return (
        char in (VARIATION_SELECTOR, KEYCAP)
        or 0x1F3FB <= code_point <= 0x1F3FF
        or 0xE0020 <= code_point <= 0xE007F
    )


def _is_regional_indicator(char: str) -> bool:
    return 0x1F1E6 <= ord(char) <= 0x1F1FF


def _extract_glyph(text: str) -> Tuple[str, str]:
    """提取开头的完整图标序列，返回 (glyph, 剩余文本)，没有图标时glyph为空"""
    if not text or not _is_glyph(text[0]):
        return "", text

    end = 1
    # 国旗由两个区域指示符组成
    if _is_regional_indicator(text[0]) and len(text) > 1 and _is_regional_indicator(text[1]):
        end = 2

    while end < len(text):
        char = text[end]
        if _is_modifier(char):
            end += 1
        elif char == ZERO_WIDTH_JOINER and end + 1 < len(text) and _is_glyph(text[end + 1]):
            end += 2
        else:
            break
    return text[:end], text[end:].strip()


def split_sentences(text: str) -> List[str]:
    """按句末标点切分句子"""
    return [s.strip() for s in _SENTENCE_PATTERN.findall(text) if s.strip()]


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def parse_insight_response(text: str) -> ParsedInsightResponse:
    """
    清洗模型输出

    依次执行：提取图标、限制句数、替换禁用词、中和感叹号。
    只有在未做任何修正时结果才有效。

    Args:
        text: 模型原始输出

    Returns:
        ParsedInsightResponse: 清洗结果
    """
    issues: List[str] = []
    stripped = (text or "").strip()

    glyph, narrative = _extract_glyph(stripped)
    if not glyph:
        glyph = DEFAULT_GLYPH
        issues.append("No glyph prefix found, using default")

    if not narrative:
        if stripped:
            issues.append("Empty narrative")
        return ParsedInsightResponse(
            leading_glyph=glyph,
            narrative="",
            is_valid=False,
            validation_issues=issues,
        )

    sentences = split_sentences(narrative)
    if len(sentences) > SENTENCE_TRUNCATION_THRESHOLD:
        narrative = " ".join(sentences[:MAX_SENTENCES])
        issues.append(f"Truncated from {len(sentences)} to {MAX_SENTENCES} sentences")

    for term, replacement, pattern in _BANNED_PATTERNS:
        if pattern.search(narrative):
            narrative = pattern.sub(lambda m: _match_case(m.group(0), replacement), narrative)
            issues.append(f'Replaced banned term "{term}"')

    if "!" in narrative:
        narrative = narrative.replace("!", ".")
        issues.append("Replaced exclamation marks")

    return ParsedInsightResponse(
        leading_glyph=glyph,
        narrative=narrative,
        is_valid=not issues,
        validation_issues=issues,
    )
