"""
提示词构建

将营养汇总数据转换为系统提示词和用户消息。
"""

import logging
from typing import Optional

from .response_sanitizer import BANNED_TERMS
from ..core.models import InsightRequest, NutritionAggregates


logger = logging.getLogger(__name__)

MAX_FOODS_IN_PROMPT = 10

GOAL_TEXT = {"lose": "weight loss", "gain": "muscle gain", "maintain": "maintenance"}

CATEGORY_FOCUS = {
    "macro_balance": "how today's carbs, protein and fat are balanced",
    "protein": "protein intake and how it is spread across meals",
    "consistency": "logging consistency and streaks",
    "pattern": "patterns in what and when they eat",
    "trend": "how this week compares with their targets",
    "hydration": "water intake",
    "timing": "meal timing through the day",
    "rest": "lighter days and recovery",
}


def build_system_prompt() -> str:
    """构建系统提示词，约束语气与输出格式"""
    avoided = ", ".join(f'"{term}"' for term, _ in BANNED_TERMS)
    return (
        "You are a supportive nutrition companion inside a personal food tracker. "
        "Write one short observation about the user's nutrition data.\n"
        "\n"
        "RULES:\n"
        "1. Start with exactly one emoji, then a space, then the observation.\n"
        "2. Use at most 3 sentences.\n"
        "3. Reference actual numbers or foods from the data.\n"
        "4. Be encouraging, never judgmental. One off day does not matter.\n"
        "5. Prefer \"Consider...\" or \"You might try...\" over \"You should...\".\n"
        f"6. Never use these words: {avoided}.\n"
        "7. Do not use exclamation marks.\n"
        "8. No medical advice and no supplement recommendations.\n"
        "9. If it is early in the day with few foods logged, acknowledge that."
    )


def build_user_message(data: NutritionAggregates, request: Optional[InsightRequest] = None) -> str:
    """
    构建用户消息

    Args:
        data: 营养汇总数据
        request: 按类别或问题限定的请求（可选）

    Returns:
        str: 用户消息文本
    """
    goal_text = GOAL_TEXT.get(data.user_goal, "maintenance")
    foods = ", ".join(data.today_foods[:MAX_FOODS_IN_PROMPT]) or "No foods logged yet"

    lines = [
        "USER DATA:",
        f"- Goal: {goal_text}",
        f"- Today: {round(data.today_calories)} cal (target: {round(data.calorie_target)})",
        f"- Protein: {round(data.today_protein)}g of {round(data.protein_target)}g target",
        f"- Carbs: {round(data.today_carbs)}g, Fat: {round(data.today_fat)}g, Fiber: {round(data.today_fiber)}g",
        f"- Water: {round(data.today_water)}ml of {round(data.water_target)}ml target",
        f"- Meals logged: {data.today_meal_count}",
        f"- Foods today: {foods}",
        f"- 7-day averages: {round(data.avg_calories_7d)} cal, {round(data.avg_protein_7d)}g protein",
        f"- Streaks: {data.logging_streak} days logging, {data.calorie_streak} days meeting calorie target",
        f"- Days using app: {data.days_using_app}",
        f"- Current hour: {data.current_hour}",
        "",
    ]

    if request is not None and request.question:
        lines.append(f"Answer this question about their day: {request.question}")
    elif request is not None and request.category is not None:
        focus = CATEGORY_FOCUS.get(request.category.value, request.category.value)
        lines.append(f"Focus on {focus}.")
    else:
        lines.append("Share the most useful observation about today.")

    message = "\n".join(lines)
    logger.debug(f"用户消息已构建: {len(message)} 字符, 餐数={data.today_meal_count}")
    return message
