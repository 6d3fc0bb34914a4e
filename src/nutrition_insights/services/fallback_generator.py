"""
规则洞察生成

模型不可用时基于规则生成洞察。纯函数，不访问网络或磁盘，永不抛出异常。
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from ..core.models import Insight, InsightCategory, NutritionAggregates


logger = logging.getLogger(__name__)

MAX_FALLBACK_INSIGHTS = 3

GOAL_PROGRESS_TEXT = {"lose": "steady progress", "gain": "muscle building", "maintain": "maintenance"}
GOAL_MACRO_TEXT = {"lose": "fat loss", "gain": "muscle gain", "maintain": "maintenance"}


def _insight(category: InsightCategory, body: str) -> Insight:
    return Insight(
        id=f"fallback-{category.value}",
        category=category,
        title=category.title,
        body=body,
        icon=category.icon,
    )


def _percent(value: float, target: float) -> Optional[int]:
    if not target or target <= 0:
        return None
    return round(value / target * 100)


def _fmt(value: float) -> str:
    return f"{round(value):,}"


def _protein_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.today_protein <= 0:
        return None
    percent = _percent(data.today_protein, data.protein_target)
    if percent is None:
        return None
    if percent >= 80 and data.today_meal_count >= 3:
        return _insight(
            InsightCategory.PROTEIN,
            f"You've reached {_fmt(data.today_protein)}g protein across {data.today_meal_count} meals. "
            "That's a great distribution for muscle synthesis.",
        )
    if percent < 50 and data.today_meal_count >= 2:
        return _insight(
            InsightCategory.PROTEIN,
            f"You're at {_fmt(data.today_protein)}g protein so far. Adding a protein-rich snack "
            f"could help you reach your {_fmt(data.protein_target)}g target.",
        )
    return None


def _logging_streak_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.logging_streak >= 7:
        return _insight(
            InsightCategory.CONSISTENCY,
            f"{data.logging_streak}-day logging streak. You're building a solid habit, "
            "and consistency beats perfection every time.",
        )
    if data.logging_streak >= 3:
        return _insight(
            InsightCategory.CONSISTENCY,
            f"{data.logging_streak}-day logging streak. You're building momentum.",
        )
    return None


def _calorie_streak_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.calorie_streak < 3:
        return None
    return _insight(
        InsightCategory.TREND,
        f"You've met your calorie target {data.calorie_streak} of the last 7 days. "
        "That's the kind of consistency that adds up.",
    )


def _weekly_average_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.avg_calories_7d <= 0 or data.calorie_target <= 0:
        return None

    diff = data.avg_calories_7d - data.calorie_target
    percent_diff = round(abs(diff) / data.calorie_target * 100)

    if percent_diff <= 5:
        goal_text = GOAL_PROGRESS_TEXT.get(data.user_goal, "maintenance")
        return _insight(
            InsightCategory.TREND,
            f"Your 7-day average is {_fmt(data.avg_calories_7d)} calories. "
            f"That's right in your target zone for {goal_text}.",
        )
    if diff > 0 and percent_diff > 10:
        return _insight(
            InsightCategory.TREND,
            f"Calories have averaged {_fmt(abs(diff))} above target this week. "
            "Small adjustment territory, nothing drastic needed.",
        )
    if diff < 0 and percent_diff > 10:
        return _insight(
            InsightCategory.TREND,
            f"Your 7-day average is {_fmt(abs(diff))} calories below target. "
            "Consider adding a snack if you're feeling low on energy.",
        )
    return None


def _hydration_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.today_water <= 0:
        return None
    percent = _percent(data.today_water, data.water_target)
    if percent is None:
        return None
    if percent >= 100:
        return _insight(
            InsightCategory.HYDRATION,
            f"You've logged {data.today_water / 1000:.1f}L of water today. Nicely hydrated.",
        )
    if percent >= 70:
        return _insight(
            InsightCategory.HYDRATION,
            f"You're at {percent}% of your water goal and on track.",
        )
    return None


def _macro_balance_rule(data: NutritionAggregates) -> Optional[Insight]:
    if data.today_calories <= 500:
        return None

    total = data.today_protein * 4 + data.today_carbs * 4 + data.today_fat * 9
    if total <= 0:
        return None

    protein_pct = round(data.today_protein * 4 / total * 100)
    carbs_pct = round(data.today_carbs * 4 / total * 100)
    fat_pct = round(data.today_fat * 9 / total * 100)

    if 20 <= protein_pct <= 40 and 20 <= fat_pct <= 40:
        goal_text = GOAL_MACRO_TEXT.get(data.user_goal, "maintenance")
        return _insight(
            InsightCategory.MACRO_BALANCE,
            f"Today's macros: {carbs_pct}% carbs, {protein_pct}% protein, {fat_pct}% fat. "
            f"Nicely balanced for your {goal_text} goal.",
        )
    return None


def _light_day_rule(data: NutritionAggregates) -> Optional[Insight]:
    if (
        0 < data.today_calories < data.calorie_target * 0.5
        and data.today_meal_count <= 2
        and data.current_hour >= 14
    ):
        return _insight(
            InsightCategory.REST,
            "Lighter eating day today. Sometimes that's what the body asks for.",
        )
    return None


# 按优先级排列
RULES: List[Callable[[NutritionAggregates], Optional[Insight]]] = [
    _protein_rule,
    _logging_streak_rule,
    _calorie_streak_rule,
    _weekly_average_rule,
    _hydration_rule,
    _macro_balance_rule,
    _light_day_rule,
]


def _onboarding_insight() -> Insight:
    return _insight(
        InsightCategory.PATTERN,
        "As you log meals over the next few days, you'll start seeing patterns "
        "and personalized insights here. Keep logging.",
    )


def _empty_day_insight() -> Insight:
    return _insight(
        InsightCategory.PATTERN,
        "Just getting started today? Log your first meal and you'll see insights "
        "as your day takes shape.",
    )


def _gathering_insight() -> Insight:
    return _insight(
        InsightCategory.PATTERN,
        "Keep logging and personalized nutrition insights will appear here as your day fills in.",
    )


def _numbered(insights: List[Insight]) -> List[Insight]:
    return [
        replace(insight, id=f"{insight.id}-{index}")
        for index, insight in enumerate(insights, start=1)
    ]


def generate_fallback_insights(
    data: NutritionAggregates,
    category: Optional[InsightCategory] = None,
) -> List[Insight]:
    """
    基于规则生成洞察

    Args:
        data: 营养汇总数据
        category: 优先展示的类别（可选）

    Returns:
        List[Insight]: 至少一条、最多三条洞察
    """
    if data.days_using_app < 3:
        return _numbered([_onboarding_insight()])

    if data.today_meal_count == 0:
        return _numbered([_empty_day_insight()])

    insights: List[Insight] = []
    for rule in RULES:
        try:
            insight = rule(data)
        except Exception as e:
            logger.warning(f"规则 {rule.__name__} 执行失败，已跳过: {e}")
            continue
        if insight is not None:
            insights.append(insight)

    if category is not None:
        # 稳定排序，请求的类别排在前面
        insights.sort(key=lambda i: i.category != category)

    insights = insights[:MAX_FALLBACK_INSIGHTS]
    if not insights:
        insights = [_gathering_insight()]

    return _numbered(insights)


def get_empty_state_message(data: NutritionAggregates) -> Dict[str, str]:
    """
    获取空状态提示文案

    Returns:
        Dict[str, str]: 包含title和message
    """
    if data.days_using_app < 3:
        return {
            "title": "Building your profile...",
            "message": (
                "As you log meals over the next few days, I'll start noticing patterns and can "
                "offer personalized insights. It usually takes about a week for the good stuff to appear."
            ),
        }

    if data.today_meal_count == 0:
        return {
            "title": "Nothing logged yet today",
            "message": "Log your first meal and I'll share insights as your day takes shape.",
        }

    return {
        "title": "Gathering insights...",
        "message": "Continue logging to see personalized nutrition insights.",
    }
