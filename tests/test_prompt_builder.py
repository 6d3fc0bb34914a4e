"""
提示词构建测试
"""

from nutrition_insights.core.models import InsightCategory, InsightRequest, NutritionAggregates
from nutrition_insights.services.prompt_builder import (
    MAX_FOODS_IN_PROMPT,
    build_system_prompt,
    build_user_message,
)
from nutrition_insights.services.response_sanitizer import BANNED_TERMS


class TestSystemPrompt:
    """系统提示词测试类"""

    def test_lists_banned_terms(self):
        """测试列出全部禁用词"""
        prompt = build_system_prompt()
        for term, _ in BANNED_TERMS:
            assert f'"{term}"' in prompt

    def test_format_rules(self):
        """测试包含格式约束"""
        prompt = build_system_prompt()
        assert "exactly one emoji" in prompt
        assert "at most 3 sentences" in prompt
        assert "exclamation" in prompt


class TestUserMessage:
    """用户消息测试类"""

    def setup_method(self):
        """测试前准备"""
        self.data = NutritionAggregates(
            today_calories=1432.6,
            today_protein=88,
            today_meal_count=3,
            today_foods=["oatmeal", "chicken salad", "apple"],
            logging_streak=12,
            days_using_app=30,
            user_goal="gain",
        )

    def test_includes_user_data(self):
        """测试包含当天数据"""
        message = build_user_message(self.data)

        assert message.startswith("USER DATA:")
        assert "- Goal: muscle gain" in message
        assert "1433 cal (target: 2000)" in message
        assert "88g of 150g target" in message
        assert "oatmeal, chicken salad, apple" in message
        assert "12 days logging" in message
        assert message.endswith("Share the most useful observation about today.")

    def test_unknown_goal_defaults_to_maintenance(self):
        """测试未知目标按维持处理"""
        self.data.user_goal = "bulk"
        assert "- Goal: maintenance" in build_user_message(self.data)

    def test_foods_capped(self):
        """测试食物列表数量受限"""
        self.data.today_foods = [f"food{i}" for i in range(15)]
        message = build_user_message(self.data)

        assert f"food{MAX_FOODS_IN_PROMPT - 1}" in message
        assert f"food{MAX_FOODS_IN_PROMPT}," not in message
        assert "food14" not in message

    def test_no_foods_logged(self):
        """测试未记录食物"""
        self.data.today_foods = []
        assert "No foods logged yet" in build_user_message(self.data)

    def test_category_focus(self):
        """测试按类别聚焦"""
        message = build_user_message(self.data, InsightRequest(category=InsightCategory.HYDRATION))
        assert message.endswith("Focus on water intake.")

    def test_question_takes_precedence(self):
        """测试问题优先于类别"""
        request = InsightRequest(category=InsightCategory.PROTEIN, question="Was lunch balanced?")
        message = build_user_message(self.data, request)

        assert message.endswith("Answer this question about their day: Was lunch balanced?")
        assert "Focus on" not in message
