"""
营养洞察

基于本地语言模型的营养洞察生成流水线，模型不可用时使用规则洞察。
"""

__version__ = "0.1.0"
