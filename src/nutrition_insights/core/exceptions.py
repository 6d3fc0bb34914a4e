"""
自定义异常定义

定义洞察流水线中使用的自定义异常类。
"""


class NutritionInsightsError(Exception):
    """基础异常类"""
    pass


class ModelDownloadError(NutritionInsightsError):
    """模型下载错误"""
    pass


class ModelIntegrityError(ModelDownloadError):
    """模型文件完整性校验失败"""
    pass


class ModelLoadError(NutritionInsightsError):
    """模型加载错误"""
    pass


class InferenceError(NutritionInsightsError):
    """推理过程错误"""
    pass


class GenerationTimeoutError(InferenceError):
    """生成超时"""
    pass


class ConfigurationError(NutritionInsightsError):
    """配置错误"""
    pass


class UnsupportedDeviceError(NutritionInsightsError):
    """设备不支持本地模型"""
    pass


class PersistenceError(NutritionInsightsError):
    """持久化存储错误"""
    pass
