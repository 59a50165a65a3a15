"""项目内使用的自定义异常定义。"""


class ScreenshotAutomationError(Exception):
    """基础异常类型。"""


class InvalidConfigurationError(ScreenshotAutomationError):
    """配置或命令行参数不合法时抛出。"""


class ValidationError(ScreenshotAutomationError):
    """结构校验失败的基类。"""


class CatalogError(ValidationError):
    """设备目录条目格式错误。"""


class InputInvalidError(ValidationError):
    """输入图片未通过预检查。"""


class OutputValidationError(ValidationError):
    """产出文件未通过复测（尺寸、透明通道、文件大小）。"""


class CapabilityUnavailable(ScreenshotAutomationError):
    """底层栅格处理能力不可用，整批任务立即终止。"""


class GeometryError(ScreenshotAutomationError):
    """计算出的摆放位置超出目标区域。"""


class CompositionError(ScreenshotAutomationError):
    """合成步骤失败、超时或没有产出。"""


class StorageError(ScreenshotAutomationError):
    """文件系统读写失败。"""


class ProcessingAborted(ScreenshotAutomationError):
    """任务被用户中断时抛出。"""
