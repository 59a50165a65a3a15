"""处理任务的配置模型。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from screenshot_automation.core.exceptions import InvalidConfigurationError
from screenshot_automation.utils.colors import luminance, parse_hex_color

DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_MIN_FILE_BYTES = 128


class PromotionMode(str, Enum):
    """批次结果发布到正式输出目录的策略。"""

    STRICT = "strict"  # 全部成功才替换正式目录
    BEST_EFFORT = "best-effort"  # 只发布成功的文件

    @classmethod
    def parse(cls, value: str | "PromotionMode") -> "PromotionMode":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidConfigurationError(f"未知的发布模式: {value}（可选 strict / best-effort）")


@dataclass(slots=True)
class GradientConfig:
    """渐变画布背景配置。"""

    center_color: str = "#2A5F6D"
    edge_color: str = "#0D1F26"
    scale: Optional[float] = None  # None 表示使用设备目录中的 scale_policy


@dataclass(slots=True)
class ShadowConfig:
    """投影参数。"""

    opacity: float = 0.5
    blur_radius: int = 30
    offset_y: int = 15


@dataclass(slots=True)
class CornerConfig:
    """窗口圆角配置，半径按输入宽度等比缩放。"""

    enabled: bool = True
    base_radius: int = 22
    reference_width: int = 800
    min_radius: int = 8


@dataclass(slots=True)
class FrameConfig:
    """设备边框合成配置。"""

    background_color: str = "#0E1117"
    variant: Optional[str] = None
    store_padding: float = 0.0
    asset_dir: Optional[Path] = None  # 覆盖目录中声明的边框资源目录


@dataclass(slots=True)
class ValidationConfig:
    """输出文件校验阈值。"""

    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    min_file_bytes: int = DEFAULT_MIN_FILE_BYTES


@dataclass(slots=True)
class OutputConfig:
    """正式输出目录与暂存目录配置。"""

    output_dir: Path
    staging_root: Optional[Path] = None  # None 时与输出目录同级，保证重命名在同一文件系统内


@dataclass(slots=True)
class JobConfig:
    """单次批处理任务的配置集合。"""

    input_dir: Path
    output: OutputConfig
    gradient: GradientConfig = field(default_factory=GradientConfig)
    shadow: ShadowConfig = field(default_factory=ShadowConfig)
    corners: CornerConfig = field(default_factory=CornerConfig)
    frame: FrameConfig = field(default_factory=FrameConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    catalog_path: Optional[Path] = None
    device: Optional[str] = None
    mode: PromotionMode = PromotionMode.STRICT
    include_patterns: Sequence[str] = field(default_factory=lambda: ("*.png", "*.jpg", "*.jpeg"))
    exclude_dirs: Sequence[str] = field(default_factory=lambda: ("processed",))
    max_workers: int = 4
    task_timeout: float = 120.0
    dry_run: bool = False
    report_path: Optional[Path] = None


def check_job_config(config: JobConfig) -> None:
    """校验配置取值，发现问题时抛出 InvalidConfigurationError。"""

    config.mode = PromotionMode.parse(config.mode)

    parse_hex_color(config.frame.background_color)
    center = parse_hex_color(config.gradient.center_color)
    edge = parse_hex_color(config.gradient.edge_color)
    if luminance(center) <= luminance(edge):
        raise InvalidConfigurationError("渐变中心色必须比边缘色更亮")

    scale = config.gradient.scale
    if scale is not None and not 0 < scale <= 1:
        raise InvalidConfigurationError(f"缩放比例必须位于 (0, 1] 区间: {scale}")

    shadow = config.shadow
    if not 0 <= shadow.opacity <= 1:
        raise InvalidConfigurationError(f"投影不透明度必须位于 [0, 1] 区间: {shadow.opacity}")
    if shadow.blur_radius < 0:
        raise InvalidConfigurationError("投影模糊半径不能为负数")

    corners = config.corners
    if corners.reference_width <= 0 or corners.base_radius < 0 or corners.min_radius < 0:
        raise InvalidConfigurationError("圆角参数必须为非负数，参考宽度必须大于 0")

    if not 0 <= config.frame.store_padding < 0.5:
        raise InvalidConfigurationError(f"边距比例必须位于 [0, 0.5) 区间: {config.frame.store_padding}")

    limits = config.validation
    if limits.min_file_bytes < 0 or limits.max_file_bytes <= 0:
        raise InvalidConfigurationError("文件大小阈值必须为正数")
    if limits.min_file_bytes >= limits.max_file_bytes:
        raise InvalidConfigurationError("文件大小下限必须小于上限")

    if config.task_timeout <= 0:
        raise InvalidConfigurationError("单文件超时时间必须大于 0")
    if not config.include_patterns:
        raise InvalidConfigurationError("至少需要一个文件匹配模式")

    check_output_location(config.input_dir, config.output.output_dir)


def check_output_location(input_dir: Path, output_dir: Path) -> None:
    """发布会整体替换输出目录，因此输出目录不能是输入目录本身或其上级目录。"""

    source = input_dir.expanduser().resolve()
    target = output_dir.expanduser().resolve()
    if target == source:
        raise InvalidConfigurationError(f"输出目录不能与输入目录相同: {target}")
    if target in source.parents:
        raise InvalidConfigurationError(f"输出目录不能是输入目录的上级目录: {target}")
