"""核心数据模型定义。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from screenshot_automation.core.config import PromotionMode


class ProcessingStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    """单文件失败（或跳过）的原因分类。"""

    INPUT_INVALID = "input_invalid"
    GEOMETRY_MISMATCH = "geometry_mismatch"
    TOOL_UNAVAILABLE = "tool_unavailable"
    COMPOSITION_FAILED = "composition_failed"
    OUTPUT_INVALID = "output_invalid"
    IO_ERROR = "io_error"
    DEVICE_UNRESOLVED = "device_unresolved"
    CANCELLED = "cancelled"
    DRY_RUN = "dry_run"


@dataclass(slots=True)
class SourceImage:
    """扫描阶段得到的源图片信息。"""

    locale: str
    source_path: Path

    @property
    def filename(self) -> str:
        return self.source_path.name

    @property
    def key(self) -> tuple[str, str]:
        return self.locale, self.source_path.name


@dataclass(frozen=True)
class LocaleBatch:
    """一个语言区域目录及其中发现的原始截图，在单次运行内不可变。"""

    locale: str
    directory: Path
    files: tuple[SourceImage, ...] = ()

    def __len__(self) -> int:
        return len(self.files)


@dataclass(frozen=True)
class ProcessingResult:
    """记录单个文件的处理结果（用于汇总、报告与日志），创建后不再修改。"""

    locale: str
    input_path: Path
    status: ProcessingStatus
    output_path: Optional[Path] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    device_id: Optional[str] = None
    input_dimensions: Optional[tuple[int, int]] = None
    output_dimensions: Optional[tuple[int, int]] = None
    staged_path: Optional[Path] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.locale, self.input_path.name

    @property
    def succeeded(self) -> bool:
        return self.status is ProcessingStatus.SUCCESS


@dataclass(slots=True)
class BatchResult:
    """一次批处理的汇总结果。"""

    succeeded: list[ProcessingResult]
    skipped: list[ProcessingResult]
    failed: list[ProcessingResult]
    mode: PromotionMode = PromotionMode.STRICT
    locales: list[str] = field(default_factory=list)
    promoted: bool = False
    dry_run: bool = False

    def all_outcomes(self) -> list[ProcessingResult]:
        """返回所有结果记录，方便生成报告。"""

        return [*self.succeeded, *self.skipped, *self.failed]

    @property
    def cancelled(self) -> list[ProcessingResult]:
        return [item for item in self.skipped if item.error_kind is ErrorKind.CANCELLED]

    @property
    def ok(self) -> bool:
        """批次是否满足发布策略（严格模式下被取消的语言同样视为未完成）。"""

        if self.failed:
            return False
        if self.mode is PromotionMode.STRICT and self.cancelled:
            return False
        return True
