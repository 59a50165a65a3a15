"""并发处理的工作单元。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from PIL import Image

from screenshot_automation.core.config import ValidationConfig
from screenshot_automation.core.exceptions import (
    CapabilityUnavailable,
    CompositionError,
    GeometryError,
    InputInvalidError,
    OutputValidationError,
    StorageError,
)
from screenshot_automation.core.models import ErrorKind, ProcessingResult, ProcessingStatus, SourceImage
from screenshot_automation.core.registry import ResolvedDevice
from screenshot_automation.processing import raster
from screenshot_automation.processing.compositing import CompositionSettings, composite_operation
from screenshot_automation.processing.image_loader import load_image
from screenshot_automation.processing.validation import validate_input, validate_output

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessingTask:
    """描述单个截图的合成任务。"""

    source: SourceImage
    device: ResolvedDevice
    staged_path: Path
    final_path: Path
    settings: CompositionSettings
    validation: ValidationConfig
    timeout: float
    known_canvases: list[tuple[str, tuple[int, int]]] = field(default_factory=list)


def classify_error(exc: BaseException) -> ErrorKind:
    """将异常映射为单文件错误类型。"""

    if isinstance(exc, InputInvalidError):
        return ErrorKind.INPUT_INVALID
    if isinstance(exc, OutputValidationError):
        return ErrorKind.OUTPUT_INVALID
    if isinstance(exc, GeometryError):
        return ErrorKind.GEOMETRY_MISMATCH
    if isinstance(exc, CapabilityUnavailable):
        return ErrorKind.TOOL_UNAVAILABLE
    if isinstance(exc, (StorageError, OSError)):
        return ErrorKind.IO_ERROR
    return ErrorKind.COMPOSITION_FAILED


def run_task(task: ProcessingTask) -> ProcessingResult:
    """在工作进程中执行：预检查、合成、写入暂存区、复测产出。

    单文件错误不会向外抛出，统一转换为失败的 ProcessingResult。
    """

    source = task.source
    input_size: Optional[tuple[int, int]] = None

    try:
        info = validate_input(source.source_path)
        input_size = info.size
        image = load_image(source.source_path)
    except InputInvalidError as exc:
        return _failed(task, exc, input_size)

    timed_out = False
    try:
        result = raster.invoke(
            composite_operation,
            {"image": image, "device": task.device, "settings": task.settings},
            task.staged_path,
            timeout=task.timeout,
        )
        timed_out = result.timed_out
    finally:
        # 超时的辅助线程可能仍在读取这张图片
        if not timed_out:
            image.close()

    if not result.ok:
        error = result.error or CompositionError(f"{result.operation} 没有生成输出文件")
        return _failed(task, error, input_size)

    try:
        measured = validate_output(
            task.staged_path,
            task.device.canvas_size,
            task.validation,
            known_canvases=task.known_canvases,
        )
    except OutputValidationError as exc:
        task.staged_path.unlink(missing_ok=True)
        return _failed(task, exc, input_size)

    LOGGER.debug(
        "完成 %s/%s -> %s (%dx%d, %d 字节)",
        source.locale,
        source.filename,
        task.device.id,
        measured.width,
        measured.height,
        measured.file_bytes,
    )
    return ProcessingResult(
        locale=source.locale,
        input_path=source.source_path,
        status=ProcessingStatus.SUCCESS,
        output_path=task.final_path,
        device_id=task.device.id,
        input_dimensions=input_size,
        output_dimensions=measured.size,
        staged_path=task.staged_path,
    )


def _failed(task: ProcessingTask, exc: BaseException, input_size: Optional[tuple[int, int]]) -> ProcessingResult:
    kind = classify_error(exc)
    LOGGER.error("处理失败 [%s] %s/%s: %s", kind.value, task.source.locale, task.source.filename, exc)
    return ProcessingResult(
        locale=task.source.locale,
        input_path=task.source.source_path,
        status=ProcessingStatus.FAILED,
        error_kind=kind,
        message=str(exc),
        device_id=task.device.id,
        input_dimensions=input_size,
    )


def probe_dimensions(path: Path) -> tuple[int, int]:
    """只读取文件头获取尺寸，用于按尺寸识别设备。"""

    try:
        with Image.open(path) as img:
            return img.size
    except (Image.DecompressionBombError, OSError) as exc:
        raise InputInvalidError(f"无法读取图像尺寸: {path.name} ({exc})") from exc
