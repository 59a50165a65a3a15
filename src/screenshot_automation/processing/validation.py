"""输入预检查与产出复测。

产出校验从不信任合成步骤的返回状态：尺寸、通道与文件大小每次都从
磁盘上的实际字节重新测量（OpenCV 独立解码，Pillow 交叉确认透明通道）。
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from screenshot_automation.core.config import ValidationConfig
from screenshot_automation.core.exceptions import InputInvalidError, OutputValidationError
from screenshot_automation.core.staging import SUPPORTED_FORMATS

CLOSEST_SIZE_TOLERANCE = 50.0

_ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}


@dataclass(slots=True)
class InputInfo:
    """通过预检查的输入图片信息。"""

    path: Path
    image_format: str
    width: int
    height: int
    mode: str

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


@dataclass(slots=True)
class OutputMeasurement:
    """从产出文件字节中重新测得的属性。"""

    width: int
    height: int
    channels: int
    has_alpha: bool
    file_bytes: int

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


def validate_input(path: Path) -> InputInfo:
    """确认文件存在、可读、非空、可解码，且扩展名与实际格式一致。"""

    if not path.exists():
        raise InputInvalidError(f"文件不存在: {path}")
    if not path.is_file():
        raise InputInvalidError(f"不是普通文件: {path}")
    if not os.access(path, os.R_OK):
        raise InputInvalidError(f"文件不可读: {path}")
    if path.stat().st_size == 0:
        raise InputInvalidError(f"文件为空: {path}")

    expected_format = SUPPORTED_FORMATS.get(path.suffix.lower())
    if expected_format is None:
        raise InputInvalidError(f"不支持的文件扩展名: {path.name}")

    try:
        with Image.open(path) as img:
            image_format = img.format or ""
            width, height = img.size
            mode = img.mode
            img.verify()
        # verify() 之后需要重新打开才能解码像素，用于发现截断的数据
        with Image.open(path) as img:
            img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise InputInvalidError(f"无法解码图像: {path.name} ({exc})") from exc

    if image_format != expected_format:
        raise InputInvalidError(
            f"扩展名声明为 {expected_format}，实际内容为 {image_format or '未知格式'}: {path.name}"
        )
    if width <= 0 or height <= 0:
        raise InputInvalidError(f"图像尺寸无效: {path.name} ({width}x{height})")

    return InputInfo(path=path, image_format=image_format, width=width, height=height, mode=mode)


def measure_output(path: Path) -> OutputMeasurement:
    """独立解码产出文件，返回实际尺寸、通道数与文件大小。"""

    try:
        file_bytes = path.stat().st_size
    except OSError as exc:
        raise OutputValidationError(f"产出文件不存在: {path}") from exc
    if file_bytes == 0:
        raise OutputValidationError(f"产出文件为空: {path.name}")

    try:
        buffer = np.fromfile(path, dtype=np.uint8)
        decoded = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    except (OSError, cv2.error) as exc:
        raise OutputValidationError(f"无法解码产出文件: {path.name} ({exc})") from exc
    if decoded is None:
        raise OutputValidationError(f"无法解码产出文件: {path.name}")

    height, width = decoded.shape[:2]
    channels = 1 if decoded.ndim == 2 else int(decoded.shape[2])

    try:
        with Image.open(path) as img:
            pil_alpha = img.mode in _ALPHA_MODES or "transparency" in img.info
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise OutputValidationError(f"无法读取产出文件: {path.name} ({exc})") from exc

    return OutputMeasurement(
        width=int(width),
        height=int(height),
        channels=channels,
        has_alpha=channels in (2, 4) or pil_alpha,
        file_bytes=file_bytes,
    )


def validate_output(
    path: Path,
    expected_size: tuple[int, int],
    limits: ValidationConfig,
    *,
    known_canvases: Sequence[tuple[str, tuple[int, int]]] = (),
) -> OutputMeasurement:
    """复测产出文件：尺寸必须精确一致、无透明通道、文件大小位于上下限之间。"""

    measured = measure_output(path)

    if measured.file_bytes < limits.min_file_bytes:
        raise OutputValidationError(
            f"产出文件过小（{measured.file_bytes} 字节 < {limits.min_file_bytes}），可能写入被截断: {path.name}"
        )
    if measured.file_bytes > limits.max_file_bytes:
        raise OutputValidationError(
            f"产出文件过大（{measured.file_bytes} 字节 > {limits.max_file_bytes}）: {path.name}"
        )

    if measured.size != tuple(expected_size):
        message = (
            f"产出尺寸 {measured.width}x{measured.height} 与目标 "
            f"{expected_size[0]}x{expected_size[1]} 不一致: {path.name}"
        )
        closest = closest_canvas(measured.width, measured.height, known_canvases)
        if closest is not None:
            name, (width, height) = closest
            message += f"（最接近 {name} {width}x{height}）"
        raise OutputValidationError(message)

    if measured.has_alpha:
        raise OutputValidationError(f"产出文件包含透明通道: {path.name}")

    return measured


def closest_canvas(
    width: int,
    height: int,
    candidates: Sequence[tuple[str, tuple[int, int]]],
    *,
    tolerance: float = CLOSEST_SIZE_TOLERANCE,
) -> Optional[tuple[str, tuple[int, int]]]:
    """返回与给定尺寸欧氏距离最近且在容差内的画布。"""

    best: Optional[tuple[str, tuple[int, int]]] = None
    best_distance = math.inf
    for name, (cw, ch) in candidates:
        distance = math.hypot(width - cw, height - ch)
        if distance < best_distance and distance < tolerance:
            best = (name, (cw, ch))
            best_distance = distance
    return best
