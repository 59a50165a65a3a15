"""栅格处理能力边界。

所有合成调用都通过 :func:`invoke` 执行：带超时、返回结构化结果，
结果文件先写入 ``.partial`` 临时文件，完成后才改名到目标位置。
调用成功并不代表产出合格，调用方仍需重新测量产出文件。
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from PIL import Image, features

from screenshot_automation.core.exceptions import CapabilityUnavailable, CompositionError, StorageError
from screenshot_automation.core.staging import save_image_file

LOGGER = logging.getLogger(__name__)

REQUIRED_CODECS = ("zlib", "jpg")

RasterOperation = Callable[[Mapping[str, Any]], Image.Image]


@dataclass(slots=True)
class RasterResult:
    """一次栅格操作的结果。"""

    operation: str
    output_path: Optional[Path] = None
    error: Optional[Exception] = None
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out and self.output_path is not None


def ensure_capability() -> None:
    """确认 Pillow 具备 PNG/JPEG 编解码能力，否则抛出 CapabilityUnavailable。"""

    missing = [codec for codec in REQUIRED_CODECS if not features.check_codec(codec)]
    if missing:
        raise CapabilityUnavailable(f"Pillow 缺少必要的编解码支持: {', '.join(missing)}")
    LOGGER.debug("Pillow %s 编解码能力检查通过", Image.__version__)


def invoke(
    operation: RasterOperation,
    params: Mapping[str, Any],
    destination: Path,
    *,
    timeout: float,
) -> RasterResult:
    """在辅助线程中执行 ``operation(params)`` 并把结果写到 ``destination``。

    ``destination`` 所在目录必须已存在；超时后辅助线程被放弃，
    它不会再创建目录，也不会再把结果改名到目标位置。
    """

    name = getattr(operation, "__name__", repr(operation))
    partial = destination.with_name(destination.name + ".partial")
    abandoned = threading.Event()
    # 放弃标记与最终改名互斥，二者只会有一个生效
    guard = threading.Lock()
    outcome: dict[str, Any] = {}

    def _run() -> None:
        try:
            image = operation(params)
            if image is None:
                raise CompositionError(f"{name} 没有返回图像")
            try:
                if abandoned.is_set():
                    return
                save_image_file(image, partial, create_parents=False)
            finally:
                image.close()
            with guard:
                if abandoned.is_set():
                    partial.unlink(missing_ok=True)
                    return
                try:
                    os.replace(partial, destination)
                except OSError as exc:
                    raise StorageError(f"无法写入结果文件: {destination}") from exc
                outcome["path"] = destination
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc
            partial.unlink(missing_ok=True)

    started = time.monotonic()
    worker = threading.Thread(target=_run, name=f"raster-{name}", daemon=True)
    worker.start()
    worker.join(timeout)
    elapsed = time.monotonic() - started

    if worker.is_alive():
        with guard:
            finished = "path" in outcome
            if not finished:
                abandoned.set()
        if not finished:
            LOGGER.warning("%s 超时（%.1fs）：%s", name, timeout, destination.name)
            return RasterResult(
                operation=name,
                error=CompositionError(f"{name} 超过 {timeout:g}s 未完成"),
                timed_out=True,
                elapsed=elapsed,
            )

    error = outcome.get("error")
    if error is not None:
        return RasterResult(operation=name, error=error, elapsed=elapsed)

    path = outcome.get("path")
    if path is None or not Path(path).exists():
        return RasterResult(
            operation=name,
            error=CompositionError(f"{name} 没有生成输出文件: {destination}"),
            elapsed=elapsed,
        )

    LOGGER.debug("%s 完成 %s（%.2fs）", name, destination.name, elapsed)
    return RasterResult(operation=name, output_path=Path(path), elapsed=elapsed)
