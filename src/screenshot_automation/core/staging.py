"""暂存目录、图像写入与原子化发布。

每次运行在输出目录旁创建独立的暂存目录，所有产出先写入暂存区；
只有发布步骤会改动正式输出目录，并且通过目录重命名整体替换，
读者不会看到写了一半的正式目录。
"""

from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image

from screenshot_automation.core.config import OutputConfig
from screenshot_automation.core.exceptions import StorageError
from screenshot_automation.core.models import ProcessingResult, SourceImage

LOGGER = logging.getLogger(__name__)

SUPPORTED_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
}


def save_image_file(image: Image.Image, destination: Path, *, create_parents: bool = True) -> None:
    """按扩展名将 PIL Image 保存到磁盘，不携带 EXIF/ICC 等元数据。

    ``create_parents`` 为 False 时目标目录必须已存在，否则抛出 StorageError。
    """

    suffix = destination.suffix.lower()
    if suffix == ".partial":
        suffix = Path(destination.stem).suffix.lower()
    image_format = SUPPORTED_FORMATS.get(suffix)
    if not image_format:
        raise StorageError(f"不支持的输出格式: {destination.name}")

    save_params = {"optimize": True}
    image_to_save = image
    if image.mode != "RGB":
        image_to_save = image.convert("RGB")
    if image_format == "JPEG":
        save_params.update(quality=95, subsampling=0)

    try:
        if create_parents:
            destination.parent.mkdir(parents=True, exist_ok=True)
        image_to_save.save(destination, format=image_format, **save_params)
    except OSError as exc:
        raise StorageError(f"写入文件失败: {destination}") from exc


class StagingArea:
    """单次运行的暂存目录，负责路径分配、发布与清理。"""

    def __init__(self, config: OutputConfig, run_id: Optional[str] = None) -> None:
        self.output_dir = config.output_dir.expanduser().resolve()
        parent = (config.staging_root or self.output_dir.parent).expanduser().resolve()
        self.run_id = run_id or f"{time.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
        self.run_dir = parent / f".{self.output_dir.name}.staging-{self.run_id}"
        self.tree = self.run_dir / "tree"
        self._backup = self.run_dir / "previous"

    def __enter__(self) -> "StagingArea":
        self.prepare()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.discard()

    def prepare(self) -> None:
        try:
            self.tree.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise StorageError(f"无法创建暂存目录: {self.tree}") from exc
        LOGGER.debug("暂存目录: %s", self.tree)

    def locale_dir(self, locale: str) -> Path:
        path = self.tree / locale
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"无法创建语言暂存目录: {path}") from exc
        return path

    def staged_path(self, source: SourceImage) -> Path:
        return self.tree / source.locale / source.filename

    def final_path(self, source: SourceImage) -> Path:
        return self.output_dir / source.locale / source.filename

    def promote(self, results: Iterable[ProcessingResult]) -> None:
        """仅保留成功结果的暂存文件，然后整体替换正式输出目录。"""

        keep = {
            result.staged_path.resolve()
            for result in results
            if result.succeeded and result.staged_path is not None
        }
        self._prune(keep)

        try:
            self.output_dir.parent.mkdir(parents=True, exist_ok=True)
            if self.output_dir.exists():
                os.replace(self.output_dir, self._backup)
                try:
                    os.replace(self.tree, self.output_dir)
                except OSError:
                    os.replace(self._backup, self.output_dir)
                    raise
            else:
                os.replace(self.tree, self.output_dir)
        except OSError as exc:
            raise StorageError(f"发布到输出目录失败: {self.output_dir}") from exc

        LOGGER.info("已发布 %d 个文件到 %s", len(keep), self.output_dir)

    def discard(self) -> None:
        """删除本次运行的暂存目录（包括被替换下来的旧输出）。"""

        if self.run_dir.exists():
            shutil.rmtree(self.run_dir, ignore_errors=True)

    def _prune(self, keep: set[Path]) -> None:
        if not self.tree.exists():
            return
        for path in sorted(self.tree.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if path.is_file():
                if path.resolve() not in keep:
                    LOGGER.debug("丢弃未通过的暂存文件: %s", path)
                    path.unlink()
            elif path.is_dir() and not any(path.iterdir()):
                path.rmdir()
