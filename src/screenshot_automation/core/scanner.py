"""语言目录与截图文件的扫描逻辑。"""

from __future__ import annotations

import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterator, Sequence

from screenshot_automation.core.config import JobConfig
from screenshot_automation.core.exceptions import InvalidConfigurationError
from screenshot_automation.core.models import LocaleBatch, SourceImage

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}


def _iter_locale_dirs(root: Path, excluded: Sequence[str]) -> Iterator[Path]:
    """遍历输入根目录下的语言子目录，跳过隐藏目录与排除项。"""

    excluded_lower = {name.lower() for name in excluded}
    for child in sorted(root.iterdir(), key=lambda p: p.name.lower()):
        if not child.is_dir():
            continue
        if child.name.startswith(".") or child.name.lower() in excluded_lower:
            continue
        yield child


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch(lowered, pattern.lower()) for pattern in patterns)


def collect_locale_images(locale_dir: Path, include_patterns: Sequence[str]) -> list[SourceImage]:
    """列出单个语言目录中匹配扩展名的截图（不递归）。"""

    collected: list[SourceImage] = []
    for candidate in locale_dir.iterdir():
        if not candidate.is_file() or candidate.name.startswith("."):
            continue
        if candidate.suffix.lower() not in IMAGE_EXTENSIONS:
            continue
        if not _matches_any(candidate.name, include_patterns):
            continue
        collected.append(SourceImage(locale=locale_dir.name, source_path=candidate))

    collected.sort(key=lambda x: x.source_path.name.lower())
    return collected


def discover_locales(config: JobConfig) -> list[LocaleBatch]:
    """动态发现输入根目录下的所有语言目录及其截图。"""

    root = config.input_dir
    if not root.exists() or not root.is_dir():
        raise InvalidConfigurationError(f"输入目录不存在或不是文件夹: {root}")

    batches: list[LocaleBatch] = []
    try:
        for locale_dir in _iter_locale_dirs(root, config.exclude_dirs):
            files = collect_locale_images(locale_dir, config.include_patterns)
            if not files:
                LOGGER.warning("语言目录中没有可处理的截图: %s", locale_dir.name)
            batches.append(LocaleBatch(locale=locale_dir.name, directory=locale_dir, files=tuple(files)))
    except PermissionError as exc:
        raise InvalidConfigurationError(f"无法访问输入目录: {root}") from exc

    if not batches:
        LOGGER.warning("输入目录下没有发现语言子目录: %s", root)
    else:
        LOGGER.info("发现语言目录: %s", ", ".join(batch.locale for batch in batches))
    return batches
