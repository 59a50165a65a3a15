"""设备规格目录：加载、校验、扁平化与查询。

目录文件使用嵌套结构（``screen_area: {x, y, width, height}``）便于阅读；
合成引擎只依赖扁平的 :class:`ResolvedDevice`。两者之间的转换集中在
:func:`flatten_entry` 中完成，目录格式演进时只需调整这一个函数。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

from screenshot_automation.core.exceptions import CatalogError

LOGGER = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "devices.json"
DEFAULT_SCALE_POLICY = 0.85

CatalogSource = Union[Path, str, Mapping[str, Any], None]


class DeviceKind(str, Enum):
    """设备的合成方式。"""

    FRAME = "frame"  # 截图放入设备边框的屏幕区域
    GRADIENT = "gradient"  # 截图缩放后放在渐变背景上并加投影
    NORMALIZE = "normalize"  # 仅缩放裁剪到目标尺寸


@dataclass(frozen=True)
class ResolvedDevice:
    """扁平化后的设备规格，合成引擎只读取这些字段。"""

    id: str
    name: str
    kind: DeviceKind
    canvas_width: int
    canvas_height: int
    raw_width: Optional[int] = None
    raw_height: Optional[int] = None
    filename_pattern: Optional[str] = None
    scale_policy: Optional[float] = None
    screenshot_x: Optional[int] = None
    screenshot_y: Optional[int] = None
    screenshot_width: Optional[int] = None
    screenshot_height: Optional[int] = None
    frame_width: Optional[int] = None
    frame_height: Optional[int] = None
    frame_directory: Optional[Path] = None
    frame_variants: tuple[tuple[str, str], ...] = ()
    default_variant: Optional[str] = None

    @property
    def canvas_size(self) -> tuple[int, int]:
        return self.canvas_width, self.canvas_height

    @property
    def raw_size(self) -> Optional[tuple[int, int]]:
        if self.raw_width is None or self.raw_height is None:
            return None
        return self.raw_width, self.raw_height

    @property
    def screen_area(self) -> Optional[tuple[int, int, int, int]]:
        if self.screenshot_width is None or self.screenshot_height is None:
            return None
        return (
            self.screenshot_x or 0,
            self.screenshot_y or 0,
            self.screenshot_width,
            self.screenshot_height,
        )

    @property
    def frame_size(self) -> Optional[tuple[int, int]]:
        if self.frame_width is None or self.frame_height is None:
            return None
        return self.frame_width, self.frame_height

    @property
    def has_frame(self) -> bool:
        return bool(self.frame_variants)

    @property
    def fits_to_store(self) -> bool:
        """边框尺寸与最终画布不同，需要整体缩放居中。"""

        return self.has_frame and self.frame_size != self.canvas_size

    def frame_asset(self, variant: Optional[str] = None, asset_dir: Optional[Path] = None) -> Path:
        """返回指定配色的边框图片路径；未知配色抛出 KeyError。"""

        variants = dict(self.frame_variants)
        chosen = variant or self.default_variant
        if chosen not in variants:
            raise KeyError(f"设备 {self.id} 没有边框配色 {chosen!r}（可选: {', '.join(sorted(variants))}）")
        directory = asset_dir or self.frame_directory or Path(".")
        return directory / variants[chosen]


@dataclass(frozen=True)
class Catalog:
    """一次加载得到的设备目录。"""

    source: str
    devices: tuple[ResolvedDevice, ...]

    def __iter__(self) -> Iterator[ResolvedDevice]:
        return iter(self.devices)

    def __len__(self) -> int:
        return len(self.devices)


def load_catalog(source: CatalogSource = None) -> Catalog:
    """加载设备目录（文件路径或已解析的映射），条目不合法时抛出 CatalogError。"""

    if source is None:
        source = DEFAULT_CATALOG_PATH

    if isinstance(source, Mapping):
        data = source
        base_dir = Path.cwd()
        label = "<mapping>"
    else:
        path = Path(source).expanduser()
        label = str(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise CatalogError(f"设备目录不存在: {path}") from exc
        except json.JSONDecodeError as exc:
            raise CatalogError(f"设备目录不是合法 JSON: {path} ({exc})") from exc
        except OSError as exc:
            raise CatalogError(f"无法读取设备目录: {path}") from exc
        base_dir = path.resolve().parent

    entries = data.get("devices") if isinstance(data, Mapping) else None
    if not isinstance(entries, list):
        raise CatalogError(f"设备目录缺少 devices 列表: {label}")

    devices: list[ResolvedDevice] = []
    seen_ids: dict[str, str] = {}
    seen_raw: dict[tuple[int, int], str] = {}

    for index, entry in enumerate(entries):
        device = flatten_entry(entry, base_dir, index=index)

        lowered = device.id.lower()
        if lowered in seen_ids:
            raise CatalogError(f"设备 id 重复: {device.id}")
        seen_ids[lowered] = device.id

        if device.raw_size is not None:
            other = seen_raw.get(device.raw_size)
            if other is not None:
                raise CatalogError(
                    f"原始尺寸 {device.raw_size[0]}x{device.raw_size[1]} 同时匹配 {other} 与 {device.id}"
                )
            seen_raw[device.raw_size] = device.id

        devices.append(device)

    LOGGER.debug("已加载设备目录 %s，共 %d 个设备", label, len(devices))
    return Catalog(source=label, devices=tuple(devices))


def flatten_entry(entry: Any, base_dir: Path, *, index: int = 0) -> ResolvedDevice:
    """将嵌套格式的目录条目转换为扁平的 ResolvedDevice。"""

    if not isinstance(entry, Mapping):
        raise CatalogError(f"第 {index} 个设备条目不是对象")

    device_id = entry.get("id")
    if not isinstance(device_id, str) or not device_id.strip():
        raise CatalogError(f"第 {index} 个设备条目缺少 id")
    context = f"设备 {device_id}"

    try:
        kind = DeviceKind(entry.get("kind", ""))
    except ValueError as exc:
        raise CatalogError(f"{context}: 未知的 kind {entry.get('kind')!r}") from exc

    pattern = entry.get("filename_pattern")
    if pattern is not None:
        if not isinstance(pattern, str):
            raise CatalogError(f"{context}: filename_pattern 必须是字符串")
        try:
            re.compile(pattern)
        except re.error as exc:
            raise CatalogError(f"{context}: filename_pattern 不是合法正则 ({exc})") from exc

    raw_size = _optional_size(entry, "raw_size", context)
    fields: dict[str, Any] = {
        "id": device_id,
        "name": str(entry.get("name") or device_id),
        "kind": kind,
        "filename_pattern": pattern,
    }

    if kind is DeviceKind.FRAME:
        screen = _rect(entry.get("screen_area"), f"{context}.screen_area")
        frame = entry.get("frame")
        if not isinstance(frame, Mapping):
            raise CatalogError(f"{context}: 边框设备缺少 frame 配置")
        frame_w, frame_h = _size(frame.get("size"), f"{context}.frame.size")

        x, y, width, height = screen
        if x + width > frame_w or y + height > frame_h:
            raise CatalogError(
                f"{context}: screen_area ({x},{y},{width}x{height}) 超出边框尺寸 {frame_w}x{frame_h}"
            )

        variants = frame.get("variants")
        if not isinstance(variants, Mapping) or not variants:
            raise CatalogError(f"{context}: frame.variants 不能为空")
        for variant_name, filename in variants.items():
            if not isinstance(filename, str) or not filename:
                raise CatalogError(f"{context}: 边框配色 {variant_name} 缺少文件名")
        default_variant = frame.get("default_variant") or next(iter(variants))
        if default_variant not in variants:
            raise CatalogError(f"{context}: default_variant {default_variant!r} 不在 variants 中")

        directory = Path(frame.get("directory") or ".")
        if not directory.is_absolute():
            directory = base_dir / directory

        store = _optional_size(entry, "store_size", context)
        canvas_w, canvas_h = store or (frame_w, frame_h)
        fields.update(
            canvas_width=canvas_w,
            canvas_height=canvas_h,
            screenshot_x=x,
            screenshot_y=y,
            screenshot_width=width,
            screenshot_height=height,
            frame_width=frame_w,
            frame_height=frame_h,
            frame_directory=directory,
            frame_variants=tuple((str(name), str(filename)) for name, filename in variants.items()),
            default_variant=str(default_variant),
        )
        raw_size = raw_size or (width, height)
    else:
        canvas_w, canvas_h = _size(entry.get("canvas"), f"{context}.canvas")
        fields.update(canvas_width=canvas_w, canvas_height=canvas_h)
        if kind is DeviceKind.GRADIENT:
            scale = entry.get("scale_policy", DEFAULT_SCALE_POLICY)
            if isinstance(scale, bool) or not isinstance(scale, (int, float)) or not 0 < scale <= 1:
                raise CatalogError(f"{context}: scale_policy 必须位于 (0, 1] 区间")
            fields["scale_policy"] = float(scale)

    if raw_size is not None:
        fields.update(raw_width=raw_size[0], raw_height=raw_size[1])

    return ResolvedDevice(**fields)


class DeviceRegistry:
    """只读的设备查询表。"""

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog
        self._by_key: dict[str, ResolvedDevice] = {}
        self._by_raw: dict[tuple[int, int], ResolvedDevice] = {}
        self._patterns: list[tuple[re.Pattern[str], ResolvedDevice]] = []

        for device in catalog:
            self._by_key.setdefault(device.id.lower(), device)
            self._by_key.setdefault(device.name.lower(), device)
            if device.raw_size is not None:
                self._by_raw[device.raw_size] = device
            if device.filename_pattern:
                self._patterns.append((re.compile(device.filename_pattern), device))

    @classmethod
    def load(cls, source: CatalogSource = None) -> "DeviceRegistry":
        return cls(load_catalog(source))

    def resolve_by_name(self, identifier: str) -> Optional[ResolvedDevice]:
        """按 id 或显示名称（不区分大小写）查找设备。"""

        if not identifier:
            return None
        return self._by_key.get(identifier.strip().lower())

    def resolve_by_dimensions(self, width: int, height: int) -> Optional[ResolvedDevice]:
        return self._by_raw.get((width, height))

    def resolve_by_filename(self, filename: str) -> Optional[ResolvedDevice]:
        """按文件名约定（如 ``iPhone 16 Pro Max-01_Welcome.png``）查找，返回目录中第一个匹配项。"""

        for pattern, device in self._patterns:
            if pattern.search(filename):
                return device
        return None

    def canvas_sizes(self) -> list[tuple[str, tuple[int, int]]]:
        return [(device.name, device.canvas_size) for device in self.catalog]

    def __iter__(self) -> Iterator[ResolvedDevice]:
        return iter(self.catalog)


def _size(value: Any, context: str) -> tuple[int, int]:
    if not isinstance(value, Mapping):
        raise CatalogError(f"{context}: 缺少 width/height")
    width = _positive_int(value.get("width"), f"{context}.width")
    height = _positive_int(value.get("height"), f"{context}.height")
    return width, height


def _optional_size(entry: Mapping[str, Any], key: str, context: str) -> Optional[tuple[int, int]]:
    value = entry.get(key)
    if value is None:
        return None
    return _size(value, f"{context}.{key}")


def _rect(value: Any, context: str) -> tuple[int, int, int, int]:
    if not isinstance(value, Mapping):
        raise CatalogError(f"{context}: 缺少 x/y/width/height")
    x = _non_negative_int(value.get("x"), f"{context}.x")
    y = _non_negative_int(value.get("y"), f"{context}.y")
    width, height = _size(value, context)
    return x, y, width, height


def _positive_int(value: Any, context: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise CatalogError(f"{context} 必须是正整数，实际为 {value!r}")
    return value


def _non_negative_int(value: Any, context: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CatalogError(f"{context} 必须是非负整数，实际为 {value!r}")
    return value
