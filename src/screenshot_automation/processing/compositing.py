"""合成引擎：渐变画布、设备边框叠加与尺寸规范化。"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from PIL import Image, ImageOps, UnidentifiedImageError

from screenshot_automation.core.config import CornerConfig, FrameConfig, GradientConfig, ShadowConfig
from screenshot_automation.core.exceptions import CompositionError, GeometryError
from screenshot_automation.core.registry import DEFAULT_SCALE_POLICY, DeviceKind, ResolvedDevice
from screenshot_automation.processing.effects import corner_radius_for, drop_shadow, radial_gradient, round_corners
from screenshot_automation.utils.colors import parse_hex_color

LOGGER = logging.getLogger(__name__)

ASPECT_TOLERANCE = 0.005


@dataclass(slots=True)
class CompositionSettings:
    """合成所需的全部样式参数，可随任务一起传给工作进程。"""

    gradient: GradientConfig = field(default_factory=GradientConfig)
    shadow: ShadowConfig = field(default_factory=ShadowConfig)
    corners: CornerConfig = field(default_factory=CornerConfig)
    frame: FrameConfig = field(default_factory=FrameConfig)


@dataclass(slots=True)
class Placement:
    """截图在画布上的最终位置与尺寸。"""

    x: int
    y: int
    width: int
    height: int

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


def compose_screenshot(image: Image.Image, device: ResolvedDevice, settings: CompositionSettings) -> Image.Image:
    """按设备类型选择合成方式，返回尺寸等于设备画布的 RGB 图像。"""

    if device.has_frame:
        return compose_frame_overlay(image, device, settings)
    if device.kind is DeviceKind.NORMALIZE:
        return normalize_to_canvas(image, device, settings)
    return compose_gradient_canvas(image, device, settings)


def composite_operation(params: Mapping[str, Any]) -> Image.Image:
    """栅格操作入口：``params`` 需包含 image、device 与 settings。"""

    return compose_screenshot(params["image"], params["device"], params["settings"])


def fit_within(size: tuple[int, int], bounds: tuple[float, float]) -> tuple[int, int]:
    """等比缩放到不超过 bounds 的最大尺寸，从不放大。"""

    width, height = size
    ratio = min(bounds[0] / width, bounds[1] / height, 1.0)
    if ratio >= 1.0:
        return width, height
    return max(1, math.floor(width * ratio)), max(1, math.floor(height * ratio))


def plan_gradient_placement(
    input_size: tuple[int, int],
    canvas_size: tuple[int, int],
    scale: float,
) -> Placement:
    """计算截图在渐变画布上的缩放尺寸与居中位置。"""

    canvas_w, canvas_h = canvas_size
    width, height = fit_within(input_size, (canvas_w * scale, canvas_h * scale))
    x = (canvas_w - width) // 2
    y = (canvas_h - height) // 2
    if x < 0 or y < 0 or x + width > canvas_w or y + height > canvas_h:
        raise GeometryError(f"截图 {width}x{height} 无法放入画布 {canvas_w}x{canvas_h}")
    return Placement(x=x, y=y, width=width, height=height)


def compose_gradient_canvas(
    image: Image.Image,
    device: ResolvedDevice,
    settings: CompositionSettings,
) -> Image.Image:
    """截图缩放后居中放在径向渐变背景上，带圆角与投影。"""

    scale = settings.gradient.scale or device.scale_policy or DEFAULT_SCALE_POLICY
    placement = plan_gradient_placement(image.size, device.canvas_size, scale)

    window = image.convert("RGBA") if image.mode != "RGBA" else image
    if settings.corners.enabled:
        window = round_corners(window, corner_radius_for(image.width, settings.corners))
    if window.size != placement.size:
        window = window.resize(placement.size, Image.LANCZOS)

    background = radial_gradient(
        device.canvas_size,
        parse_hex_color(settings.gradient.center_color),
        parse_hex_color(settings.gradient.edge_color),
    ).convert("RGBA")

    shadow_cfg = settings.shadow
    if shadow_cfg.opacity > 0:
        shadow, pad = drop_shadow(window, shadow_cfg.opacity, shadow_cfg.blur_radius)
        # 投影可能越过画布边缘，先贴到同尺寸透明图层再合成
        layer = Image.new("RGBA", device.canvas_size, (0, 0, 0, 0))
        layer.paste(shadow, (placement.x - pad, placement.y + shadow_cfg.offset_y - pad))
        background = Image.alpha_composite(background, layer)

    background.alpha_composite(window, dest=(placement.x, placement.y))
    LOGGER.debug(
        "渐变画布 %s: %dx%d -> %dx%d @ (%d, %d)",
        device.id,
        image.width,
        image.height,
        placement.width,
        placement.height,
        placement.x,
        placement.y,
    )
    return background.convert("RGB")


def compose_frame_overlay(
    image: Image.Image,
    device: ResolvedDevice,
    settings: CompositionSettings,
) -> Image.Image:
    """截图放入边框的屏幕区域并叠加边框；必要时整体缩放到商店尺寸。"""

    screen = device.screen_area
    frame_size = device.frame_size
    if screen is None or frame_size is None:
        raise GeometryError(f"设备 {device.id} 缺少屏幕区域或边框尺寸")
    x, y, screen_w, screen_h = screen
    frame_w, frame_h = frame_size

    if x + screen_w > frame_w or y + screen_h > frame_h:
        raise GeometryError(f"屏幕区域超出边框范围: {device.id}")

    screenshot = image.convert("RGBA") if image.mode != "RGBA" else image
    if screenshot.size != (screen_w, screen_h):
        if not aspect_matches(screenshot.size, (screen_w, screen_h)):
            raise GeometryError(
                f"截图 {screenshot.width}x{screenshot.height} 与 {device.name} 屏幕区域 "
                f"{screen_w}x{screen_h} 比例不一致"
            )
        screenshot = screenshot.resize((screen_w, screen_h), Image.LANCZOS)

    frame = _load_frame(device, settings.frame)

    composite = Image.new("RGBA", frame_size, (0, 0, 0, 0))
    composite.paste(screenshot, (x, y))
    composite.alpha_composite(frame)
    frame.close()

    if device.fits_to_store:
        composite = _fit_to_store(composite, device.canvas_size, settings.frame.store_padding)

    background = Image.new("RGB", composite.size, parse_hex_color(settings.frame.background_color))
    background.paste(composite, (0, 0), composite)
    return background


def normalize_to_canvas(
    image: Image.Image,
    device: ResolvedDevice,
    settings: CompositionSettings,
) -> Image.Image:
    """等比缩放覆盖后居中裁剪到设备画布尺寸，透明区域铺背景色。"""

    if image.size == device.canvas_size:
        fitted = image.copy()
    else:
        fitted = ImageOps.fit(image, device.canvas_size, Image.LANCZOS, centering=(0.5, 0.5))

    if fitted.mode == "RGB":
        return fitted
    rgba = fitted.convert("RGBA")
    background = Image.new("RGB", rgba.size, parse_hex_color(settings.frame.background_color))
    background.paste(rgba, (0, 0), rgba)
    return background


def aspect_matches(size: tuple[int, int], target: tuple[int, int], *, tolerance: float = ASPECT_TOLERANCE) -> bool:
    """比较两个尺寸的宽高比，相对误差在 tolerance 内视为一致。"""

    width, height = size
    target_w, target_h = target
    if not (width and height and target_w and target_h):
        return False
    expected = target_w / target_h
    return abs(width / height - expected) / expected <= tolerance


def _load_frame(device: ResolvedDevice, frame_cfg: FrameConfig) -> Image.Image:
    try:
        path = device.frame_asset(frame_cfg.variant, frame_cfg.asset_dir)
    except KeyError as exc:
        raise CompositionError(str(exc.args[0])) from exc

    if not path.is_file():
        raise CompositionError(f"边框资源不存在: {path}")

    try:
        with Image.open(path) as frame_img:
            frame = frame_img.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise CompositionError(f"无法加载边框资源 {path}: {exc}") from exc

    if frame.size != device.frame_size:
        size = frame.size
        frame.close()
        raise GeometryError(
            f"边框资源尺寸 {size[0]}x{size[1]} 与目录声明 "
            f"{device.frame_width}x{device.frame_height} 不一致: {path.name}"
        )
    return frame


def _fit_to_store(composite: Image.Image, store_size: tuple[int, int], padding: float) -> Image.Image:
    """将带边框的合成图等比缩放到商店画布内并居中。"""

    store_w, store_h = store_size
    avail_w = store_w * (1 - 2 * padding)
    avail_h = store_h * (1 - 2 * padding)
    ratio = min(avail_w / composite.width, avail_h / composite.height)
    width = max(1, min(store_w, math.floor(composite.width * ratio)))
    height = max(1, min(store_h, math.floor(composite.height * ratio)))

    scaled = composite.resize((width, height), Image.LANCZOS)
    canvas = Image.new("RGBA", store_size, (0, 0, 0, 0))
    canvas.alpha_composite(scaled, dest=((store_w - width) // 2, (store_h - height) // 2))
    return canvas
