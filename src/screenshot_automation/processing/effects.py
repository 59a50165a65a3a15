"""渐变背景、投影与圆角等图层效果。"""

from __future__ import annotations

import math

import numpy as np
from PIL import Image, ImageChops, ImageDraw, ImageFilter

from screenshot_automation.core.config import CornerConfig

_MASK_SUPERSAMPLE = 4


def radial_gradient(size: tuple[int, int], center: tuple[int, int, int], edge: tuple[int, int, int]) -> Image.Image:
    """生成精确为 ``size`` 的径向渐变，中心为 center 色，角落为 edge 色。"""

    width, height = size
    ys = np.arange(height, dtype=np.float32)[:, None]
    xs = np.arange(width, dtype=np.float32)[None, :]
    cx = (width - 1) / 2.0
    cy = (height - 1) / 2.0
    max_dist = math.hypot(width / 2.0, height / 2.0) or 1.0

    ratio = np.sqrt((xs - cx) ** 2 + (ys - cy) ** 2) / max_dist
    np.clip(ratio, 0.0, 1.0, out=ratio)

    start = np.asarray(center, dtype=np.float32)
    end = np.asarray(edge, dtype=np.float32)
    pixels = start + (end - start) * ratio[..., None]
    return Image.fromarray(np.rint(pixels).astype(np.uint8))


def corner_radius_for(width: int, config: CornerConfig) -> int:
    """圆角半径按窗口宽度等比缩放，并设置下限。"""

    radius = config.base_radius * width // config.reference_width
    return max(config.min_radius, radius)


def round_corners(image: Image.Image, radius: int) -> Image.Image:
    """为 RGBA 图片加上抗锯齿圆角（与已有 alpha 相乘）。"""

    width, height = image.size
    radius = min(radius, width // 2, height // 2)
    if radius <= 0:
        return image.copy()

    factor = _MASK_SUPERSAMPLE
    large = Image.new("L", (width * factor, height * factor), 0)
    ImageDraw.Draw(large).rounded_rectangle(
        (0, 0, width * factor - 1, height * factor - 1), radius=radius * factor, fill=255
    )
    mask = large.resize((width, height), Image.LANCZOS)

    rounded = image.convert("RGBA") if image.mode != "RGBA" else image.copy()
    rounded.putalpha(ImageChops.multiply(rounded.getchannel("A"), mask))
    return rounded


def drop_shadow(image: Image.Image, opacity: float, blur_radius: int) -> tuple[Image.Image, int]:
    """根据图片的 alpha 轮廓生成黑色模糊投影，返回 (投影图层, 四周留白)。"""

    pad = max(0, blur_radius) * 2
    width, height = image.size
    lut = [int(round(value * opacity)) for value in range(256)]
    silhouette = image.getchannel("A").point(lut)

    alpha = Image.new("L", (width + 2 * pad, height + 2 * pad), 0)
    alpha.paste(silhouette, (pad, pad))
    if blur_radius > 0:
        alpha = alpha.filter(ImageFilter.GaussianBlur(blur_radius))

    shadow = Image.new("RGBA", alpha.size, (0, 0, 0, 255))
    shadow.putalpha(alpha)
    return shadow, pad
