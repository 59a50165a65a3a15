"""图片加载与基础预处理实现。"""

from __future__ import annotations

import io
import logging
from pathlib import Path

from PIL import Image, ImageCms, ImageOps, UnidentifiedImageError

from screenshot_automation.core.exceptions import InputInvalidError

LOGGER = logging.getLogger(__name__)

_SRGB_PROFILE = ImageCms.createProfile("sRGB")


def load_image(path: Path) -> Image.Image:
    """加载单张图片并执行 EXIF 旋转、色彩空间归一化，统一为 RGBA。

    返回值为新的 Image 对象，调用者负责关闭。
    """

    try:
        with Image.open(path) as img:
            img.load()

            # EXIF Orientation 校正
            img = ImageOps.exif_transpose(img)

            img = _to_srgb(img, path)
            if img.mode != "RGBA":
                img = _convert_to_rgba(img)

            return img.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        LOGGER.debug("无法识别图像文件 %s: %s", path, exc)
        raise InputInvalidError(f"无法加载图像: {path}") from exc


def _to_srgb(img: Image.Image, path: Path) -> Image.Image:
    """带 ICC 配置文件的图片转换到 sRGB；转换失败时保留原像素。"""

    icc = img.info.get("icc_profile")
    if not icc or img.mode not in {"RGB", "RGBA"}:
        return img

    try:
        source_profile = ImageCms.ImageCmsProfile(io.BytesIO(icc))
        return ImageCms.profileToProfile(img, source_profile, _SRGB_PROFILE, outputMode=img.mode)
    except (ImageCms.PyCMSError, OSError) as exc:
        LOGGER.warning("ICC 转换失败，按 sRGB 处理 %s: %s", path.name, exc)
        return img


def _convert_to_rgba(img: Image.Image) -> Image.Image:
    """将任意模式图像转换为 RGBA。"""

    if img.mode == "CMYK":
        return img.convert("RGB").convert("RGBA")

    # P 模式的 transparency 会在转换时映射为 alpha
    return img.convert("RGBA")
