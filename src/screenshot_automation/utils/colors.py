"""颜色工具函数。"""

from __future__ import annotations

import re
from typing import Tuple

from screenshot_automation.core.exceptions import InvalidConfigurationError

RGB = Tuple[int, int, int]

HEX_COLOR_RE = re.compile(r"^#?(?P<hex>[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def parse_hex_color(value: str) -> RGB:
    """将 ``#RGB`` / ``#RRGGBB`` 解析为 RGB 三元组，格式错误抛出 InvalidConfigurationError。"""

    match = HEX_COLOR_RE.match((value or "").strip())
    if not match:
        raise InvalidConfigurationError(f"无法解析颜色值: {value!r}")

    digits = match.group("hex")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    red, green, blue = bytes.fromhex(digits)
    return red, green, blue


def luminance(rgb: RGB) -> float:
    """按 Rec. 709 系数计算相对亮度（0~255），用于比较渐变两端的明暗。"""

    red, green, blue = rgb
    return 0.2126 * red + 0.7152 * green + 0.0722 * blue
