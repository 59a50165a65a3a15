"""合成引擎：渐变画布、边框叠加与尺寸规范化。"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from screenshot_automation.core.config import CornerConfig, FrameConfig, GradientConfig, ShadowConfig
from screenshot_automation.core.exceptions import CompositionError, GeometryError
from screenshot_automation.core.registry import DeviceRegistry, flatten_entry
from screenshot_automation.processing.compositing import (
    CompositionSettings,
    aspect_matches,
    compose_screenshot,
    fit_within,
    plan_gradient_placement,
)
from screenshot_automation.processing.effects import corner_radius_for, radial_gradient
from screenshot_automation.utils.colors import parse_hex_color

FRAME_GRAY = (90, 90, 90, 255)


def noise_rgba(size: tuple[int, int], seed: int = 3) -> Image.Image:
    rng = np.random.default_rng(seed)
    data = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    return Image.fromarray(data).convert("RGBA")


def plain_settings(**overrides) -> CompositionSettings:
    settings = CompositionSettings(
        shadow=ShadowConfig(opacity=0.0),
        corners=CornerConfig(enabled=False),
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def gradient_device(width: int = 400, height: int = 300, scale: float = 0.85):
    return flatten_entry(
        {
            "id": "desk",
            "kind": "gradient",
            "canvas": {"width": width, "height": height},
            "scale_policy": scale,
        },
        Path("."),
    )


def write_frame(path: Path, size: tuple[int, int] = (120, 240), hole: tuple[int, int, int, int] = (10, 20, 100, 200)) -> None:
    frame = Image.new("RGBA", size, FRAME_GRAY)
    x, y, w, h = hole
    frame.paste((0, 0, 0, 0), (x, y, x + w, y + h))
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.save(path)


def frame_device(base_dir: Path, **overrides):
    entry = {
        "id": "phone",
        "kind": "frame",
        "screen_area": {"x": 10, "y": 20, "width": 100, "height": 200},
        "frame": {
            "size": {"width": 120, "height": 240},
            "directory": "frames",
            "variants": {"black": "phone.png"},
        },
    }
    entry.update(overrides)
    return flatten_entry(entry, base_dir)


def test_gradient_canvas_scenario_800x652() -> None:
    device = DeviceRegistry.load().resolve_by_name("macos")
    image = noise_rgba((800, 652))

    result = compose_screenshot(image, device, CompositionSettings())

    assert result.size == (2880, 1800)
    assert result.mode == "RGB"


def test_gradient_placement_never_upscales() -> None:
    small = plan_gradient_placement((800, 652), (2880, 1800), 0.85)
    assert small.size == (800, 652)
    assert (small.x, small.y) == ((2880 - 800) // 2, (1800 - 652) // 2)

    large = plan_gradient_placement((4000, 2000), (2880, 1800), 0.85)
    assert large.width <= 2880 * 0.85 and large.height <= 1800 * 0.85
    assert large.size == (2448, 1224)

    assert fit_within((100, 50), (1000, 1000)) == (100, 50)
    assert fit_within((1000, 500), (100, 100)) == (100, 50)


def test_gradient_places_screenshot_centered_over_gradient() -> None:
    device = gradient_device()
    image = Image.new("RGBA", (100, 50), (255, 0, 0, 255))
    settings = plain_settings()

    result = compose_screenshot(image, device, settings)

    assert result.size == (400, 300)
    assert result.getpixel((200, 150)) == (255, 0, 0)
    assert result.getpixel((150, 125)) == (255, 0, 0)
    assert result.getpixel((149, 124)) != (255, 0, 0)

    edge = parse_hex_color(settings.gradient.edge_color)
    corner = result.getpixel((0, 0))
    assert all(abs(a - b) <= 3 for a, b in zip(corner, edge))


def test_gradient_scale_override() -> None:
    device = gradient_device(width=200, height=200, scale=1.0)
    image = Image.new("RGBA", (400, 400), (0, 255, 0, 255))

    result = compose_screenshot(image, device, plain_settings(gradient=GradientConfig(scale=0.5)))

    # 缩放后 100x100 居中，四周露出渐变
    assert result.getpixel((100, 100)) == (0, 255, 0)
    assert result.getpixel((40, 40)) != (0, 255, 0)


def test_shadow_and_corners_darken_around_window() -> None:
    device = gradient_device()
    image = Image.new("RGBA", (200, 100), (255, 255, 255, 255))

    plain = compose_screenshot(image, device, plain_settings())
    styled = compose_screenshot(
        image,
        device,
        CompositionSettings(shadow=ShadowConfig(opacity=0.8, blur_radius=4, offset_y=6)),
    )

    # 窗口下沿之下是投影区域
    below = (200, 100 + 100 + 3)
    assert sum(styled.getpixel(below)) < sum(plain.getpixel(below))
    # 圆角处露出背景
    assert styled.getpixel((100, 100)) != (255, 255, 255)
    assert styled.getpixel((200, 150)) == (255, 255, 255)


def test_corner_radius_scales_with_width() -> None:
    config = CornerConfig()

    assert corner_radius_for(800, config) == 22
    assert corner_radius_for(1600, config) == 44
    assert corner_radius_for(100, config) == config.min_radius


def test_radial_gradient_colors() -> None:
    gradient = radial_gradient((101, 101), (200, 200, 200), (0, 0, 0))

    assert gradient.size == (101, 101)
    assert gradient.getpixel((50, 50)) == (200, 200, 200)
    assert sum(gradient.getpixel((0, 0))) < 30


def test_normalize_scenario_416x496() -> None:
    device = DeviceRegistry.load().resolve_by_name("apple_watch_series_10_46mm")
    image = noise_rgba((416, 496))

    result = compose_screenshot(image, device, CompositionSettings())

    assert result.size == (396, 484)
    assert result.mode == "RGB"


def test_frame_overlay_places_screenshot_in_screen_area(tmp_path: Path) -> None:
    write_frame(tmp_path / "frames" / "phone.png")
    device = frame_device(tmp_path)
    image = Image.new("RGBA", (100, 200), (0, 0, 255, 255))

    result = compose_screenshot(image, device, CompositionSettings())

    assert result.size == (120, 240)
    assert result.mode == "RGB"
    assert result.getpixel((60, 120)) == (0, 0, 255)
    assert result.getpixel((2, 2)) == FRAME_GRAY[:3]


def test_frame_overlay_resizes_matching_aspect(tmp_path: Path) -> None:
    write_frame(tmp_path / "frames" / "phone.png")
    device = frame_device(tmp_path)
    image = Image.new("RGBA", (50, 100), (0, 0, 255, 255))

    result = compose_screenshot(image, device, CompositionSettings())

    assert result.getpixel((60, 120)) == (0, 0, 255)


def test_frame_overlay_rejects_wrong_aspect(tmp_path: Path) -> None:
    write_frame(tmp_path / "frames" / "phone.png")
    device = frame_device(tmp_path)

    with pytest.raises(GeometryError):
        compose_screenshot(Image.new("RGBA", (100, 150)), device, CompositionSettings())


def test_frame_overlay_asset_problems(tmp_path: Path) -> None:
    device = frame_device(tmp_path)
    image = Image.new("RGBA", (100, 200), (0, 0, 255, 255))

    with pytest.raises(CompositionError):
        compose_screenshot(image, device, CompositionSettings())

    write_frame(tmp_path / "frames" / "phone.png", size=(130, 240))
    with pytest.raises(GeometryError):
        compose_screenshot(image, device, CompositionSettings())

    with pytest.raises(CompositionError):
        compose_screenshot(image, device, CompositionSettings(frame=FrameConfig(variant="gold")))


def test_frame_asset_dir_override(tmp_path: Path) -> None:
    custom = tmp_path / "custom"
    write_frame(custom / "phone.png")
    device = frame_device(tmp_path)
    image = Image.new("RGBA", (100, 200), (0, 0, 255, 255))

    result = compose_screenshot(image, device, CompositionSettings(frame=FrameConfig(asset_dir=custom)))

    assert result.size == (120, 240)


def test_frame_store_fit_centers_on_background(tmp_path: Path) -> None:
    write_frame(tmp_path / "frames" / "phone.png")
    device = frame_device(tmp_path, store_size={"width": 200, "height": 200})
    image = Image.new("RGBA", (100, 200), (0, 0, 255, 255))
    settings = CompositionSettings(frame=FrameConfig(background_color="#FF00FF"))

    result = compose_screenshot(image, device, settings)

    assert result.size == (200, 200)
    assert result.getpixel((10, 100)) == (255, 0, 255)
    assert result.getpixel((100, 100)) == (0, 0, 255)


def test_aspect_matches_tolerance() -> None:
    assert aspect_matches((1290, 2796), (645, 1398))
    assert aspect_matches((1000, 2000), (1004, 2000))
    assert not aspect_matches((1000, 2000), (1100, 2000))
    assert not aspect_matches((0, 10), (10, 10))
