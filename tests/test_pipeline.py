"""批处理流水线：发布策略、原子替换、取消与预演。"""

from __future__ import annotations

import csv
import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from screenshot_automation.core.config import JobConfig, OutputConfig, PromotionMode, ValidationConfig
from screenshot_automation.core.exceptions import InvalidConfigurationError
from screenshot_automation.core.models import ErrorKind
from screenshot_automation.core.progress import CancellationToken, ProgressUpdate
from screenshot_automation.processing.pipeline import process_batch

CATALOG = {
    "devices": [
        {
            "id": "desk",
            "name": "Desk",
            "kind": "gradient",
            "filename_pattern": "^Desk",
            "canvas": {"width": 320, "height": 200},
            "scale_policy": 0.85,
        },
        {
            "id": "watch",
            "name": "Watch",
            "kind": "normalize",
            "raw_size": {"width": 416, "height": 496},
            "canvas": {"width": 396, "height": 484},
        },
    ]
}


def write_catalog(root: Path) -> Path:
    path = root / "devices.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")
    return path


def write_noise(path: Path, size: tuple[int, int] = (200, 120), seed: int = 1) -> Path:
    rng = np.random.default_rng(seed)
    data = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(data).save(path)
    return path


def make_config(tmp_path: Path, **overrides) -> JobConfig:
    config = JobConfig(
        input_dir=tmp_path / "input",
        output=OutputConfig(output_dir=tmp_path / "output"),
        catalog_path=write_catalog(tmp_path),
        max_workers=1,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def snapshot_tree(root: Path) -> dict[str, bytes]:
    return {str(path.relative_to(root)): path.read_bytes() for path in sorted(root.rglob("*")) if path.is_file()}


def staging_leftovers(tmp_path: Path) -> list[Path]:
    return list(tmp_path.glob(".output.staging-*"))


def populate(tmp_path: Path) -> None:
    inputs = tmp_path / "input"
    write_noise(inputs / "en" / "Desk-01.png", seed=1)
    write_noise(inputs / "en" / "Desk-02.png", seed=2)
    write_noise(inputs / "fr" / "Desk-01.png", seed=3)
    write_noise(inputs / "fr" / "watch.png", size=(416, 496), seed=4)


def test_strict_run_promotes_all_locales(tmp_path: Path) -> None:
    populate(tmp_path)

    result = process_batch(make_config(tmp_path))

    assert result.ok and result.promoted
    assert len(result.succeeded) == 4
    assert result.locales == ["en", "fr"]
    output = tmp_path / "output"
    with Image.open(output / "en" / "Desk-01.png") as img:
        assert img.size == (320, 200)
        assert img.mode == "RGB"
    with Image.open(output / "fr" / "watch.png") as img:
        assert img.size == (396, 484)
    assert {record.device_id for record in result.succeeded} == {"desk", "watch"}
    assert all(record.output_path.exists() for record in result.succeeded)
    assert not staging_leftovers(tmp_path)


def test_strict_failure_leaves_previous_output_untouched(tmp_path: Path) -> None:
    populate(tmp_path)
    process_batch(make_config(tmp_path))
    before = snapshot_tree(tmp_path / "output")

    (tmp_path / "input" / "fr" / "Desk-03.png").write_text("not an image")
    write_noise(tmp_path / "input" / "en" / "Desk-04.png", seed=9)
    result = process_batch(make_config(tmp_path))

    assert not result.ok
    assert not result.promoted
    assert len(result.failed) == 1
    assert result.failed[0].error_kind is ErrorKind.INPUT_INVALID
    assert snapshot_tree(tmp_path / "output") == before
    assert not staging_leftovers(tmp_path)


def test_best_effort_publishes_only_successes(tmp_path: Path) -> None:
    inputs = tmp_path / "input"
    write_noise(inputs / "en" / "Desk-good.png")
    (inputs / "en" / "Desk-corrupt.png").write_text("not an image")
    stale = tmp_path / "output" / "old" / "stale.png"
    write_noise(stale)

    result = process_batch(make_config(tmp_path, mode=PromotionMode.BEST_EFFORT))

    assert result.promoted
    assert result.ok is False
    assert len(result.succeeded) == 1
    assert len(result.failed) == 1
    files = snapshot_tree(tmp_path / "output")
    assert list(files) == [str(Path("en") / "Desk-good.png")]


def test_best_effort_mode_accepts_string(tmp_path: Path) -> None:
    populate(tmp_path)

    result = process_batch(make_config(tmp_path, mode="best-effort"))

    assert result.mode is PromotionMode.BEST_EFFORT
    assert result.ok


def test_empty_locale_is_not_an_error(tmp_path: Path) -> None:
    (tmp_path / "input" / "en").mkdir(parents=True)

    result = process_batch(make_config(tmp_path))

    assert result.ok
    assert not result.promoted
    assert result.all_outcomes() == []
    assert result.locales == ["en"]
    assert not (tmp_path / "output").exists()


def test_missing_input_directory(tmp_path: Path) -> None:
    with pytest.raises(InvalidConfigurationError):
        process_batch(make_config(tmp_path))


def test_unknown_forced_device(tmp_path: Path) -> None:
    populate(tmp_path)

    with pytest.raises(InvalidConfigurationError, match="未知的设备"):
        process_batch(make_config(tmp_path, device="toaster"))


def test_forced_device_overrides_filename(tmp_path: Path) -> None:
    write_noise(tmp_path / "input" / "en" / "anything.png", size=(416, 496))

    result = process_batch(make_config(tmp_path, device="Desk"))

    assert [record.device_id for record in result.succeeded] == ["desk"]
    assert result.succeeded[0].output_dimensions == (320, 200)


def test_unresolved_device_is_skipped(tmp_path: Path) -> None:
    write_noise(tmp_path / "input" / "en" / "Desk-01.png")
    write_noise(tmp_path / "input" / "en" / "mystery.png", size=(64, 64))

    result = process_batch(make_config(tmp_path))

    assert result.ok and result.promoted
    assert len(result.skipped) == 1
    assert result.skipped[0].error_kind is ErrorKind.DEVICE_UNRESOLVED
    assert not (tmp_path / "output" / "en" / "mystery.png").exists()


def test_rerun_is_idempotent(tmp_path: Path) -> None:
    populate(tmp_path)

    process_batch(make_config(tmp_path))
    first = snapshot_tree(tmp_path / "output")
    process_batch(make_config(tmp_path))
    second = snapshot_tree(tmp_path / "output")

    assert first == second
    assert len(first) == 4


def test_dry_run_writes_nothing(tmp_path: Path) -> None:
    populate(tmp_path)
    report = tmp_path / "reports" / "run.csv"

    result = process_batch(make_config(tmp_path, dry_run=True, report_path=report))

    assert result.dry_run
    assert result.ok and not result.promoted
    assert len(result.skipped) == 4
    assert {record.error_kind for record in result.skipped} == {ErrorKind.DRY_RUN}
    assert not (tmp_path / "output").exists()
    assert not report.exists()
    assert not staging_leftovers(tmp_path)


def test_cancelled_locale_blocks_strict_promotion(tmp_path: Path) -> None:
    populate(tmp_path)
    token = CancellationToken()
    token.cancel("fr")

    strict = process_batch(make_config(tmp_path), cancel_token=token)

    assert not strict.ok and not strict.promoted
    assert len(strict.cancelled) == 2
    assert len(strict.succeeded) == 2
    assert not (tmp_path / "output").exists()

    relaxed = process_batch(make_config(tmp_path, mode=PromotionMode.BEST_EFFORT), cancel_token=token)

    assert relaxed.ok and relaxed.promoted
    assert sorted(snapshot_tree(tmp_path / "output")) == [
        str(Path("en") / "Desk-01.png"),
        str(Path("en") / "Desk-02.png"),
    ]


def test_cancel_during_run_skips_pending_files_of_that_locale(tmp_path: Path) -> None:
    populate(tmp_path)
    token = CancellationToken()
    updates: list[ProgressUpdate] = []

    def on_progress(update: ProgressUpdate) -> None:
        updates.append(update)
        if update.completed == 1:
            token.cancel("en")

    result = process_batch(
        make_config(tmp_path, mode=PromotionMode.BEST_EFFORT),
        progress_callback=on_progress,
        cancel_token=token,
    )

    cancelled = {(record.locale, record.input_path.name) for record in result.cancelled}
    assert cancelled == {("en", "Desk-02.png")}
    assert {record.locale for record in result.succeeded} == {"en", "fr"}
    assert len(result.succeeded) == 3
    assert updates[-1].status == "finished"
    assert updates[-1].completed == updates[-1].total == 4


def test_output_validation_failure_is_recorded(tmp_path: Path) -> None:
    write_noise(tmp_path / "input" / "en" / "Desk-01.png")

    result = process_batch(
        make_config(tmp_path, validation=ValidationConfig(max_file_bytes=200, min_file_bytes=1))
    )

    assert not result.ok
    assert result.failed[0].error_kind is ErrorKind.OUTPUT_INVALID
    assert not (tmp_path / "output").exists()


def test_timeout_counts_as_composition_failure(tmp_path: Path) -> None:
    write_noise(tmp_path / "input" / "en" / "Desk-01.png")

    result = process_batch(make_config(tmp_path, task_timeout=1e-6))

    assert not result.ok
    assert result.failed[0].error_kind is ErrorKind.COMPOSITION_FAILED
    assert not (tmp_path / "output").exists()


def test_report_lists_every_file(tmp_path: Path) -> None:
    populate(tmp_path)
    (tmp_path / "input" / "en" / "Desk-bad.png").write_text("broken")
    report = tmp_path / "report.csv"

    process_batch(make_config(tmp_path, mode=PromotionMode.BEST_EFFORT, report_path=report))

    with report.open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 5
    statuses = {row["input_path"].split("/")[-1] + "@" + row["locale"]: row["status"] for row in rows}
    assert statuses["Desk-bad.png@en"] == "failed"
    assert statuses["watch.png@fr"] == "success"
    failed_row = next(row for row in rows if row["status"] == "failed")
    assert failed_row["error_kind"] == "input_invalid"


def test_process_pool_execution(tmp_path: Path) -> None:
    populate(tmp_path)

    result = process_batch(make_config(tmp_path, max_workers=2))

    assert result.ok and result.promoted
    assert len(result.succeeded) == 4


def test_output_equal_to_input_is_rejected(tmp_path: Path) -> None:
    populate(tmp_path)
    source = tmp_path / "input" / "en" / "Desk-01.png"
    before = source.read_bytes()

    with pytest.raises(InvalidConfigurationError, match="相同"):
        process_batch(make_config(tmp_path, output=OutputConfig(output_dir=tmp_path / "input")))

    assert source.read_bytes() == before
    assert not staging_leftovers(tmp_path)


def test_output_above_input_is_rejected(tmp_path: Path) -> None:
    screens = tmp_path / "screens"
    write_noise(screens / "raw" / "en" / "Desk-01.png")
    (screens / "keep.txt").write_text("keep me")

    config = make_config(
        tmp_path,
        input_dir=screens / "raw",
        output=OutputConfig(output_dir=screens),
    )
    with pytest.raises(InvalidConfigurationError, match="上级"):
        process_batch(config)

    assert (screens / "raw" / "en" / "Desk-01.png").exists()
    assert (screens / "keep.txt").read_text() == "keep me"


def test_oversized_input_fails_only_that_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    inputs = tmp_path / "input"
    write_noise(inputs / "en" / "Desk-01.png", size=(200, 120))
    write_noise(inputs / "en" / "Desk-02.png", size=(400, 300))
    # 不匹配文件名约定，需要读取尺寸识别设备
    write_noise(inputs / "fr" / "huge.png", size=(400, 300))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 40000)

    result = process_batch(make_config(tmp_path, mode=PromotionMode.BEST_EFFORT))

    assert [record.input_path.name for record in result.succeeded] == ["Desk-01.png"]
    failed = {(record.locale, record.input_path.name): record.error_kind for record in result.failed}
    assert failed == {
        ("en", "Desk-02.png"): ErrorKind.INPUT_INVALID,
        ("fr", "huge.png"): ErrorKind.INPUT_INVALID,
    }
    assert result.promoted


def test_all_unresolved_files_log_a_hint(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    write_noise(tmp_path / "input" / "en" / "capture.png", size=(64, 64))

    with caplog.at_level("WARNING"):
        result = process_batch(make_config(tmp_path))

    assert result.ok and not result.promoted
    assert any("--device" in record.getMessage() for record in caplog.records)


def test_missing_frame_asset_is_reported_before_processing(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    catalog = tmp_path / "frames.json"
    catalog.write_text(
        json.dumps(
            {
                "devices": [
                    {
                        "id": "phone",
                        "kind": "frame",
                        "filename_pattern": "^Phone",
                        "screen_area": {"x": 10, "y": 20, "width": 100, "height": 200},
                        "frame": {
                            "size": {"width": 120, "height": 240},
                            "directory": "frames",
                            "variants": {"black": "phone.png"},
                        },
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    write_noise(tmp_path / "input" / "en" / "Phone-01.png", size=(100, 200))

    with caplog.at_level("WARNING"):
        result = process_batch(make_config(tmp_path, catalog_path=catalog))

    assert result.failed[0].error_kind is ErrorKind.COMPOSITION_FAILED
    assert any("--frames-dir" in record.getMessage() for record in caplog.records)
