"""命令行入口。

退出码：0 全部完成（或没有可处理的截图）；1 参数或配置错误；
2 栅格处理能力不可用；3 批次未满足发布策略。
"""

from __future__ import annotations

import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from screenshot_automation.core.config import (
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_MIN_FILE_BYTES,
    CornerConfig,
    FrameConfig,
    GradientConfig,
    JobConfig,
    OutputConfig,
    ShadowConfig,
    ValidationConfig,
)
from screenshot_automation.core.exceptions import (
    CapabilityUnavailable,
    CatalogError,
    InvalidConfigurationError,
    ProcessingAborted,
    StorageError,
)
from screenshot_automation.core.progress import ProgressUpdate
from screenshot_automation.core.registry import DeviceRegistry
from screenshot_automation.core.report import summary_lines
from screenshot_automation.processing.pipeline import process_batch
from screenshot_automation.utils.logging import setup_logging

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CAPABILITY = 2
EXIT_BATCH_FAILED = 3

DEFAULT_OUTPUT = Path("processed_screenshots")

app = typer.Typer(help="商店截图批量合成工具：设备边框、渐变画布与尺寸规范化。")

LOGGER = logging.getLogger(__name__)


def _build_progress_callback(progress: Progress, verbose: bool):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("合成截图", total=update.total)
        progress.update(task_id, completed=update.completed)
        if verbose and update.message:
            progress.log(update.message)

    return callback


def _check_input_dir(path: Path) -> Path:
    resolved = path.expanduser().resolve()
    if not resolved.is_dir():
        typer.echo(f"输入目录不存在或不是文件夹: {resolved}", err=True)
        raise typer.Exit(EXIT_USAGE)
    if not os.access(resolved, os.R_OK | os.X_OK):
        typer.echo(f"输入目录不可访问: {resolved}", err=True)
        raise typer.Exit(EXIT_USAGE)
    return resolved


@app.command("run")
def run_cli(  # noqa: PLR0913
    input_dir: Path = typer.Option(..., "--input", "-i", help="输入根目录，每个语言一个子目录"),
    output: Path = typer.Option(DEFAULT_OUTPUT, "--output", "-o", help="正式输出目录"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="只扫描与识别设备，不写入任何文件"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出逐文件的进度日志"),
    mode: str = typer.Option("strict", "--mode", help="发布策略：strict 或 best-effort"),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="为所有截图强制指定设备 id 或名称"),
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="设备目录 JSON，默认使用内置目录"),
    frames_dir: Optional[Path] = typer.Option(None, "--frames-dir", help="边框图片目录，覆盖目录中的设置"),
    frame_variant: Optional[str] = typer.Option(None, "--frame-variant", help="边框配色"),
    background_color: str = typer.Option("#0E1117", "--background-color", help="边框合成的背景色 (HEX)"),
    store_padding: float = typer.Option(0.0, "--store-padding", help="商店画布四周留白比例"),
    center_color: str = typer.Option("#2A5F6D", "--gradient-center", help="渐变中心色 (HEX)"),
    edge_color: str = typer.Option("#0D1F26", "--gradient-edge", help="渐变边缘色 (HEX)"),
    scale: Optional[float] = typer.Option(None, "--scale", help="截图占画布的最大比例，默认取设备目录"),
    shadow_opacity: float = typer.Option(0.5, "--shadow-opacity", help="投影不透明度 0.0~1.0"),
    shadow_blur: int = typer.Option(30, "--shadow-blur", help="投影模糊半径"),
    shadow_offset: int = typer.Option(15, "--shadow-offset", help="投影纵向偏移"),
    no_corners: bool = typer.Option(False, "--no-corners", help="不为渐变画布截图添加圆角"),
    max_size: int = typer.Option(DEFAULT_MAX_FILE_BYTES, "--max-size", help="产出文件大小上限（字节）"),
    min_size: int = typer.Option(DEFAULT_MIN_FILE_BYTES, "--min-size", help="产出文件大小下限（字节）"),
    max_workers: int = typer.Option(4, "--workers", "-w", help="并发进程数量"),
    timeout: float = typer.Option(120.0, "--timeout", help="单个文件的合成超时（秒）"),
    report: Optional[Path] = typer.Option(None, "--report", help="CSV 报告路径"),
) -> None:
    """执行批量合成并按发布策略更新输出目录。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    LOGGER.debug("CLI 参数解析完成")

    job = JobConfig(
        input_dir=_check_input_dir(input_dir),
        output=OutputConfig(output_dir=output.expanduser().resolve()),
        gradient=GradientConfig(center_color=center_color, edge_color=edge_color, scale=scale),
        shadow=ShadowConfig(opacity=shadow_opacity, blur_radius=shadow_blur, offset_y=shadow_offset),
        corners=CornerConfig(enabled=not no_corners),
        frame=FrameConfig(
            background_color=background_color,
            variant=frame_variant,
            store_padding=store_padding,
            asset_dir=frames_dir.expanduser().resolve() if frames_dir else None,
        ),
        validation=ValidationConfig(max_file_bytes=max_size, min_file_bytes=min_size),
        catalog_path=catalog.expanduser().resolve() if catalog else None,
        device=device,
        mode=mode,
        max_workers=max_workers,
        task_timeout=timeout,
        dry_run=dry_run,
        report_path=report.expanduser().resolve() if report else None,
    )

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
    )

    try:
        with progress:
            result = process_batch(job, progress_callback=_build_progress_callback(progress, verbose))
    except InvalidConfigurationError as exc:
        typer.echo(f"配置错误：{exc}", err=True)
        raise typer.Exit(EXIT_USAGE) from exc
    except CapabilityUnavailable as exc:
        typer.echo(f"栅格处理能力不可用：{exc}", err=True)
        raise typer.Exit(EXIT_CAPABILITY) from exc
    except (StorageError, ProcessingAborted) as exc:
        typer.echo(f"处理中止：{exc}", err=True)
        raise typer.Exit(EXIT_BATCH_FAILED) from exc

    lines = summary_lines(result)
    typer.echo(lines[0])
    for line in lines[1:]:
        typer.echo(line, err=True)

    if result.dry_run:
        typer.echo("预演模式：未写入任何文件。")
    elif result.promoted:
        typer.echo(f"输出目录：{job.output.output_dir}")
    if job.report_path and not result.dry_run:
        typer.echo(f"报告文件：{job.report_path}")

    if not result.ok:
        raise typer.Exit(EXIT_BATCH_FAILED)


@app.command("devices")
def devices_cli(
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="设备目录 JSON，默认使用内置目录"),
) -> None:
    """列出设备目录中的全部设备。"""

    try:
        registry = DeviceRegistry.load(catalog.expanduser().resolve() if catalog else None)
    except CatalogError as exc:
        typer.echo(f"设备目录无效：{exc}", err=True)
        raise typer.Exit(EXIT_USAGE) from exc

    table = Table(title="设备目录")
    table.add_column("id")
    table.add_column("名称")
    table.add_column("类型")
    table.add_column("原始尺寸")
    table.add_column("画布尺寸")
    for item in registry:
        raw = f"{item.raw_width}x{item.raw_height}" if item.raw_size else "-"
        table.add_row(item.id, item.name, item.kind.value, raw, f"{item.canvas_width}x{item.canvas_height}")
    Console().print(table)


def _click_exceptions() -> tuple[type[Exception], type[Exception]]:
    """返回 Typer 实际使用的 click 中的 (ClickException, Abort)。

    新版 Typer 自带一份 click，不能直接依赖顶层 click 包的异常类。
    """

    command = typer.main.get_command(app)
    for klass in type(command).__mro__:
        package = klass.__module__.rpartition(".")[0]
        # typer.core 中的 TyperGroup 等子类与 builtins 跳过，取其 click 基类所在的包
        if package in ("", "typer"):
            continue
        if importlib.util.find_spec(f"{package}.exceptions") is not None:
            exceptions = importlib.import_module(f"{package}.exceptions")
            return exceptions.ClickException, exceptions.Abort
    raise RuntimeError(f"无法定位 {type(command).__name__} 所属的 click 模块")


def main() -> None:
    """控制台脚本入口：参数解析错误统一使用退出码 1。"""

    click_exception, abort = _click_exceptions()
    try:
        exit_code = app(standalone_mode=False)
    except abort:
        typer.echo("已取消。", err=True)
        sys.exit(EXIT_BATCH_FAILED)
    except click_exception as exc:
        exc.show()
        sys.exit(EXIT_USAGE)
    sys.exit(exit_code or EXIT_OK)


if __name__ == "__main__":
    main()
