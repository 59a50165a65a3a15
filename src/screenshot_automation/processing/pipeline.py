"""处理流水线：发现语言目录、识别设备、并发合成、整体发布。"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from typing import Callable, Optional

from screenshot_automation.core.config import JobConfig, PromotionMode, check_job_config
from screenshot_automation.core.exceptions import (
    CatalogError,
    InputInvalidError,
    InvalidConfigurationError,
    ProcessingAborted,
)
from screenshot_automation.core.models import (
    BatchResult,
    ErrorKind,
    LocaleBatch,
    ProcessingResult,
    ProcessingStatus,
    SourceImage,
)
from screenshot_automation.core.progress import CancellationToken, ProgressUpdate
from screenshot_automation.core.registry import DeviceRegistry, ResolvedDevice
from screenshot_automation.core.report import write_csv_report
from screenshot_automation.core.results import ResultLedger
from screenshot_automation.core.scanner import discover_locales
from screenshot_automation.core.staging import StagingArea
from screenshot_automation.processing import raster
from screenshot_automation.processing.compositing import CompositionSettings
from screenshot_automation.processing.worker import ProcessingTask, probe_dimensions, run_task

LOGGER = logging.getLogger(__name__)


ProgressCallback = Optional[Callable[[ProgressUpdate], None]]


class _ProgressCounter:
    def __init__(self, callback: ProgressCallback, total: int) -> None:
        self.callback = callback
        self.total = total
        self.completed = 0

    def advance(self, message: Optional[str] = None) -> None:
        self.completed += 1
        self.emit(message)

    def emit(self, message: Optional[str] = None, status: str = "running") -> None:
        if not self.callback:
            return
        self.callback(ProgressUpdate(total=self.total, completed=self.completed, message=message, status=status))


def process_batch(
    config: JobConfig,
    progress_callback: ProgressCallback = None,
    cancel_token: Optional[CancellationToken] = None,
) -> BatchResult:
    """批量处理入口。

    所有产出先写入本次运行的暂存目录，全部结果登记完成后再按发布策略
    决定是否整体替换正式输出目录；未发布时正式目录保持原样。
    """

    check_job_config(config)

    LOGGER.info("开始扫描输入目录 %s", config.input_dir)
    batches = discover_locales(config)

    raster.ensure_capability()
    registry = _load_registry(config)
    forced = _forced_device(config, registry)

    token = cancel_token or CancellationToken()
    ledger = ResultLedger()
    locales = [batch.locale for batch in batches]
    total = sum(len(batch) for batch in batches)
    progress = _ProgressCounter(progress_callback, total)
    LOGGER.info("发现 %d 个语言目录，共 %d 张截图", len(batches), total)

    if total == 0:
        LOGGER.warning("没有需要处理的截图，正式输出目录保持不变")
        progress.emit("没有需要处理的截图", status="finished")
        result = ledger.to_batch_result(config.mode, locales, dry_run=config.dry_run)
        _write_report(config, result)
        return result

    pending = _resolve_sources(batches, registry, forced, config, ledger, token, progress)
    _warn_unusable_setup(ledger, pending, config, total)

    if config.dry_run or not pending:
        result = ledger.to_batch_result(config.mode, locales, dry_run=config.dry_run)
        if config.dry_run:
            LOGGER.info("预演模式：未写入任何文件")
        else:
            _write_report(config, result)
        progress.emit("处理完成", status="finished")
        return result

    settings = CompositionSettings(
        gradient=config.gradient,
        shadow=config.shadow,
        corners=config.corners,
        frame=config.frame,
    )
    known_canvases = registry.canvas_sizes()

    with StagingArea(config.output) as staging:
        tasks: list[ProcessingTask] = []
        for locale in sorted({source.locale for source, _ in pending}):
            staging.locale_dir(locale)
        for source, device in pending:
            tasks.append(
                ProcessingTask(
                    source=source,
                    device=device,
                    staged_path=staging.staged_path(source),
                    final_path=staging.final_path(source),
                    settings=settings,
                    validation=config.validation,
                    timeout=config.task_timeout,
                    known_canvases=known_canvases,
                )
            )

        progress.emit("开始执行处理任务")
        try:
            if config.max_workers <= 1:
                _run_inline(tasks, ledger, token, progress)
            else:
                _run_pool(tasks, config.max_workers, ledger, token, progress)
        except KeyboardInterrupt as exc:
            raise ProcessingAborted("处理被用户中断，正式输出目录保持不变") from exc

        result = ledger.to_batch_result(config.mode, locales)
        if should_promote(result):
            staging.promote(result.succeeded)
            result.promoted = True
        else:
            LOGGER.warning("本次运行未发布（%s 模式），正式输出目录保持不变", result.mode.value)

    _write_report(config, result)
    progress.emit("处理完成", status="finished")
    return result


def should_promote(result: BatchResult) -> bool:
    """至少有一个成功结果才发布；严格模式还要求没有失败与被取消的文件。"""

    if not result.succeeded:
        return False
    if result.mode is PromotionMode.STRICT:
        return not result.failed and not result.cancelled
    return True


def resolve_device(
    source: SourceImage,
    registry: DeviceRegistry,
    forced: Optional[ResolvedDevice] = None,
) -> Optional[ResolvedDevice]:
    """按 强制指定 → 文件名约定 → 原始尺寸 的顺序识别设备。"""

    if forced is not None:
        return forced
    device = registry.resolve_by_filename(source.filename)
    if device is not None:
        return device
    width, height = probe_dimensions(source.source_path)
    return registry.resolve_by_dimensions(width, height)


def _load_registry(config: JobConfig) -> DeviceRegistry:
    try:
        return DeviceRegistry.load(config.catalog_path)
    except CatalogError as exc:
        raise InvalidConfigurationError(f"设备目录无效: {exc}") from exc


def _forced_device(config: JobConfig, registry: DeviceRegistry) -> Optional[ResolvedDevice]:
    if not config.device:
        return None
    device = registry.resolve_by_name(config.device)
    if device is None:
        names = ", ".join(item.id for item in registry)
        raise InvalidConfigurationError(f"未知的设备: {config.device}（可选: {names}）")
    return device


def _resolve_sources(
    batches: list[LocaleBatch],
    registry: DeviceRegistry,
    forced: Optional[ResolvedDevice],
    config: JobConfig,
    ledger: ResultLedger,
    token: CancellationToken,
    progress: _ProgressCounter,
) -> list[tuple[SourceImage, ResolvedDevice]]:
    pending: list[tuple[SourceImage, ResolvedDevice]] = []
    for batch in batches:
        for source in batch.files:
            if token.is_cancelled(batch.locale):
                ledger.record(_cancelled_result(source))
                progress.advance(f"取消 {source.locale}/{source.filename}")
                continue

            try:
                device = resolve_device(source, registry, forced)
            except InputInvalidError as exc:
                LOGGER.error("处理失败 [%s] %s/%s: %s", ErrorKind.INPUT_INVALID.value, source.locale, source.filename, exc)
                ledger.record(
                    ProcessingResult(
                        locale=source.locale,
                        input_path=source.source_path,
                        status=ProcessingStatus.FAILED,
                        error_kind=ErrorKind.INPUT_INVALID,
                        message=str(exc),
                    )
                )
                progress.advance(f"失败 {source.locale}/{source.filename}")
                continue

            if device is None:
                LOGGER.warning("无法识别设备，跳过: %s/%s", source.locale, source.filename)
                ledger.record(
                    ProcessingResult(
                        locale=source.locale,
                        input_path=source.source_path,
                        status=ProcessingStatus.SKIPPED,
                        error_kind=ErrorKind.DEVICE_UNRESOLVED,
                        message="没有匹配的设备规格",
                    )
                )
                progress.advance(f"跳过 {source.locale}/{source.filename}")
                continue

            if config.dry_run:
                LOGGER.info("预演: %s/%s -> %s", source.locale, source.filename, device.id)
                ledger.record(
                    ProcessingResult(
                        locale=source.locale,
                        input_path=source.source_path,
                        status=ProcessingStatus.SKIPPED,
                        output_path=config.output.output_dir / source.locale / source.filename,
                        error_kind=ErrorKind.DRY_RUN,
                        device_id=device.id,
                        output_dimensions=device.canvas_size,
                    )
                )
                progress.advance(f"预演 {source.locale}/{source.filename}")
                continue

            pending.append((source, device))
    return pending


def _warn_unusable_setup(
    ledger: ResultLedger,
    pending: list[tuple[SourceImage, ResolvedDevice]],
    config: JobConfig,
    total: int,
) -> None:
    """全部截图都无法识别设备、或边框资源缺失时，在处理前给出一次性提示。"""

    unresolved = sum(1 for item in ledger.snapshot() if item.error_kind is ErrorKind.DEVICE_UNRESOLVED)
    if unresolved and unresolved == total:
        LOGGER.warning(
            "全部 %d 张截图都无法识别设备：文件名需以设备名开头（如 \"Mac-01.png\"），或使用 --device 指定设备",
            total,
        )

    checked: set[str] = set()
    for _, device in pending:
        if not device.has_frame or device.id in checked:
            continue
        checked.add(device.id)
        try:
            asset = device.frame_asset(config.frame.variant, config.frame.asset_dir)
        except KeyError as exc:
            LOGGER.warning("%s", exc.args[0])
            continue
        if not asset.is_file():
            LOGGER.warning("设备 %s 的边框资源不存在: %s（可用 --frames-dir 指定边框目录）", device.id, asset)


def _run_inline(
    tasks: list[ProcessingTask],
    ledger: ResultLedger,
    token: CancellationToken,
    progress: _ProgressCounter,
) -> None:
    for task in tasks:
        source = task.source
        if token.is_cancelled(source.locale):
            ledger.record(_cancelled_result(source))
            progress.advance(f"取消 {source.locale}/{source.filename}")
            continue
        ledger.record(run_task(task))
        progress.advance(f"完成 {source.locale}/{source.filename}")


def _run_pool(
    tasks: list[ProcessingTask],
    max_workers: int,
    ledger: ResultLedger,
    token: CancellationToken,
    progress: _ProgressCounter,
) -> None:
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        future_map = {executor.submit(run_task, task): task for task in tasks}
        _cancel_pending(future_map, ledger, token, progress)
        for future in as_completed(future_map):
            if future.cancelled():
                continue
            task = future_map[future]
            try:
                outcome = future.result()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("任务执行异常：%s", exc)
                outcome = ProcessingResult(
                    locale=task.source.locale,
                    input_path=task.source.source_path,
                    status=ProcessingStatus.FAILED,
                    error_kind=ErrorKind.COMPOSITION_FAILED,
                    message=str(exc),
                    device_id=task.device.id,
                )
            ledger.record(outcome)
            progress.advance(f"完成 {task.source.locale}/{task.source.filename}")
            _cancel_pending(future_map, ledger, token, progress)


def _cancel_pending(
    future_map: dict[Future, ProcessingTask],
    ledger: ResultLedger,
    token: CancellationToken,
    progress: _ProgressCounter,
) -> None:
    """取消已被取消语言中尚未开始的任务，正在执行的任务照常完成。"""

    cancelled = token.cancelled_locales
    if not cancelled:
        return
    for future, task in future_map.items():
        source = task.source
        if source.locale in cancelled and not future.done() and future.cancel():
            ledger.record(_cancelled_result(source))
            progress.advance(f"取消 {source.locale}/{source.filename}")


def _cancelled_result(source: SourceImage) -> ProcessingResult:
    return ProcessingResult(
        locale=source.locale,
        input_path=source.source_path,
        status=ProcessingStatus.SKIPPED,
        error_kind=ErrorKind.CANCELLED,
        message="所属语言已取消",
    )


def _write_report(config: JobConfig, result: BatchResult) -> None:
    if config.report_path is None:
        return
    try:
        write_csv_report(result.all_outcomes(), config.report_path)
    except OSError as exc:
        LOGGER.error("写入报告失败：%s", exc)
