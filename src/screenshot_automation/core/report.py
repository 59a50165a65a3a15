"""报告生成工具。"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Optional

from screenshot_automation.core.models import BatchResult, ProcessingResult

HEADER = [
    "locale",
    "input_path",
    "output_path",
    "status",
    "error_kind",
    "device",
    "input_size",
    "output_size",
    "message",
]


def write_csv_report(outcomes: Iterable[ProcessingResult], report_path: Path) -> Path:
    """将处理结果写入 CSV 报告。"""

    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for record in outcomes:
            writer.writerow(
                [
                    record.locale,
                    str(record.input_path),
                    str(record.output_path) if record.output_path else "",
                    record.status.value,
                    record.error_kind.value if record.error_kind else "",
                    record.device_id or "",
                    _format_size(record.input_dimensions),
                    _format_size(record.output_dimensions),
                    record.message or "",
                ]
            )
    return report_path


def summary_lines(result: BatchResult) -> list[str]:
    """生成面向用户的汇总文本：计数一行，每个失败文件一行。"""

    lines = [
        f"处理完成（{result.mode.value}）：成功 {len(result.succeeded)} 张，"
        f"失败 {len(result.failed)} 张，跳过 {len(result.skipped)} 张。"
    ]
    for record in result.failed:
        kind = record.error_kind.value if record.error_kind else "unknown"
        lines.append(f"  失败 [{kind}] {record.locale}/{record.input_path.name}: {record.message or ''}".rstrip())
    for record in result.cancelled:
        lines.append(f"  取消 {record.locale}/{record.input_path.name}")
    return lines


def _format_size(value: Optional[tuple[int, int]]) -> str:
    if value is None:
        return ""
    return f"{value[0]}x{value[1]}"
