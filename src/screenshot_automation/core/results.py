"""线程安全、只追加的结果登记表。"""

from __future__ import annotations

import threading
from typing import Iterable

from screenshot_automation.core.config import PromotionMode
from screenshot_automation.core.models import BatchResult, ProcessingResult, ProcessingStatus


class ResultLedger:
    """按 (locale, filename) 登记处理结果，同一键只允许写入一次。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], ProcessingResult] = {}

    def record(self, result: ProcessingResult) -> None:
        with self._lock:
            if result.key in self._records:
                raise ValueError(f"重复登记的处理结果: {result.key[0]}/{result.key[1]}")
            self._records[result.key] = result

    def extend(self, results: Iterable[ProcessingResult]) -> None:
        for result in results:
            self.record(result)

    def __contains__(self, key: tuple[str, str]) -> bool:
        with self._lock:
            return key in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def snapshot(self) -> list[ProcessingResult]:
        """按 locale、文件名排序返回当前全部记录的副本。"""

        with self._lock:
            items = list(self._records.values())
        items.sort(key=lambda item: (item.locale, item.input_path.name.lower()))
        return items

    def to_batch_result(self, mode: PromotionMode, locales: list[str], *, dry_run: bool = False) -> BatchResult:
        succeeded: list[ProcessingResult] = []
        skipped: list[ProcessingResult] = []
        failed: list[ProcessingResult] = []
        for item in self.snapshot():
            if item.status is ProcessingStatus.SUCCESS:
                succeeded.append(item)
            elif item.status is ProcessingStatus.SKIPPED:
                skipped.append(item)
            else:
                failed.append(item)
        return BatchResult(
            succeeded=succeeded,
            skipped=skipped,
            failed=failed,
            mode=mode,
            locales=list(locales),
            dry_run=dry_run,
        )
