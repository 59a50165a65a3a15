"""进度更新与按语言取消的数据模型。"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True)
class ProgressUpdate:
    """批处理过程中的进度信息。"""

    total: int
    completed: int
    message: Optional[str] = None
    status: str = "running"


class CancellationToken:
    """记录被取消的语言区域；取消某个语言不影响其他语言的任务。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locales: set[str] = set()

    def cancel(self, locale: str) -> None:
        with self._lock:
            self._locales.add(locale)

    def is_cancelled(self, locale: str) -> bool:
        with self._lock:
            return locale in self._locales

    @property
    def cancelled_locales(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._locales)
