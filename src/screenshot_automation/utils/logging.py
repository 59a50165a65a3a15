"""日志初始化工具。"""

from __future__ import annotations

import logging

# 第三方库在 DEBUG 级别下输出大量逐块解码日志
_NOISY_LOGGERS = ("PIL",)


def setup_logging(level: int = logging.INFO) -> None:
    """初始化项目日志配置；``--verbose`` 时传入 DEBUG。"""

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(processName)s] %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
