"""
日志配置 - 控制台 + 按天滚动的文件日志
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_MARK = "_steward_handler"


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "./logs",
    log_file_prefix: str = "steward",
    backup_count: int = 30,
) -> logging.Logger:
    """
    配置根日志器

    Args:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_dir: 日志目录，为None时只输出到控制台
        log_file_prefix: 日志文件前缀 (steward.log, steward.log.2026-02-01)
        backup_count: 保留的历史日志文件数量

    Returns:
        根日志器
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    # 重复调用时替换之前安装的handler
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    setattr(console, _HANDLER_MARK, True)
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            path / f"{log_file_prefix}.log",
            when="midnight",
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARK, True)
        root.addHandler(file_handler)

    # 第三方库降噪
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root
