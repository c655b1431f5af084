# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/log.py

"""
Log sink for ioserv nodes.

The log sink is a file handler installed on the package logger when a node
is created. The log mask selects which classes of events reach it.
"""

import logging
from pathlib import Path

# Log mask bits (-m)
LOG_NOTICE = 1 << 0
LOG_INFO = 1 << 1
LOG_TRANS = 1 << 2
LOG_ERROR = 1 << 3
LOG_ALL = 0xFFFFFFFF

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"

PACKAGE_LOGGER = "ioserv"


def mask_bit(levelno: int) -> int:
    """Map a logging level to its log mask bit."""
    if levelno >= logging.ERROR:
        return LOG_ERROR
    if levelno >= logging.WARNING:
        return LOG_NOTICE
    if levelno >= logging.INFO:
        return LOG_INFO
    return LOG_TRANS


class LogMaskFilter(logging.Filter):
    """Pass only records whose level bit is set in the mask."""

    def __init__(self, mask: int = LOG_ALL):
        super().__init__()
        self.mask = mask

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(self.mask & mask_bit(record.levelno))


def open_log_sink(path: Path, mask: int = LOG_ALL) -> logging.Handler:
    """
    Open a log file for appending.

    Raises:
        OSError: if the file can't be opened
    """
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(LogMaskFilter(mask))
    return handler


def install_log_sink(handler: logging.Handler) -> None:
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    # uvicorn logs through its own loggers; keep only its warnings
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn").addHandler(handler)


def remove_log_sink(handler: logging.Handler) -> None:
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    logging.getLogger("uvicorn").removeHandler(handler)
    handler.close()
