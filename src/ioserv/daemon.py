# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/daemon.py

"""Detach the process from its controlling terminal."""

import logging
import os
import sys

from ioserv.errors import ForkError

logger = logging.getLogger(__name__)


def background() -> None:
    """
    Fork into the background.

    The parent prints the child's pid and exits 0; the child starts a new
    session with stdin/stdout/stderr pointed at /dev/null. Platforms without
    fork() are left attached with a warning.

    Raises:
        ForkError: fork() failed (raised in the parent, nothing detached)
    """
    if not hasattr(os, "fork"):
        logger.warning("fork() is not available on this platform, staying in the foreground")
        return

    try:
        pid = os.fork()
    except OSError as e:
        raise ForkError(f"Failed to fork to background: {e}")

    if pid != 0:
        print(f"Daemon pid: {pid}.")
        sys.stdout.flush()
        os._exit(0)

    os.setsid()

    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)
