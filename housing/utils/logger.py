"""Process-wide logging setup shared by the API and the reconciler thread."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Optional

from housing.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Client libraries that log every request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")

_configure_lock = threading.Lock()
_handler_installed = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once and apply ``level`` on every call.

    Messages carry pipe-separated ``key=value`` context, for example
    ``Allocation created | registrant_id=4 | room_id=2``.
    """
    global _handler_installed
    resolved_level = (level or get_settings().log_level).upper()

    with _configure_lock:
        if not _handler_installed:
            logging.basicConfig(level=resolved_level, format=LOG_FORMAT, stream=sys.stdout)
            for name in _QUIET_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)
            _handler_installed = True
        elif level is not None:
            logging.getLogger().setLevel(resolved_level)


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
