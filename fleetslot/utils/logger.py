"""Process-wide logging for API worker threads and the reclamation scheduler."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Optional

from fleetslot.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

# third-party loggers that report every job execution at INFO
QUIET_LOGGERS = ("apscheduler",)

_configure_lock = threading.Lock()
_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install the shared stdout handler once, whichever thread gets here first."""
    global _configured
    with _configure_lock:
        if _configured:
            return

        resolved_level = (level or get_settings().log_level).upper()
        logging.basicConfig(level=resolved_level, format=LOG_FORMAT, stream=sys.stdout)
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
