"""Logging configuration shared by the command-line tools and host applications."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from typing import Optional

from cellrun.core.config import settings

_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Install stderr (and optional rotating file) handlers on the root logger.

    Falls back to ``settings.LOG_LEVEL`` / ``settings.LOG_DIR`` when the
    arguments are omitted. Safe to call more than once: existing handlers
    are replaced.
    """
    level = (level or settings.LOG_LEVEL).upper()
    log_dir = log_dir or settings.LOG_DIR

    fmt = logging.Formatter(_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(fmt)
    handlers: list[logging.Handler] = [stream_handler]

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "cellrun.log"), maxBytes=10 * 1024 * 1024, backupCount=3
        )
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # Quieten noisy third-party loggers
    for _noisy in ("asyncio",):
        logging.getLogger(_noisy).setLevel(logging.WARNING)
