"""
Logging setup for the capsule service.

Call ``setup_logging()`` once at startup; modules use
``logging.getLogger(__name__)``.
"""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from timecapsule.core.config import settings

LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"
MAX_LOG_SIZE = 1_000_000
BACKUP_COUNT = 3

_configured = False


def setup_logging(level: Optional[str] = None, log_to_file: bool = True) -> None:
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_to_file:
        try:
            os.makedirs(settings.log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(settings.log_dir, "app.log"),
                maxBytes=MAX_LOG_SIZE,
                backupCount=BACKUP_COUNT,
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("File logging disabled: %s", exc)

    _configured = True
