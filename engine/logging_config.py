"""Root logger setup shared by the API, the worker and operational commands."""
from __future__ import annotations

import logging
import sys

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger from LoggingSettings.

    Safe to call more than once; previously installed handlers are replaced.
    """
    log_settings = settings.logging
    root = logging.getLogger()
    root.setLevel((level or log_settings.level).upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_settings.file:
        file_handler = logging.FileHandler(log_settings.file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # SQL echo is controlled by DB_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
