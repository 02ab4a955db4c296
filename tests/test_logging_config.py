"""Tests for root logger setup."""

import logging
import sys

from engine.logging_config import LOG_FORMAT, setup_logging


def test_setup_logging_installs_one_stdout_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging("debug")
        setup_logging("warning")

        assert root.level == logging.WARNING
        [handler] = root.handlers
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stdout
        assert handler.formatter._fmt == LOG_FORMAT
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


def test_log_line_is_plain_text():
    record = logging.LogRecord("engine.queue", logging.WARNING, __file__, 1, "Job %s failed", (7,), None)

    line = logging.Formatter(LOG_FORMAT).format(record)

    assert line.endswith("WARNING [engine.queue] Job 7 failed")
