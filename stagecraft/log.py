"""Logging setup for stagecraft."""

import logging
import sys
from contextlib import contextmanager

TRACE = 5

logger = logging.getLogger("stagecraft")


def addLoggingLevel(name: str, num: int):
    """Register a new level on the logging module and logger class."""
    method = name.lower()
    if hasattr(logging, name):
        return

    def log_for_level(self, message, *args, **kwargs):
        if self.isEnabledFor(num):
            self._log(num, message, args, **kwargs)

    logging.addLevelName(num, name)
    setattr(logging, name, num)
    setattr(logging.getLoggerClass(), method, log_for_level)


class ColorFormatter(logging.Formatter):
    """Prefix warnings and errors, and colorize them on a tty."""

    colors = {
        "WARNING": "\x1b[33m",
        "ERROR": "\x1b[31m",
        "CRITICAL": "\x1b[31;1m",
    }

    def __init__(self, stream=None):
        super().__init__()
        self.color = bool(stream and hasattr(stream, "isatty") and stream.isatty())

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            prefix = f"{record.levelname}: "
            if self.color:
                prefix = f"{self.colors.get(record.levelname, '')}{prefix}\x1b[0m"
            msg = prefix + msg
        elif record.levelno <= logging.DEBUG:
            msg = f"{record.levelname}: {record.name}: {msg}"
        if record.exc_info and logger.isEnabledFor(logging.DEBUG):
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup(level: int = logging.INFO):
    addLoggingLevel("TRACE", TRACE)

    if any(getattr(h, "_stagecraft", False) for h in logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter(sys.stderr))
    handler._stagecraft = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


@contextmanager
def set_loggers_level(level: int = logging.INFO):
    """Temporarily set the level of the stagecraft logger."""
    old = logger.level
    logger.setLevel(level)
    try:
        yield
    finally:
        logger.setLevel(old)


@contextmanager
def log_to_file(path):
    """Mirror stagecraft log records at the active level into a file."""
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        handler.close()
