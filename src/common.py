"""Common utilities: logging setup."""

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
TRACE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(pathname)s:%(lineno)d %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "err": logging.ERROR,
    "error": logging.ERROR,
}


def init_logging(destination: str = "stdout", level: str = "info") -> logging.Handler:
    """Install a single root handler for the given destination and level.

    Args:
        destination: stdout | stderr | null | /path/to/logfile
        level: trace | debug | info | warning | error (default: info)

    Returns:
        The installed handler (pass to close_logging)

    Raises:
        OSError: If the log file cannot be opened
    """
    level = (level or "info").lower()
    keyword = (destination or "stdout").lower()

    if keyword == "stdout":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
    elif keyword == "stderr":
        handler = logging.StreamHandler(sys.stderr)
    elif keyword == "null":
        handler = logging.NullHandler()
    else:
        handler = logging.FileHandler(destination, mode="a", encoding="utf-8")

    fmt = TRACE_LOG_FORMAT if level == "trace" else LOG_FORMAT
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    for old in root_logger.handlers[:]:
        root_logger.removeHandler(old)
    root_logger.addHandler(handler)
    root_logger.setLevel(_LEVELS.get(level, logging.INFO))
    return handler


def close_logging(handler: logging.Handler):
    """Detach and close a handler installed by init_logging."""
    logging.getLogger().removeHandler(handler)
    handler.close()
