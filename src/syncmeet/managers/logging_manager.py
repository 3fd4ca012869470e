"""
Centralized logging manager for the application.

Every component obtains its logger through get_logger(). Records go to the
console (stdout), optionally to a log file (LOG_FILE) and, when LOKI_ENABLED
is set, to Loki through LokiLoggerHandler.

Loki Downtime Handling:
----------------------
- Records sent to the Loki handler while Loki is unreachable are subject to
  the handler's own retry logic and may be dropped.
- Console output is always attached first, so nothing is lost locally.

Usage:
- logger = get_logger(prefix="[Signaling-Hub]")
- Prefixed loggers are children of the application logger, so they share its
  handlers while each keeps its own prefix.
"""

import logging
import os
import sys
from typing import Optional

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from syncmeet.config import settings

APP_LOGGER_NAME: str = "SyncMeet"
LOKI_URL: str = os.getenv("LOKI_URL", settings.LOKI_URL)
LOKI_TAGS: dict[str, str] = {
    "app": os.getenv("APP_NAME", settings.APP_NAME),
    "env": os.getenv("ENV", settings.ENV),
}
LOG_LEVEL: str = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
LOG_FILE: Optional[str] = os.getenv("LOG_FILE", settings.LOG_FILE)
LOKI_COMPRESS: bool = settings.LOKI_COMPRESS
LOG_FORMAT: str = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"


class PrefixFilter(logging.Filter):
    """Prepend a component tag such as ``[Relay-Router]`` to every message."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Args:
        logger: The logger instance to check and modify
        formatter: The formatter to apply to the StreamHandler

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter, log_file: str) -> bool:
    path = os.path.abspath(log_file)
    if any(isinstance(h, logging.FileHandler) and h.baseFilename == path for h in logger.handlers):
        return False
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        return
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", LOKI_URL, LOKI_TAGS)


def _configure_app_logger(add_loki: bool) -> logging.Logger:
    logger = logging.getLogger(APP_LOGGER_NAME)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if _ensure_console_handler(logger, formatter):
        logger.info("[LoggingManager] Console StreamHandler attached to logger '%s'", APP_LOGGER_NAME)
    if LOG_FILE and _ensure_file_handler(logger, formatter, LOG_FILE):
        logger.info("[LoggingManager] FileHandler attached (%s)", LOG_FILE)
    if add_loki:
        _ensure_loki_handler(logger)
    return logger


def _child_name(prefix: str) -> str:
    return prefix.strip().strip("[]").strip() or "root"


def get_logger(name: str = APP_LOGGER_NAME, add_loki: Optional[bool] = None, prefix: str = "") -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Logger name; the application logger unless a caller needs its own tree
        add_loki: Attach the Loki handler; defaults to the LOKI_ENABLED setting
        prefix: Tag prepended to every message, e.g. "[Admission]"

    Returns:
        logging.Logger: The application logger, or a prefixed child of it
    """
    if add_loki is None:
        add_loki = settings.LOKI_ENABLED
    app_logger = _configure_app_logger(add_loki)

    if name != APP_LOGGER_NAME:
        logger = logging.getLogger(name)
        if not logger.handlers and not name.startswith(f"{APP_LOGGER_NAME}."):
            for handler in app_logger.handlers:
                logger.addHandler(handler)
            logger.setLevel(app_logger.level)
            logger.propagate = False
    elif prefix:
        logger = app_logger.getChild(_child_name(prefix))
    else:
        return app_logger

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
