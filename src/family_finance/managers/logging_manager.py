"""
Centralized logging manager for the application.

Every module obtains its logger through ``get_logger(prefix="[Component]")``. Handlers live on
the application logger and are attached once per process:

- a console ``StreamHandler`` on stdout (always),
- a per-worker ``FileHandler`` under ``settings.LOG_DIR``,
- a ``LokiLoggerHandler`` when ``settings.LOKI_ENABLED`` is true.

Prefixed loggers are children of the application logger, so their records reach the same
handlers with the prefix applied to the message.
"""

import logging
import os
import sys
import threading

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from family_finance.config import settings

APP_LOGGER_NAME: str = settings.APP_NAME
LOKI_TAGS: dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOG_FORMAT: str = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"

_setup_lock = threading.Lock()


class PrefixFilter(logging.Filter):
    """Prepend a component prefix such as ``[FamilyManager]`` to each record."""

    def __init__(self, prefix: str) -> None:
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

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return True


def get_worker_log_filename() -> str:
    return os.path.join(settings.LOG_DIR, f"worker_{os.getpid()}.log")


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter) -> None:
    log_filename = get_worker_log_filename()
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
        for h in logger.handlers
    ):
        return
    try:
        os.makedirs(os.path.dirname(log_filename), exist_ok=True)
        file_handler = logging.FileHandler(log_filename)
    except OSError as e:
        logger.warning("[LoggingManager] Could not open worker log file %s: %s", log_filename, e)
        return
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def _ensure_loki_handler(logger: logging.Logger) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    loki_handler = LokiLoggerHandler(
        url=settings.LOKI_URL,
        labels=LOKI_TAGS,
        auth=None,
        compressed=True,
    )
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", settings.LOKI_URL, LOKI_TAGS)


def _configure_app_logger(add_loki: bool) -> logging.Logger:
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    with _setup_lock:
        app_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        app_logger.propagate = False
        formatter = logging.Formatter(LOG_FORMAT)
        if _ensure_console_handler(app_logger, formatter):
            app_logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", APP_LOGGER_NAME)
        _ensure_file_handler(app_logger, formatter)
        if add_loki:
            _ensure_loki_handler(app_logger)
    return app_logger


def get_logger(name: str = APP_LOGGER_NAME, add_loki: bool = settings.LOKI_ENABLED, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Logger name; defaults to the application logger.
        add_loki: Attach the Loki handler to the application logger.
        prefix: Optional component prefix, e.g. ``"[BudgetManager]"``.
    """
    app_logger = _configure_app_logger(add_loki)
    if not prefix and name == APP_LOGGER_NAME:
        return app_logger

    suffix = prefix.strip("[] ").replace(" ", "_") if prefix else name
    logger = app_logger.getChild(suffix)
    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
