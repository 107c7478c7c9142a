# utils/logging.py

"""Logging helpers for StoryLoom."""

from __future__ import annotations

import logging
import logging.handlers
import os

import structlog
from rich.logging import RichHandler

from config import settings

logger = structlog.get_logger(__name__)

__all__ = ["setup_logging"]

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _resolve_log_file(log_file: str) -> str:
    if os.path.isabs(log_file):
        return log_file
    return os.path.join(settings.BASE_OUTPUT_DIR, log_file)


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    rich_console: bool | None = None,
) -> None:
    """Configure structlog and standard logging.

    Arguments default to the values in ``config.settings``.
    """
    level = level or settings.LOG_LEVEL_STR
    log_file = log_file if log_file is not None else settings.LOG_FILE
    rich_console = (
        settings.ENABLE_RICH_PROGRESS if rich_console is None else rich_console
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    if log_file:
        file_path = _resolve_log_file(log_file)
        try:
            log_dir = os.path.dirname(file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                file_path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                mode="a",
                encoding="utf-8",
            )
        except OSError as e:
            logger.error("Error setting up file logger", file_path=file_path, error=str(e))
        else:
            file_handler.setFormatter(
                logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
            )
            root_logger.addHandler(file_handler)

    if rich_console:
        console_handler: logging.Handler = RichHandler(
            level=level,
            rich_tracebacks=True,
            show_path=False,
            markup=False,
            show_time=True,
            show_level=True,
        )
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
        )
    root_logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger().info(
        "StoryLoom logging setup complete.",
        log_level=logging.getLevelName(root_logger.level),
    )
