"""Logging configuration and utilities."""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

import structlog
import colorlog
from structlog.typing import Processor

if TYPE_CHECKING:
    from ..config.settings import LoggingSettings

# Handlers installed by setup_logging, removed again on reconfiguration
_HANDLER_MARK = "_stocksync_handler"

QUIET_LOGGERS = ("apscheduler", "aiohttp.access", "asyncio")

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(settings: Optional["LoggingSettings"] = None) -> None:
    """Configure structlog on top of stdlib logging.

    Safe to call more than once; handlers from an earlier call are replaced.

    Args:
        settings: Logging section of the application settings; defaults are
            read from the ``LOG_`` environment when omitted
    """
    if settings is None:
        from ..config.settings import LoggingSettings
        settings = LoggingSettings()

    level = getattr(logging, settings.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    # Scheduler ticks and access lines drown out sync events at INFO
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(settings.format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [_console_handler(settings.format)]
    if settings.file_path:
        handlers.append(_file_handler(settings.file_path))
    for handler in handlers:
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)


def _processors(format_type: str) -> List[Processor]:
    processors: List[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def _console_handler(format_type: str) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    if format_type == "json":
        # Already a complete JSON document per event
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler.setFormatter(colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            reset=True,
            log_colors=LOG_COLORS
        ))
    return handler


def _file_handler(file_path: str) -> logging.Handler:
    """Rotating file of rendered events, 10 MB x 5."""
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_async_execution_time(func):
    """Log how long a sync run took, and whether it raised."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__qualname__.split(".")[0])
        start_time = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Sync operation failed",
                operation=func.__name__,
                duration_ms=round((time.monotonic() - start_time) * 1000),
                error=str(e)
            )
            raise
        logger.info(
            "Sync operation finished",
            operation=func.__name__,
            duration_ms=round((time.monotonic() - start_time) * 1000)
        )
        return result

    return wrapper
