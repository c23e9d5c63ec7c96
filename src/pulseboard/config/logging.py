"""loguru setup shared by the server, the publisher and the metrics flusher.

One stderr sink. Lines carry the thread name because request handlers, the
tick loop and the flusher all run on their own threads. Per-request access
lines from ``http.server`` are dropped unless ``PULSEBOARD_LOG_ACCESS`` is set.
"""

from __future__ import annotations

import logging
import os
import sys

from loguru import logger

ACCESS_PREFIX = "http access:"

_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | "
    "<cyan>{thread.name}</cyan> | <level>{message}</level>\n"
)


def _env_flag(name: str, default: bool) -> bool:
    """Read a yes/no environment variable."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _log_filter(record: dict) -> bool:
    """Drop HTTP access lines unless access logging is switched on."""
    message = str(record.get("message") or "")
    if message.startswith(ACCESS_PREFIX):
        return _env_flag("PULSEBOARD_LOG_ACCESS", default=False)
    return True


class _InterceptHandler(logging.Handler):
    """Send stdlib ``logging`` records through the loguru sink."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str | None = None) -> None:
    """Replace every loguru sink with the pulseboard stderr sink.

    ``PULSEBOARD_LOG_LEVEL`` picks the level when none is passed and
    ``PULSEBOARD_LOG_COLOR`` forces colour on or off.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or os.getenv("PULSEBOARD_LOG_LEVEL", "INFO"),
        format=_FORMAT,
        filter=_log_filter,
        colorize=_env_flag("PULSEBOARD_LOG_COLOR", default=sys.stderr.isatty()),
        backtrace=False,
        diagnose=False,
    )
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)


__all__ = ["logger", "configure_logging"]
