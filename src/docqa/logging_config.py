"""Loguru as the single logging backend.

``setup_logging()`` runs once, before the app is created.  It replaces the
default sink, optionally adds a rotating file sink, and routes stdlib
``logging`` records from third-party packages through loguru with a
per-package floor so chatty HTTP clients stay quiet at INFO.

Log lines never carry full user text: use ``preview`` for messages and
``short_id`` for session and conversation ids.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# stdlib logger -> minimum level forwarded to loguru
THIRD_PARTY_LEVELS: dict[str, str] = {
    "uvicorn": "INFO",
    "uvicorn.error": "INFO",
    "uvicorn.access": "WARNING",
    "fastapi": "INFO",
    "openai": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "pydantic_ai": "INFO",
    "sentence_transformers": "WARNING",
}


class InterceptHandler(logging.Handler):
    """Redirect stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(*, level: str = "INFO", json: bool = False, log_file: Path | None = None) -> None:
    """Configure loguru sinks and stdlib interception.

    Args:
        level: Minimum level for the orchestrator's own records.
        json: Emit serialized JSON on stderr instead of the coloured format.
        log_file: Also write to this file, rotated at 20 MB and kept 14 days.
    """
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            serialize=json,
            rotation="20 MB",
            retention="14 days",
            enqueue=True,
        )

    intercept = InterceptHandler()
    for name, floor in THIRD_PARTY_LEVELS.items():
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [intercept]
        stdlib_logger.propagate = False
        stdlib_logger.setLevel(floor)

    logging.root.handlers = [intercept]
    logging.root.setLevel(level)


def short_id(value: str | None) -> str:
    """First 8 characters of an identifier."""
    return (value or "none")[:8]


def preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."
