from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "pursuit_range"
LOG_FILE_NAME = "scheduler.log.jsonl"
# Standard record attributes kept in every JSON line next to the event fields.
LOG_FORMAT = "%(levelname)s %(name)s %(message)s"


def _level(name: str) -> int:
    resolved = logging.getLevelName(str(name).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _writable_log_dir(out_dir: str) -> Path | None:
    """First of OUT_DIR/logs, ./out/logs and a temp dir that accepts a file."""
    for candidate in (
        Path(out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "pursuit-range" / "logs",
    ):
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            marker = candidate / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return candidate
    return None


def _handlers() -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = _writable_log_dir(settings.out_dir)
    if log_dir is None:
        return handlers
    try:
        handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"))
    except OSError:
        # Console logging alone is enough when the file cannot be opened.
        return handlers
    return handlers


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    # Reloaders import the module twice; configure handlers once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_level(settings.log_level))
    logger.propagate = False
    formatter = jsonlogger.JsonFormatter(LOG_FORMAT, timestamp=True)
    for handler in _handlers():
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def _logger() -> logging.Logger:
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    return LOGGER


def log_event(event: str, **fields: Any) -> None:
    # The event name is both the message and a top-level key.
    _logger().info(event, extra={"event": event, **fields})


def log_error(event: str, *, exc: BaseException | None = None, **fields: Any) -> None:
    extra: dict[str, Any] = {"event": event, **fields}
    if exc is not None:
        extra["error_type"] = type(exc).__name__
        extra["error"] = str(exc) or repr(exc)
    _logger().error(event, extra=extra, exc_info=exc)
