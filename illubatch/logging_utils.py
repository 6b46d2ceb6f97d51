"""Logging setup for batch runs.

Scheduler and coordinator records carry ``batch_id`` and, for task events,
``task_id`` through ``extra=``; :func:`batch_context` and
:func:`task_context` build those mappings. Text output renders them as a
``[batch/task]`` tag and the JSON file output as separate fields.
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping

LOGGER_NAME = "IlluBatch"
LOG_FILE_NAME = "illubatch.log"
CONTEXT_FIELDS = ("batch_id", "task_id")
# HTTP client libraries log every request at INFO.
NOISY_LIBRARIES = ("httpx", "httpcore")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(context)s%(message)s"


def batch_context(batch_id: str) -> Dict[str, Any]:
    return {"batch_id": batch_id}


def task_context(task: Any) -> Dict[str, Any]:
    return {"batch_id": task.batch_id, "task_id": task.id}


def _context_tag(record: logging.LogRecord) -> str:
    batch_id = getattr(record, "batch_id", None)
    if batch_id is None:
        return ""
    task_id = getattr(record, "task_id", None)
    return f"[{batch_id}/{task_id[:8]}] " if task_id else f"[{batch_id}] "


class ContextFormatter(logging.Formatter):
    """Plain text with the batch/task tag in front of the message."""

    def format(self, record: logging.LogRecord) -> str:
        record.context = _context_tag(record)
        return super().format(record)


class ColorFormatter(ContextFormatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, *, use_color: bool) -> None:
        super().__init__(fmt)
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - colour branch
        message = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(logging.Formatter):
    """One JSON object per line; batch and task ids become their own keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(config: Mapping[str, Any], *, level: str | None = None) -> logging.Logger:
    """Attach console and rotating file handlers to the ``IlluBatch`` logger.

    ``level`` overrides ``console_level`` (the ``--log-level`` flag). The file
    handler is only added when ``log_dir`` (or ``logs``) is set.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_console_handler(config, level))
    log_dir = config.get("log_dir") or config.get("logs")
    if log_dir:
        logger.addHandler(_file_handler(config, Path(str(log_dir))))

    if config.get("quiet_http", True):
        for name in NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(logging.WARNING)
    return logger


def _console_handler(config: Mapping[str, Any], level: str | None) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(_coerce_level(level or config.get("console_level")))
    handler.setFormatter(ColorFormatter(_TEXT_FORMAT, use_color=bool(config.get("color", True))))
    return handler


def _file_handler(config: Mapping[str, Any], log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=int(config.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(config.get("backup_count", 5)),
        encoding="utf-8",
    )
    handler.setLevel(_coerce_level(config.get("file_level")))
    if config.get("json_logs"):
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ContextFormatter("%(asctime)s [%(levelname)s] %(name)s: %(context)s%(message)s"))
    return handler


def _coerce_level(level: object) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        value = getattr(logging, level.upper(), None)
        if isinstance(value, int):
            return value
    return logging.INFO


__all__ = [
    "ColorFormatter",
    "ContextFormatter",
    "JsonFormatter",
    "LOGGER_NAME",
    "batch_context",
    "configure_logging",
    "task_context",
]
