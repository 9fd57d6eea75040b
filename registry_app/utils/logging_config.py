"""
Application logging setup driven by the ``MonitoringConfig`` keys.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from flask.logging import default_handler

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_STDLIB_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "taskName"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra=`` fields."""

    def __init__(self, app_name: str | None = None, app_version: str | None = None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version

        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload["exc_type"] = type(record.exc_info[1]).__name__
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter(app) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME"), app.config.get("APP_VERSION"))
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app) -> None:
    """
    Attach console and/or rotating-file handlers to ``app.logger``.

    Safe to call more than once; handlers installed by a previous call are
    replaced.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    logger = app.logger
    logger.removeHandler(default_handler)
    for handler in list(logger.handlers):
        if getattr(handler, "_registry_handler", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler(sys.stderr))

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = Path(app.config.get("LOG_DIR", "logs"))
        if not log_dir.is_absolute():
            log_dir = Path(app.root_path) / log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / app.config.get("LOG_FILE_NAME", "registry.log"),
                maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024),
                backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._registry_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
