"""
Application logging setup.

JSON output is meant for log aggregation; text output for local work.
Structured ``extra`` fields prefixed with ``importer_`` travel with each
JSON record.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

from flask import Flask

TEXT_FORMAT = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"
EXTRA_PREFIXES = ("importer_",)


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key.startswith(EXTRA_PREFIXES):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app: Flask) -> None:
    """
    Configure the root logger from ``LOG_*`` settings.

    Re-running replaces the handlers installed by a previous call, so test
    suites that build several apps do not stack duplicate handlers.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(str(app.config.get("LOG_FORMAT", "json")))

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_kbo_app_handler", False):
            root.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, "kbo_importer.log"),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        handler._kbo_app_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(level)
    app.logger.setLevel(level)
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
