"""
Structured logging configuration.

The API and the Celery worker log one JSON object per line so sync runs,
throttling waits and scoring decisions can be filtered by user_id, event_id
or request_id. Structured context travels in `extra=log_fields(...)`.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from core.config import settings

# Libraries that log every statement or connection at INFO.
_QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(entry, default=str)


def log_fields(**fields: Any) -> Dict[str, Dict[str, Any]]:
    """Build the `extra` mapping understood by JSONFormatter."""
    return {"extra_fields": fields}


def setup_logging() -> logging.Logger:
    """
    Configure the root logger once per process.

    JSON whenever LOG_FORMAT=json or in production; a plain text line
    otherwise (local runs, tests).
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    return root
