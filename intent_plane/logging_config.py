"""
Intent Plane Structured Logging
===============================

JSON lines in production, readable text locally. Identifiers passed via
``extra={"intent_id": ..., "order_id": ...}`` become top-level JSON keys.
"""

import json
import logging
import logging.config
from datetime import datetime, timezone

# Attributes every LogRecord carries; anything else came from ``extra``
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

QUIET_LOGGERS = ("uvicorn.access", "httpx", "asyncpg", "stripe")


class JSONFormatter(logging.Formatter):
    """Output log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({
            key: value for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        })
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json"):
    """
    Install a single stdout handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        fmt: "json" or "text"
    """
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "text": {
                "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                "datefmt": "%H:%M:%S",
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "json" if fmt == "json" else "text",
            },
        },
        "root": {"level": level.upper(), "handlers": ["stdout"]},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })
