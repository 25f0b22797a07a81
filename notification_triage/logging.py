"""
Logging setup for notification_triage.

Usage:
    from notification_triage.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Decision made", extra={"event_id": "e1", "verdict": "NOW"})

TRIAGE_LOG_LEVEL picks the level, TRIAGE_LOG_JSON switches to one JSON
object per line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from notification_triage.config import get_settings

ROOT_LOGGER = "notification_triage"

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED}


class TriageFormatter(logging.Formatter):
    def __init__(self, json_output: bool = False) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        if self.json_output:
            return self._format_json(record, timestamp)
        return self._format_text(record, timestamp)

    def _format_text(self, record: logging.LogRecord, timestamp: str) -> str:
        module = record.name.rsplit(".", 1)[-1]
        msg = f"{timestamp} [{record.levelname}] [{module}] {record.getMessage()}"
        extras = _extra_fields(record)
        if extras:
            msg += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg

    def _format_json(self, record: logging.LogRecord, timestamp: str) -> str:
        entry: Dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_extra_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> logging.Logger:
    """Attach a single stderr handler to the package logger. Safe to call twice."""
    settings = get_settings()
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level or settings.log_level)

    for handler in list(root.handlers):
        if getattr(handler, "_triage_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TriageFormatter(settings.log_json if json_output is None else json_output))
    handler._triage_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
