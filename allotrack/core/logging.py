"""Structured logging configuration with offering ID tracking."""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import settings


# Offering currently being processed by a pump item
offering_id_var: ContextVar[Optional[str]] = ContextVar("offering_id", default=None)

PAN_PATTERN = re.compile(r"\b([A-Z]{5})[0-9]{4}([A-Z])\b")

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        offering_id = offering_id_var.get()
        if offering_id:
            log_data["offering_id"] = offering_id

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key != "extra_fields" and not key.startswith("_"):
                log_data[key] = value

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if settings.debug:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        offering_id = offering_id_var.get()
        oid = f"[{offering_id}] " if offering_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        base = f"{timestamp} {record.levelname:8} {oid}{record.name}: {record.getMessage()}"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


class SensitiveDataFilter(logging.Filter):
    """Filter applicant identifiers and secrets from logs."""

    SENSITIVE_KEYS = {
        "password",
        "token",
        "secret",
        "authorization",
        "api_key",
    }

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = mask_pan(message)
        lowered = redacted.lower()
        for key in self.SENSITIVE_KEYS:
            if key in lowered:
                redacted = self._redact_value(redacted, key)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True

    def _redact_value(self, text: str, key: str) -> str:
        """Redact values after sensitive keys."""
        patterns = [
            rf'({key}\s*[=:]\s*)[^\s,}}\]]+',
            rf"('{key}'\s*:\s*)[^\s,}}\]]+",
            rf'("{key}"\s*:\s*)[^\s,}}\]]+',
        ]
        for pattern in patterns:
            text = re.sub(pattern, r"\1[REDACTED]", text, flags=re.IGNORECASE)
        return text


def mask_pan(text: str) -> str:
    """Mask the digits of every PAN in ``text`` (ABCDE1234F -> ABCDE****F)."""
    return PAN_PATTERN.sub(r"\1****\2", text)


def setup_logging() -> None:
    """Configure application logging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, settings.log_level))

    if settings.log_format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    handler.addFilter(SensitiveDataFilter())

    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the allotrack prefix."""
    return logging.getLogger(f"allotrack.{name}")
