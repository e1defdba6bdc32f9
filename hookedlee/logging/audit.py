"""Structured JSON audit logging for the HookedLee gateway.

Logs go to stdout as JSON lines, with optional file output via
AUDIT_LOG_FILE. User identifiers are masked and credentials scrubbed
before they reach a handler.
"""

import json
import logging
import re
import sys
import time
import uuid
from datetime import datetime, timezone
from contextvars import ContextVar

from hookedlee.config.settings import Settings, get_settings

AUDIT_LOGGER_NAME = "hookedlee.audit"

# Request-scoped context for correlating log entries
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_SECRET_PATTERNS = [
    (re.compile(r"sk-[a-zA-Z0-9-]+"), "sk-***"),
    (re.compile(r"[a-f0-9]{32}\.[a-zA-Z0-9]+"), "***.***"),
    (re.compile(r"Bearer\s+\S+"), "Bearer ***"),
    (re.compile(r"password[=:]\S+", re.IGNORECASE), "password=***"),
    (re.compile(r"token[=:]\S+", re.IGNORECASE), "token=***"),
]


def sanitize_log_output(message: str) -> str:
    """Remove API keys, bearer tokens and passwords from a log string."""
    if not message or not isinstance(message, str):
        return ""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def mask_identifier(identifier: str | None) -> str:
    """Log-safe form of an openid: first four characters only."""
    if not identifier:
        return ""
    return f"{identifier[:4]}***"


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_log_output(record.getMessage()),
            "request_id": request_id_var.get(""),
        }
        # Merge any extra fields passed via `extra={}` kwarg
        if hasattr(record, "audit_data"):
            log_entry.update(record.audit_data)
        if record.exc_info:
            log_entry["exception"] = sanitize_log_output(self.formatException(record.exc_info))
        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(settings: Settings | None = None) -> None:
    """Configure the audit logger with JSON output."""
    settings = settings or get_settings()

    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger (avoids duplicate output)
    logger.propagate = False


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER_NAME)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Context manager to measure request latency."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
