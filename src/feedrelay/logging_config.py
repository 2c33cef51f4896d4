"""
Structured logging configuration for feedrelay.

Provides one-line JSON (or human-readable) log output with:
- Secret filtering (webhook tokens live in the URL path and are redacted)
- Bounded field sizes (no raw payloads or long lists)

Usage:
    from feedrelay.logging_config import setup_logging

    setup_logging(level="INFO", json_format=True)  # Call once at startup
    logger = logging.getLogger(__name__)
    logger.info("message", extra={"key": "value"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

# Discord webhook URLs: /api/webhooks/<id>/<token>
_WEBHOOK_PATTERN = re.compile(r"/api/webhooks/[^\s\"'<>]+")
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (_WEBHOOK_PATTERN, "/api/webhooks/[REDACTED]"),
    (re.compile(r"\b(api[_-]?key|apikey)[=:]\s*['\"]?[\w\-]+['\"]?", re.I), "[API_KEY]"),
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
]

# Never logged, matched on the lower-cased field name
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "webhook_url",
        "webhook_urls",
        "token",
        "secret",
        "password",
        "authorization",
        "api_key",
        "headers",
    }
)

# Blocked when they appear anywhere in a field name, e.g. "user_token"
BLOCKED_SUBSTRINGS: tuple[str, ...] = ("token", "secret", "password", "webhook_url")

# Replaced by a placeholder instead of the raw value
REDACTED_FIELDS: dict[str, str] = {
    "payload": "[PAYLOAD]",
    "body": "[BODY]",
}

MAX_LIST_ITEMS = 10
MAX_DEPTH = 3

# Attributes every LogRecord carries; anything else came from `extra`
_RECORD_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def redact_text(text: str) -> str:
    """Remove webhook tokens and credentials from free-form text."""
    if not text:
        return text
    result = text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _filter_fields(fields: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Drop secrets and bound the size of structured fields."""
    if _depth > MAX_DEPTH:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}
    for key, value in fields.items():
        key_lower = key.lower()
        if key_lower in BLOCKED_FIELDS or any(s in key_lower for s in BLOCKED_SUBSTRINGS):
            continue
        if key_lower in REDACTED_FIELDS:
            filtered[key] = REDACTED_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = redact_text(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            if len(value) <= MAX_LIST_ITEMS:
                filtered[key] = [
                    redact_text(v) if isinstance(v, str) else v for v in value
                ]
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_fields(value, _depth=_depth + 1)
        else:
            filtered[key] = redact_text(str(value))
    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
    return _filter_fields(extra) if extra else {}


class JsonFormatter(logging.Formatter):
    """JSON log formatter, one object per line.

    Output format:
    {"ts":"2025-01-01T00:00:00.000+00:00","level":"INFO","logger":"feedrelay.cycle","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            log_dict["exc"] = redact_text(self.formatException(record.exc_info))

        log_dict.update(_extra_fields(record))
        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for terminals and development."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")
        base = f"{ts} {record.levelname:8s} {record.name}: {redact_text(record.getMessage())}"

        extra = _extra_fields(record)
        if extra:
            base = f"{base} | " + " ".join(f"{k}={v}" for k, v in extra.items())

        if record.exc_info:
            base = f"{base}\n{redact_text(self.formatException(record.exc_info))}"
        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name or number (default INFO).
        json_format: JSON lines (default) or human-readable output.
        stream: Output stream (default stderr).
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
