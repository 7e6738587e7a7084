# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Structured logging with credential redaction.

Feed definitions carry API keys, bearer tokens, OAuth client secrets and
MISP auth keys, and connector errors tend to echo request URLs and headers.
Every formatted line therefore passes through :func:`redact_sensitive`.

Sync code attaches ``tenant_id``, ``feed_id`` and ``job_id`` via ``extra=``;
both formatters surface them.
"""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

REDACT_PATTERNS = [
    re.compile(r"(Bearer\s+[a-zA-Z0-9\-._~+/]{6})[a-zA-Z0-9\-._~+/]*=*"),
    re.compile(r"(Basic\s+[a-zA-Z0-9+/]{4})[a-zA-Z0-9+/]*=*"),
    re.compile(r"((?:api[_-]?key|authkey|client_secret|password|token)[\"']?\s*[:=]\s*[\"']?[^\s\"',]{3})[^\s\"',]*", re.IGNORECASE),
    re.compile(r"(https?://[^:/\s]+:)[^@/\s]+(@)"),
]

CONTEXT_FIELDS = ("tenant_id", "feed_id", "job_id")

# chatty third-party loggers held at WARNING unless tiace itself runs at DEBUG
_QUIET = ("httpx", "httpcore", "aiosqlite")


def redact_sensitive(text: str) -> str:
    for pattern in REDACT_PATTERNS:
        replacement = r"\1[REDACTED]\2" if pattern.groups == 2 else r"\1[REDACTED]"
        text = pattern.sub(replacement, text)
    return text


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key in CONTEXT_FIELDS if (value := getattr(record, key, None)) is not None}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_sensitive(record.getMessage()),
            **_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = redact_sensitive(f"{type(exc).__name__}: {exc}")
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if ctx := _context(record):
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        return redact_sensitive(line)


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route the ``tiace`` logger tree to stderr in *fmt* (``json`` or ``text``)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())

    root = logging.getLogger("tiace")
    root.setLevel(numeric)
    root.handlers[:] = [handler]

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING)
