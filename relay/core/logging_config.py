"""Structured logging. No secrets in log output.

Telegram bot tokens travel inside request URLs (``/bot<token>/sendMessage``), so
they are scrubbed from every rendered message, not only from extras.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import Any

_SENSITIVE_KEYS = ("token", "password", "secret", "key", "bearer")
_BOT_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
_NOISY_LOGGERS = ("httpx", "httpcore")

_RESERVED_ATTRS = frozenset(
    (
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
        "taskName",
        "message",
        "asctime",
    )
)


def scrub_tokens(text: str) -> str:
    return _BOT_TOKEN_RE.sub("bot[REDACTED]", text)


def _redact(obj: Any, key: str = "") -> Any:
    if key and any(s in key.lower() for s in _SENSITIVE_KEYS):
        return "[REDACTED]"
    if isinstance(obj, dict):
        return {k: _redact(v, str(k)) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_redact(v) for v in obj]
    if isinstance(obj, str):
        if any(s in obj.lower() for s in _SENSITIVE_KEYS):
            return "[REDACTED]"
        return scrub_tokens(obj)
    return obj


class StructuredFormatter(logging.Formatter):
    """JSON or key=value format; redacts sensitive extras and bot tokens."""

    def __init__(self, use_json: bool = True) -> None:
        super().__init__()
        self.use_json = use_json

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub_tokens(record.getMessage()),
        }
        if record.exc_info:
            log_dict["exception"] = scrub_tokens(self.formatException(record.exc_info))
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_dict[key] = _redact(value, key)
        if self.use_json:
            return json.dumps(log_dict, default=str, ensure_ascii=False)
        parts = [f"{k}={v!r}" for k, v in log_dict.items()]
        return " ".join(parts)


def setup_logging(level: str = "INFO", use_json: bool = True) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter(use_json=use_json))
        root.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
