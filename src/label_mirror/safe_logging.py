"""Credential-safe logging for label-mirror.

Upstream requests carry an API key, and error messages from httpx can echo
request headers or query strings. Everything that reaches a handler goes
through SafeLogFormatter, which masks:
- Bearer tokens and ``api_key=...`` style pairs in messages
- Sensitive fields in dict arguments
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Mapping
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

# Fields that should be redacted in logs
REDACT_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "auth",
        "authorization",
        "credential",
        "access_token",
        "refresh_token",
        "client_secret",
    }
)

PATTERNS = {
    "bearer": re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.I),
    "key_pair": re.compile(
        r"((?:api[_-]?key|access[_-]?token|token|secret)[\"']?\s*[=:]\s*[\"']?)([^\s&\"',;]+)", re.I
    ),
}


def redact_value(value: str, visible_chars: int = 4) -> str:
    """Redact a sensitive value, showing only the first few characters.

    Args:
        value: Value to redact
        visible_chars: Number of characters to show

    Returns:
        Redacted string (e.g., "sk-a***")
    """
    if len(value) <= visible_chars:
        return "***"
    return f"{value[:visible_chars]}***"


def redact_dict(
    data: Mapping[str, Any],
    redact_fields: frozenset[str] | None = None,
) -> dict[str, Any]:
    """Recursively redact sensitive fields in a dictionary.

    Field names match case-insensitively, exact or as a substring
    (``X-Api-Key`` matches ``api_key`` after normalization).
    """
    if redact_fields is None:
        redact_fields = REDACT_FIELDS

    result: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = str(key).lower().replace("-", "_")
        should_redact = key_lower in redact_fields or any(field in key_lower for field in redact_fields)

        if should_redact and isinstance(value, str):
            result[key] = redact_value(value)
        elif isinstance(value, Mapping):
            result[key] = redact_dict(value, redact_fields)
        elif isinstance(value, list):
            result[key] = [
                redact_dict(item, redact_fields) if isinstance(item, Mapping) else item for item in value
            ]
        else:
            result[key] = value

    return result


def sanitize_message(message: str) -> str:
    """Mask credentials embedded in a log message."""
    result = PATTERNS["bearer"].sub(lambda m: m.group(1) + redact_value(m.group(2)), message)
    return PATTERNS["key_pair"].sub(lambda m: m.group(1) + redact_value(m.group(2)), result)


class SafeLogFormatter(logging.Formatter):
    """Log formatter that masks credentials in messages and arguments."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        sanitize_messages: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.sanitize_messages = sanitize_messages

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers still see the original record
        record = logging.makeLogRecord(record.__dict__)

        if self.sanitize_messages:
            record.msg = sanitize_message(str(record.msg))
            if record.args:
                record.args = self._sanitize_args(record.args)

        return super().format(record)

    def _sanitize_args(
        self, args: tuple[Any, ...] | Mapping[str, Any]
    ) -> tuple[Any, ...] | dict[str, Any]:
        if isinstance(args, Mapping):
            return redact_dict(args)
        return tuple(self._sanitize_value(arg) for arg in args)

    def _sanitize_value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return redact_dict(value)
        if isinstance(value, str):
            return sanitize_message(value)
        return value


def configure_safe_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    redact: bool = True,
) -> None:
    """Configure plain stream logging with credential-safe formatting.

    Used by batch jobs that run without a terminal. Logs go to stderr and
    existing root handlers are replaced.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(SafeLogFormatter(fmt=format_string, sanitize_messages=redact))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)


def configure_rich_logging(
    level: int = logging.WARNING,
    redact: bool = True,
    show_time: bool = True,
    show_path: bool = False,
    console: Console | None = None,
) -> Console:
    """Configure Rich logging on the root logger and return its console.

    Rich writes to stderr so JSON output on stdout stays parseable.
    Existing root handlers are replaced, which makes repeated calls (one
    per CLI invocation in tests) idempotent.
    """
    if console is None:
        console = Console(stderr=True)

    handler = RichHandler(
        console=console,
        show_time=show_time,
        show_path=show_path,
        rich_tracebacks=False,
        markup=False,
    )
    handler.setFormatter(SafeLogFormatter(fmt="%(message)s", sanitize_messages=redact))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    return console


## Tests


def test_redact_value():
    assert redact_value("sk-secret-key-12345") == "sk-s***"
    assert redact_value("abc") == "***"
    assert redact_value("abcdef", 3) == "abc***"


def test_redact_dict():
    data = {
        "api_key": "sk-secret-12345",
        "name": "Build It Deep",
        "headers": {"Authorization": "Bearer abcdef123", "Accept": "application/json"},
        "tokens": [{"access_token": "abc123", "type": "bearer"}],
    }

    redacted = redact_dict(data)

    assert redacted["api_key"] == "sk-s***"
    assert redacted["name"] == "Build It Deep"
    assert redacted["headers"]["Authorization"] == "Bear***"
    assert redacted["headers"]["Accept"] == "application/json"
    assert redacted["tokens"][0]["access_token"] == "abc1***"
    assert redacted["tokens"][0]["type"] == "bearer"


def test_sanitize_message_masks_credentials():
    msg = "GET /v1/tracks?api_key=sk-live-98765&page=2 failed (Authorization: Bearer tok-ABCDEFG)"
    sanitized = sanitize_message(msg)

    assert "sk-live-98765" not in sanitized
    assert "tok-ABCDEFG" not in sanitized
    assert "api_key=sk-l***" in sanitized
    assert "page=2" in sanitized


def test_sanitize_message_leaves_plain_text():
    msg = "Serving stale track:42 (cached_at=1700000000)"
    assert sanitize_message(msg) == msg


def test_safe_log_formatter():
    formatter = SafeLogFormatter(fmt="%(message)s")

    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg="Request with %s",
        args=("token=supersecret",),
        exc_info=None,
    )

    formatted = formatter.format(record)
    assert "supersecret" not in formatted
    assert "token=supe***" in formatted


def test_configure_safe_logging_replaces_handlers():
    root_logger = logging.getLogger()
    saved = list(root_logger.handlers), root_logger.level
    try:
        configure_safe_logging(level=logging.DEBUG, format_string="%(levelname)s %(message)s")
        configure_safe_logging(level=logging.DEBUG, format_string="%(levelname)s %(message)s")

        assert len(root_logger.handlers) == 1
        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, SafeLogFormatter)
        assert root_logger.handlers[0].formatter._fmt == "%(levelname)s %(message)s"
    finally:
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
        for handler in saved[0]:
            root_logger.addHandler(handler)
        root_logger.setLevel(saved[1])
