"""Structured logging for modgate.

Every record goes through structlog with the request's correlation id
attached and credentials masked. Masking works two ways: fields whose name
marks them as sensitive (``password``, ``raw_key``, ``email`` ...) are
shortened, and any string value is scanned for secret-shaped text such as
``mg_`` API keys, JWTs and argon2 hashes. The same scanner backs
``sanitize_error_message``, which cleans text before it is echoed to a client.

Environment:
    LOG_LEVEL     DEBUG, INFO, WARNING or ERROR (default INFO)
    LOG_JSON      JSON lines when true (default), console output otherwise
    LOG_DEV_MODE  force colored console output
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional, Pattern, Tuple

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("modgate_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the id for the current request, generating one when the caller sent none."""
    value = (correlation_id or "").strip()[:128] or uuid.uuid4().hex
    _request_id.set(value)
    return value


# secret-shaped text, with what it is replaced by
_SECRET_SHAPES: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bmg_[A-Za-z0-9_-]{8,}"), "mg_***"),
    (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), "[jwt]"),
    (re.compile(r"\$argon2(?:id|i|d)\$\S+"), "[hash]"),
    (re.compile(r"(?i)\bbearer\s+\S+"), "Bearer ***"),
    (re.compile(r"(?i)([?&]secret=)[A-Z2-7]+"), r"\1***"),
]

# field names whose values are credentials or personal data
_SENSITIVE_FIELDS = (
    "password",
    "secret",
    "token",
    "raw_key",
    "api_key",
    "authorization",
    "email",
    "code",
)
_EXEMPT_FIELDS = {"event", "error_code", "api_key_id", "logger", "level", "timestamp"}


def redact_secrets(text: str) -> str:
    """Replace API keys, JWTs, password hashes and TOTP secrets found in text."""
    for pattern, replacement in _SECRET_SHAPES:
        text = pattern.sub(replacement, text)
    return text


def _mask_field(name: str, value: str) -> str:
    if "email" in name and "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _add_request_id(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _mask_credentials(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for name, value in list(event_dict.items()):
        if name in _EXEMPT_FIELDS or not isinstance(value, str):
            continue
        lowered = name.lower()
        if any(field in lowered for field in _SENSITIVE_FIELDS):
            event_dict[name] = _mask_field(lowered, value)
        else:
            event_dict[name] = redact_secrets(value)
    return event_dict


_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """(Re)build the structlog pipeline; called once at import from the environment."""
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=console))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    console=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# leaks of server internals: filesystem paths, key=value credentials, tracebacks
_INTERNAL_DETAILS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/\S+"),
    re.compile(r"(?i)\b[a-z]:\\\S+"),
    re.compile(r"(?i)\b(?:password|secret|token|credential|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an error message safe to return in an envelope.

    Secret-shaped values are masked first, so an ``mg_`` key or JWT quoted in a
    message never reaches the client, then server paths and tracebacks are
    replaced and the result is capped in length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = redact_secrets(error)
    for pattern in _INTERNAL_DETAILS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
