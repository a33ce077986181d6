from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id carried from the HTTP middleware into every service and store log line
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Substrings of keys whose values are never logged
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "digest")
# Substrings of keys whose values are addresses; the local part is masked
_ADDRESS_KEY_PARTS = ("email", "recipient")
# Identifiers and digests are safe and needed for correlation
_SAFE_KEY_SUFFIXES = ("_id", "_hash", "_count", "_configured", "_revoked")


def _mask_address(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "[redacted]"
    return f"{local[:2]}***@{domain}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values and mask email addresses before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if not isinstance(value, str) or lower_key.endswith(_SAFE_KEY_SUFFIXES):
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _ADDRESS_KEY_PARTS):
            event_dict[key] = _mask_address(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line
        development_mode: Render colored console lines instead of JSON
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger that tags every event with the emitting module."""
    return structlog.get_logger().bind(logger=name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(database|connection|pool)\s+(error|failed|refused|timeout).*",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

MAX_CLIENT_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub a message that is about to be sent to an HTTP client.

    Service error messages are written for clients already; this strips
    anything that slipped through from lower layers (SQL, paths, inline
    credentials) and caps the length.
    """
    if not error or not isinstance(error, str):
        return "an error occurred"
    result = error
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_CLIENT_MESSAGE_LENGTH:
        result = result[: MAX_CLIENT_MESSAGE_LENGTH - 3] + "..."
    return result
