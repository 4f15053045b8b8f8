from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id bound by the HTTP middleware; None outside a request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def token_fingerprint(token: Optional[str]) -> Optional[str]:
    """Short, non-reversible handle for a bearer value so it can be logged."""
    if not token:
        return None
    return hashlib.sha256(token.encode("utf-8", "replace")).hexdigest()[:12]


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
# keys that only ever carry derived or enum values
_SAFE_SUFFIXES = ("_fingerprint", "_purpose", "_count", "_type")


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace bearer values with their fingerprint and mask addresses.

    A credential that slips into a log call is swapped for the same
    fingerprint ``token_fingerprint`` would give, so it can still be
    correlated across lines without being replayable.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith(_SAFE_SUFFIXES) or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = f"fp:{token_fingerprint(value)}" if value else value
        elif "email" in lower_key or lower_key in {"to", "recipient"}:
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: emit one JSON object per line
        development_mode: colored console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not be echoed back in an error response
_LEAKY_FRAGMENTS = tuple(
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b\s+.{0,60}",
        r"(?i)(psycopg|postgres|database)\S*\s+error.*",
        r"(?i)connection\s+\S+.*\b(failed|refused|timeout)\b",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)\b(password|secret|token|key|dsn)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)


def sanitize_error_message(error: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths and credentials from ``error``; cap at 500 chars."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    cleaned = error
    for pattern in _LEAKY_FRAGMENTS:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned if len(cleaned) <= 500 else cleaned[:497] + "..."
