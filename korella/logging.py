from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_KEYS = ("email", "to", "recipient")
_DIGEST_SUFFIXES = ("_hash", "_fingerprint")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def redact_email(email: str) -> str:
    """``ada@example.com`` -> ``ad***@example.com``."""
    if not isinstance(email, str) or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def email_fingerprint(email: str) -> str:
    """Stable sha256 of a normalized address, for correlating log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses before an entry is rendered.

    Keys ending in ``_hash`` or ``_fingerprint`` already carry a digest and
    pass through untouched.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith(_DIGEST_SUFFIXES):
            continue
        if any(part in lower_key for part in _CREDENTIAL_KEYS):
            event_dict[key] = value[:2] + "***" if len(value) > 4 else "***"
        elif lower_key in _EMAIL_KEYS or lower_key.endswith("_email"):
            event_dict[key] = redact_email(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    Console rendering wins when either dev mode is on or JSON is off.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
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


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# SQL fragments, filesystem paths and inline credentials
_ERROR_SCRUBBERS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\b(relation|column|constraint)\s+\"?[\w.]+\"?"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)(postgres(?:ql)?|redis)://\S+"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths and credentials from an error string.

    Used where an exception message is echoed back to an operator, such as
    the retention job report.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
