from __future__ import annotations

import hashlib
import logging
import os
import uuid
from typing import Any, MutableMapping, Optional

import structlog

# Keys whose values are secrets or PII; matched as substrings of the event key.
_PII_KEYS = frozenset(
    {"password", "secret", "token", "code", "otp", "authorization", "email"}
)
# Derived identifiers that are safe to log verbatim.
_SAFE_KEYS = frozenset({"email_hash", "token_prefix", "error_code", "status_code"})

_TRUTHY = {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to every log line of the current context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def hash_email(email: str) -> str:
    """Stable digest of an email address for log correlation without PII."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def _mask(value: str) -> str:
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor that masks secrets and PII before rendering."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(marker in lowered for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    *, level: str = "INFO", json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; a colored console renderer when ``dev_mode`` is
    set or ``json_output`` is off. Redaction runs before either renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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
    return os.getenv(name, default).lower() in _TRUTHY


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

