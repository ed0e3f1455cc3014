from __future__ import annotations

import re
import unicodedata
from typing import Optional

from tokenkeep.service.errors import (
    EmptyEmailError,
    EmptyNameError,
    EmptyPasswordError,
    InvalidEmailError,
    PasswordTooShortError,
    ValidationError,
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_MAX_NAME_LENGTH = 200


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


def validate_email(value: Optional[str]) -> str:
    """Return the canonical (trimmed, lower-case) address or raise."""
    if value is None or not value.strip():
        raise EmptyEmailError()
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise InvalidEmailError()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise InvalidEmailError()
    if not _EMAIL_LOCAL_PART.match(local):
        raise InvalidEmailError()
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise InvalidEmailError()
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidEmailError()
    return normalized


def validate_name(value: Optional[str]) -> str:
    name = _normalize_unicode(value or "").strip()
    if not name:
        raise EmptyNameError()
    if len(name) > _MAX_NAME_LENGTH:
        raise ValidationError(
            f"name must be at most {_MAX_NAME_LENGTH} characters",
            error_code="name_too_long",
        )
    return name


def validate_password(value: Optional[str], min_length: int) -> str:
    if not value:
        raise EmptyPasswordError()
    check_password_length(value, min_length)
    return value


def check_password_length(value: Optional[str], min_length: int) -> None:
    if len(value or "") < min_length:
        raise PasswordTooShortError(
            f"password must be at least {min_length} characters", min_length=min_length
        )
