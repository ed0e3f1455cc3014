"""Common storage utilities shared between memory and postgres implementations.

Both backends expose the same per-kind token operations; ``TokenTable`` binds a
backend to one ``TokenKind`` so callers see a small keyed store per secret
family.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from tokenkeep.storage.models import RECORD_TYPES, SecretRecord, TokenKind, User


class _TokenBackend(Protocol):
    def save_token(
        self, kind: TokenKind, subject: str, token_hash: str, ttl: timedelta
    ) -> SecretRecord: ...

    def find_live_token(
        self, kind: TokenKind, token_hash: str
    ) -> Optional[SecretRecord]: ...

    def delete_token(self, kind: TokenKind, token_id: str) -> bool: ...

    def delete_tokens_for_subject(self, kind: TokenKind, subject: str) -> int: ...


class TokenTable:
    """Keyed view over one family of secret records."""

    def __init__(self, backend: _TokenBackend, kind: TokenKind) -> None:
        self.backend = backend
        self.kind = kind

    def save(self, subject: str, token_hash: str, ttl: timedelta) -> SecretRecord:
        return self.backend.save_token(self.kind, subject, token_hash, ttl)

    def find_live(self, token_hash: str) -> Optional[SecretRecord]:
        return self.backend.find_live_token(self.kind, token_hash)

    def delete(self, token_id: str) -> bool:
        """Remove a record; True only for the call that actually removed it."""
        return self.backend.delete_token(self.kind, token_id)

    def delete_for_subject(self, subject: str) -> int:
        return self.backend.delete_tokens_for_subject(self.kind, subject)

    def __repr__(self) -> str:
        return f"TokenTable(kind={self.kind.value})"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def expiry_from(now: datetime, ttl: timedelta) -> datetime:
    if ttl <= timedelta(0):
        raise ValueError("ttl must be positive")
    return now + ttl


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row or tuple-like row without raising."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def row_to_user(row: Any) -> User:
    return User(
        id=str(row["id"]),
        name=row["name"],
        email=row["email"],
        password_hash=row["password_hash"],
        verified=bool(safe_row_value(row, "verified", False)),
        created_at=row["created_at"],
        updated_at=safe_row_value(row, "updated_at"),
    )


def row_to_record(kind: TokenKind, row: Any) -> SecretRecord:
    record_type = RECORD_TYPES[kind]
    return record_type(
        id=str(row["id"]),
        subject=str(row["subject"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )
