from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from tokenkeep.logging import get_logger
from tokenkeep.storage.common import (
    TokenTable,
    expiry_from,
    generate_uuid,
    normalize_email,
)
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import (
    RECORD_TYPES,
    SecretRecord,
    TokenKind,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self.users: Dict[str, User] = {}
        self.secrets: Dict[TokenKind, Dict[str, SecretRecord]] = {
            kind: {} for kind in TokenKind
        }
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def _now(self) -> datetime:
        return self._clock()

    # users
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        verified: bool = False,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                name=name,
                email=email,
                password_hash=password_hash,
                verified=verified,
                created_at=self._now(),
            )
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def verified_user_exists(self, email: str) -> bool:
        email = normalize_email(email)
        with self._data_lock:
            return any(u.email == email and u.verified for u in self.users.values())

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.verified = True
            user.updated_at = self._now()
            return user

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = self._now()
            return True

    def replace_unverified_user(
        self, email: str, name: str, password_hash: str
    ) -> Optional[User]:
        """Swap an abandoned unverified account for a fresh verified one.

        The old user and every secret issued to it are removed, and the new
        user gets a new id. Returns None when no unverified user holds the email.
        """
        email = normalize_email(email)
        with self._data_lock:
            stale = next((u for u in self.users.values() if u.email == email), None)
            if not stale or stale.verified:
                return None
            self._drop_user(stale)
            return self.create_user(name, email, password_hash, verified=True)

    def _drop_user(self, user: User) -> None:
        self.users.pop(user.id, None)
        for kind, table in self.secrets.items():
            subject = user.email if kind.keyed_by_email else user.id
            for token_id in [t.id for t in table.values() if t.subject == subject]:
                table.pop(token_id, None)

    # secrets
    def tokens(self, kind: TokenKind) -> TokenTable:
        return TokenTable(self, kind)

    def save_token(
        self, kind: TokenKind, subject: str, token_hash: str, ttl: timedelta
    ) -> SecretRecord:
        now = self._now()
        if kind.keyed_by_email:
            subject = normalize_email(subject)
        record = RECORD_TYPES[kind](
            id=generate_uuid(),
            subject=subject,
            token_hash=token_hash,
            expires_at=expiry_from(now, ttl),
            created_at=now,
        )
        with self._data_lock:
            self.secrets[kind][record.id] = record
        return record

    def find_live_token(self, kind: TokenKind, token_hash: str) -> Optional[SecretRecord]:
        now = self._now()
        with self._data_lock:
            for record in self.secrets[kind].values():
                if record.token_hash == token_hash and record.is_live(now):
                    return record
        return None

    def delete_token(self, kind: TokenKind, token_id: str) -> bool:
        with self._data_lock:
            return self.secrets[kind].pop(token_id, None) is not None

    def delete_tokens_for_subject(self, kind: TokenKind, subject: str) -> int:
        if kind.keyed_by_email:
            subject = normalize_email(subject)
        with self._data_lock:
            table = self.secrets[kind]
            stale = [t.id for t in table.values() if t.subject == subject]
            for token_id in stale:
                table.pop(token_id, None)
            return len(stale)

    def purge_expired(self) -> int:
        """Drop expired secrets; Runtime calls this every PURGE_INTERVAL_SECONDS."""
        now = self._now()
        removed = 0
        with self._data_lock:
            for table in self.secrets.values():
                expired = [t.id for t in table.values() if not t.is_live(now)]
                for token_id in expired:
                    table.pop(token_id, None)
                removed += len(expired)
        if removed:
            self.logger.info("expired_secrets_purged", removed=removed)
        return removed

    def close(self) -> None:
        return None
