from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenkeep.logging import get_logger
from tokenkeep.storage.common import (
    TokenTable,
    expiry_from,
    generate_uuid,
    normalize_email,
    row_to_record,
    row_to_user,
)
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import SecretRecord, TokenKind, User, utcnow

# Fixed table names; never derived from caller input.
TOKEN_TABLES: Dict[TokenKind, str] = {
    TokenKind.REMEMBER: "remember_token",
    TokenKind.EMAIL_VERIFICATION: "verification_token",
    TokenKind.PASSWORD_RESET: "password_reset_token",
    TokenKind.VERIFICATION_CODE: "email_verification_code",
    TokenKind.LOGIN_OTP: "login_otp",
}


class PostgresStore:
    """Postgres-backed identity and secret store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user and secret tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    verified BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )
            for table in TOKEN_TABLES.values():
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id UUID PRIMARY KEY,
                        subject TEXT NOT NULL,
                        token_hash TEXT NOT NULL,
                        expires_at TIMESTAMPTZ NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_hash_idx ON {table} (token_hash)"
                )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_subject_idx ON {table} (subject)"
                )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, password_hash, verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), name, email, password_hash, verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # Malformed UUID can never match a row
            return None
        if not row:
            return None
        return row_to_user(row)

    def verified_user_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s AND verified",
                (normalize_email(email),),
            ).fetchone()
        return row is not None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET verified = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row_to_user(row)

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def replace_unverified_user(
        self, email: str, name: str, password_hash: str
    ) -> Optional[User]:
        """Swap an abandoned unverified account for a fresh verified one.

        The old row and every secret issued to it are deleted in the same
        transaction as the insert, so the new user shares nothing with it.
        """
        email = normalize_email(email)
        try:
            with self._connect() as conn:
                stale = conn.execute(
                    "DELETE FROM app_user WHERE email = %s AND NOT verified RETURNING id",
                    (email,),
                ).fetchone()
                if not stale:
                    return None
                for kind, table in TOKEN_TABLES.items():
                    subject = email if kind.keyed_by_email else str(stale["id"])
                    conn.execute(f"DELETE FROM {table} WHERE subject = %s", (subject,))
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, password_hash, verified)
                    VALUES (%s, %s, %s, %s, TRUE)
                    RETURNING *
                    """,
                    (generate_uuid(), name, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return row_to_user(row)

    # secrets
    def tokens(self, kind: TokenKind) -> TokenTable:
        return TokenTable(self, kind)

    def save_token(
        self, kind: TokenKind, subject: str, token_hash: str, ttl: timedelta
    ) -> SecretRecord:
        if kind.keyed_by_email:
            subject = normalize_email(subject)
        table = TOKEN_TABLES[kind]
        expires_at = expiry_from(utcnow(), ttl)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO {table} (id, subject, token_hash, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (generate_uuid(), subject, token_hash, expires_at),
            ).fetchone()
        return row_to_record(kind, row)

    def find_live_token(self, kind: TokenKind, token_hash: str) -> Optional[SecretRecord]:
        table = TOKEN_TABLES[kind]
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE token_hash = %s AND expires_at > now() LIMIT 1",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return row_to_record(kind, row)

    def delete_token(self, kind: TokenKind, token_id: str) -> bool:
        table = TOKEN_TABLES[kind]
        with self._connect() as conn:
            result = conn.execute(f"DELETE FROM {table} WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def delete_tokens_for_subject(self, kind: TokenKind, subject: str) -> int:
        if kind.keyed_by_email:
            subject = normalize_email(subject)
        table = TOKEN_TABLES[kind]
        with self._connect() as conn:
            result = conn.execute(f"DELETE FROM {table} WHERE subject = %s", (subject,))
            return result.rowcount

    def purge_expired(self) -> int:
        """Drop expired secrets; Runtime calls this every PURGE_INTERVAL_SECONDS."""
        removed = 0
        with self._connect() as conn:
            for table in TOKEN_TABLES.values():
                result = conn.execute(f"DELETE FROM {table} WHERE expires_at <= now()")
                removed += max(result.rowcount, 0)
        if removed:
            self.logger.info("expired_secrets_purged", removed=removed)
        return removed

    def close(self) -> None:
        self.pool.close()
