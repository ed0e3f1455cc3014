from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Type


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None


class TokenKind(str, Enum):
    """Families of short-lived secrets, each persisted in its own table."""

    REMEMBER = "remember"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    VERIFICATION_CODE = "verification_code"
    LOGIN_OTP = "login_otp"

    @property
    def keyed_by_email(self) -> bool:
        return self in (TokenKind.VERIFICATION_CODE, TokenKind.LOGIN_OTP)


@dataclass
class SecretRecord:
    """Persisted form of a secret: only its SHA-256 digest is kept.

    ``subject`` is a user id for link-style tokens and an email address for
    numeric codes.
    """

    id: str
    subject: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class RememberToken(SecretRecord):
    @property
    def user_id(self) -> str:
        return self.subject


@dataclass
class VerificationToken(SecretRecord):
    @property
    def user_id(self) -> str:
        return self.subject


@dataclass
class PasswordResetToken(SecretRecord):
    @property
    def user_id(self) -> str:
        return self.subject


@dataclass
class EmailVerificationCode(SecretRecord):
    @property
    def email(self) -> str:
        return self.subject


@dataclass
class LoginOTP(SecretRecord):
    @property
    def email(self) -> str:
        return self.subject


RECORD_TYPES: Dict[TokenKind, Type[SecretRecord]] = {
    TokenKind.REMEMBER: RememberToken,
    TokenKind.EMAIL_VERIFICATION: VerificationToken,
    TokenKind.PASSWORD_RESET: PasswordResetToken,
    TokenKind.VERIFICATION_CODE: EmailVerificationCode,
    TokenKind.LOGIN_OTP: LoginOTP,
}


@dataclass
class SessionTokens:
    """Credentials handed back to the caller after a successful flow.

    ``remember_token`` is the raw value and exists only in this object.
    """

    user_id: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int = 0
    remember_token: str | None = None

    def as_dict(self) -> dict:
        payload = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.remember_token:
            payload["remember_token"] = self.remember_token
        return payload
