from __future__ import annotations

import contextlib
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenkeep.config import Settings
from tokenkeep.logging import get_logger, hash_email
from tokenkeep.service.codec import (
    EMAIL_VERIFICATION_TOKEN_BYTES,
    REMEMBER_TOKEN_BYTES,
    RESET_TOKEN_BYTES,
    SecretCodec,
)
from tokenkeep.service.errors import (
    EmailExistsError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidVerificationCodeError,
    ServiceError,
    UserNotFoundError,
)
from tokenkeep.service.notifications import (
    NotificationDispatcher,
    NotificationError,
    NotificationKind,
)
from tokenkeep.service.sessions import (
    ACCESS_PURPOSE,
    VERIFICATION_PURPOSE,
    SessionIssuer,
)
from tokenkeep.service.validation import (
    check_password_length,
    validate_email,
    validate_name,
    validate_password,
)
from tokenkeep.storage.errors import ConstraintViolation
from tokenkeep.storage.models import SecretRecord, SessionTokens, TokenKind, User

logger = get_logger(__name__)


class TokenStore(Protocol):
    def save(self, subject: str, token_hash: str, ttl: timedelta) -> SecretRecord: ...

    def find_live(self, token_hash: str) -> Optional[SecretRecord]: ...

    def delete(self, token_id: str) -> bool: ...

    def delete_for_subject(self, subject: str) -> int: ...


class AuthStore(Protocol):
    def create_user(
        self, name: str, email: str, password_hash: str, *, verified: bool = False
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def verified_user_exists(self, email: str) -> bool: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def replace_unverified_user(
        self, email: str, name: str, password_hash: str
    ) -> Optional[User]: ...

    def tokens(self, kind: TokenKind) -> TokenStore: ...


class AuthService:
    """Login, session rotation, and the email-based identity proofs.

    Every secret handed to a user is generated by ``SecretCodec``, persisted
    only as its SHA-256 digest, and consumed at most once: ``delete`` on the
    token store decides which of several concurrent consumers wins.
    """

    def __init__(
        self,
        store: AuthStore,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        *,
        codec: Optional[SecretCodec] = None,
        sessions: Optional[SessionIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.dispatcher = dispatcher
        self.settings = settings
        self.codec = codec or SecretCodec()
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.sessions = sessions or SessionIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            default_ttl=self.access_ttl,
            clock=clock,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

        self._remember = store.tokens(TokenKind.REMEMBER)
        self._email_tokens = store.tokens(TokenKind.EMAIL_VERIFICATION)
        self._reset_tokens = store.tokens(TokenKind.PASSWORD_RESET)
        self._codes = store.tokens(TokenKind.VERIFICATION_CODE)
        self._login_otps = store.tokens(TokenKind.LOGIN_OTP)

    @contextlib.contextmanager
    def _guard(self, event: str, **context) -> Iterator[None]:
        """Turn unexpected collaborator failures into a logged ``InternalError``."""

        try:
            yield
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            # Only the unique email constraint exists
            raise EmailExistsError() from exc
        except Exception as exc:
            self.logger.error(
                event, error_type=type(exc).__name__, error=str(exc), **context
            )
            raise InternalError() from exc

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    async def _dispatch(self, kind: NotificationKind, email: str, secret: str) -> None:
        """Schedule a notification; failure is fatal for the calling flow."""

        try:
            await self.dispatcher.enqueue(kind, email, secret)
        except NotificationError as exc:
            self.logger.error(
                "notification_schedule_failed",
                kind=kind.value,
                email_hash=hash_email(email),
                error=str(exc),
            )
            raise InternalError() from exc

    # sessions
    async def login(
        self, email: str, password: str, remember_me: bool = False
    ) -> SessionTokens:
        if not email or not password:
            raise InvalidCredentialsError()
        with self._guard("login_lookup_failed"):
            user = self.store.get_user_by_email(email)
        if not user or not self._verify_password(user, password):
            # Same error for unknown account and wrong password
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        tokens = await self.issue_session(user.id, remember_me)
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return tokens

    async def issue_session(self, user_id: str, remember_me: bool) -> SessionTokens:
        with self._guard("access_token_issue_failed", user_id=user_id):
            access_token = self.sessions.issue(user_id, ACCESS_PURPOSE, self.access_ttl)
        remember_token: Optional[str] = None
        if remember_me:
            with self._guard("remember_token_persist_failed", user_id=user_id):
                remember_token = self.codec.generate_opaque_token(REMEMBER_TOKEN_BYTES)
                self._remember.save(
                    user_id,
                    self.codec.hash(remember_token),
                    timedelta(days=self.settings.remember_token_ttl_days),
                )
        return SessionTokens(
            user_id=user_id,
            access_token=access_token,
            expires_in=int(self.access_ttl.total_seconds()),
            remember_token=remember_token,
        )

    async def refresh_session(self, remember_token: str) -> SessionTokens:
        """Exchange a remember token for a new access claim and a new remember token."""

        if not remember_token:
            raise InvalidCredentialsError()
        with self._guard("remember_token_lookup_failed"):
            record = self._remember.find_live(self.codec.hash(remember_token))
        if not record:
            self.logger.warning("remember_token_invalid", token_prefix=remember_token[:4])
            raise InvalidTokenError()
        # Delete before anything else so a replayed token never mints twice
        with self._guard("remember_token_delete_failed", token_id=record.id):
            removed = self._remember.delete(record.id)
        if not removed:
            self.logger.warning("remember_token_replayed", user_id=record.subject)
            raise InvalidTokenError()
        with self._guard("refresh_user_lookup_failed", user_id=record.subject):
            user = self.store.get_user(record.subject)
        if not user:
            raise InvalidCredentialsError()
        tokens = await self.issue_session(user.id, remember_me=True)
        self.logger.info("remember_token_rotated", user_id=user.id)
        return tokens

    async def authenticate(self, access_token: str) -> User:
        """Resolve an access claim to its still-existing user."""

        user_id = self.sessions.parse(access_token, ACCESS_PURPOSE)
        with self._guard("authenticate_user_lookup_failed", user_id=user_id):
            user = self.store.get_user(user_id)
        if not user:
            raise InvalidTokenError()
        return user

    async def authenticate_bearer(self, header: Optional[str]) -> User:
        token = self._extract_bearer(header)
        if not token:
            raise InvalidTokenError("missing bearer token")
        return await self.authenticate(token)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def get_user_profile(self, user_id: str) -> User:
        with self._guard("user_profile_lookup_failed", user_id=user_id):
            user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    # registration by email link
    async def register(self, name: str, email: str, password: str) -> User:
        name = validate_name(name)
        email = validate_email(email)
        validate_password(password, self.settings.min_password_length)
        with self._guard("register_lookup_failed", email_hash=hash_email(email)):
            existing = self.store.get_user_by_email(email)
        if existing:
            raise EmailExistsError()
        pwd_hash = self._hash_password(password)
        with self._guard("register_create_failed", email_hash=hash_email(email)):
            user = self.store.create_user(name, email, pwd_hash)
        self.logger.info("user_registered", user_id=user.id)
        await self.request_email_verification(user.id, user.email)
        return user

    async def request_email_verification(self, user_id: str, email: str) -> None:
        with self._guard("email_verification_persist_failed", user_id=user_id):
            raw_token = self.codec.generate_opaque_token(EMAIL_VERIFICATION_TOKEN_BYTES)
            self._email_tokens.save(
                user_id,
                self.codec.hash(raw_token),
                timedelta(minutes=self.settings.email_verification_ttl_minutes),
            )
        await self._dispatch(NotificationKind.EMAIL_VERIFICATION, email, raw_token)
        self.logger.info("email_verification_requested", user_id=user_id)

    async def verify_email(self, token: str) -> SessionTokens:
        if not token:
            raise InvalidTokenError()
        with self._guard("email_verification_lookup_failed"):
            record = self._email_tokens.find_live(self.codec.hash(token))
        if not record:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:4])
            raise InvalidTokenError()
        # Consume before mutating the user
        with self._guard("email_verification_delete_failed", token_id=record.id):
            removed = self._email_tokens.delete(record.id)
        if not removed:
            raise InvalidTokenError()
        with self._guard("email_verification_mark_failed", user_id=record.subject):
            user = self.store.mark_email_verified(record.subject)
        if not user:
            self.logger.warning("email_verification_missing_user", user_id=record.subject)
            raise InvalidTokenError()
        self.logger.info("email_verified", user_id=user.id)
        return await self.issue_session(user.id, remember_me=True)

    # password reset
    async def request_password_reset(self, email: str) -> None:
        """Always returns normally so callers cannot tell which emails exist."""

        try:
            normalized = validate_email(email)
            user = self.store.get_user_by_email(normalized)
            if not user:
                self.logger.info(
                    "password_reset_unknown_email", email_hash=hash_email(normalized)
                )
                return
            if not user.verified:
                self.logger.info("password_reset_unverified_user", user_id=user.id)
                return
            raw_token = self.codec.generate_opaque_token(RESET_TOKEN_BYTES)
            self._reset_tokens.save(
                user.id,
                self.codec.hash(raw_token),
                timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            await self.dispatcher.enqueue(
                NotificationKind.PASSWORD_RESET, user.email, raw_token
            )
        except Exception as exc:
            self.logger.warning(
                "password_reset_request_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        check_password_length(new_password, self.settings.min_password_length)
        if not token:
            raise InvalidTokenError()
        with self._guard("password_reset_lookup_failed"):
            record = self._reset_tokens.find_live(self.codec.hash(token))
        if not record:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:4])
            raise InvalidTokenError()
        pwd_hash = self._hash_password(new_password)
        with self._guard("password_reset_write_failed", user_id=record.subject):
            updated = self.store.update_password_hash(record.subject, pwd_hash)
        if not updated:
            self.logger.warning("password_reset_user_missing", user_id=record.subject)
            raise InvalidTokenError()
        # The password is already changed; a failed delete is only logged
        try:
            if not self._reset_tokens.delete(record.id):
                self.logger.warning(
                    "password_reset_token_already_consumed", user_id=record.subject
                )
        except Exception as exc:
            self.logger.warning(
                "password_reset_token_delete_failed",
                user_id=record.subject,
                error=str(exc),
            )
        if self.settings.revoke_remember_tokens_on_reset:
            try:
                revoked = self._remember.delete_for_subject(record.subject)
                self.logger.info(
                    "remember_tokens_revoked", user_id=record.subject, revoked=revoked
                )
            except Exception as exc:
                self.logger.warning(
                    "remember_tokens_revoke_failed",
                    user_id=record.subject,
                    error=str(exc),
                )
        self.logger.info("password_reset_completed", user_id=record.subject)

    # registration by emailed code
    async def request_verification_code(self, email: str) -> None:
        email = validate_email(email)
        with self._guard("verification_code_lookup_failed", email_hash=hash_email(email)):
            taken = self.store.verified_user_exists(email)
        if taken:
            raise EmailExistsError()
        with self._guard("verification_code_persist_failed", email_hash=hash_email(email)):
            code = self.codec.generate_numeric_code(self.settings.otp_length)
            self._codes.save(
                email,
                self.codec.hash(code),
                timedelta(seconds=self.settings.verification_code_ttl_seconds),
            )
        await self._dispatch(NotificationKind.VERIFICATION_CODE, email, code)
        self.logger.info("verification_code_requested", email_hash=hash_email(email))

    async def verify_verification_code(self, code: str) -> str:
        """Consume a code and return a short-lived claim naming its email."""

        if not code:
            raise InvalidVerificationCodeError()
        with self._guard("verification_code_lookup_failed"):
            record = self._codes.find_live(self.codec.hash(code))
        if not record:
            raise InvalidVerificationCodeError()
        with self._guard("verification_code_delete_failed", token_id=record.id):
            removed = self._codes.delete(record.id)
        if not removed:
            raise InvalidVerificationCodeError()
        with self._guard("verification_claim_issue_failed"):
            claim = self.sessions.issue(
                record.subject,
                VERIFICATION_PURPOSE,
                timedelta(minutes=self.settings.verification_claim_ttl_minutes),
            )
        self.logger.info("verification_code_accepted", email_hash=hash_email(record.subject))
        return claim

    async def register_with_code(
        self, verification_token: str, name: str, password: str
    ) -> SessionTokens:
        email = self.sessions.parse(verification_token, VERIFICATION_PURPOSE)
        name = validate_name(name)
        validate_password(password, self.settings.min_password_length)
        with self._guard("register_with_code_lookup_failed", email_hash=hash_email(email)):
            taken = self.store.verified_user_exists(email)
        if taken:
            raise EmailExistsError()
        pwd_hash = self._hash_password(password)
        with self._guard("register_with_code_create_failed", email_hash=hash_email(email)):
            # An unverified holder of the email is replaced, never inherited
            user = self.store.replace_unverified_user(email, name, pwd_hash)
            if user is not None:
                self.logger.info("unverified_account_replaced", user_id=user.id)
            else:
                user = self.store.create_user(name, email, pwd_hash, verified=True)
        self.logger.info("user_registered_with_code", user_id=user.id)
        return await self.issue_session(user.id, remember_me=False)

    # one-time login codes
    async def request_login_otp(self, email: str) -> None:
        """Send a login code to a verified account; silent for anything else."""

        email = validate_email(email)
        try:
            user = self.store.get_user_by_email(email)
            if not user or not user.verified:
                self.logger.info("login_otp_not_eligible", email_hash=hash_email(email))
                return
            code = self.codec.generate_numeric_code(self.settings.otp_length)
            self._login_otps.save(
                email,
                self.codec.hash(code),
                timedelta(seconds=self.settings.login_otp_ttl_seconds),
            )
            await self.dispatcher.enqueue(NotificationKind.LOGIN_OTP, email, code)
        except Exception as exc:
            self.logger.warning(
                "login_otp_request_failed",
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.logger.info("login_otp_requested", user_id=user.id)

    async def verify_login_otp(self, code: str) -> SessionTokens:
        if not code:
            raise InvalidVerificationCodeError()
        with self._guard("login_otp_lookup_failed"):
            record = self._login_otps.find_live(self.codec.hash(code))
        if not record:
            raise InvalidVerificationCodeError()
        # Every outstanding code for the email goes; zero means another verify won
        with self._guard("login_otp_delete_failed", email_hash=hash_email(record.subject)):
            removed = self._login_otps.delete_for_subject(record.subject)
        if removed == 0:
            raise InvalidVerificationCodeError()
        with self._guard("login_otp_user_lookup_failed"):
            user = self.store.get_user_by_email(record.subject)
        if not user:
            raise InvalidVerificationCodeError()
        self.logger.info("login_otp_verified", user_id=user.id)
        return await self.issue_session(user.id, remember_me=False)
