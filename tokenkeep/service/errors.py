from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so an
    outer transport can map failures without inspecting messages:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - invalid_verification_code (422)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class EmptyNameError(ValidationError):
    error_code = "empty_name"

    def __init__(self, message: str = "name is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmptyEmailError(ValidationError):
    error_code = "empty_email"

    def __init__(self, message: str = "email is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmptyPasswordError(ValidationError):
    error_code = "empty_password"

    def __init__(self, message: str = "password is required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidEmailError(ValidationError):
    error_code = "invalid_email"

    def __init__(self, message: str = "invalid email address", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordTooShortError(ValidationError):
    error_code = "password_too_short"

    def __init__(
        self, message: str = "password is too short", *, min_length: int = 8, **kwargs
    ) -> None:
        kwargs.setdefault("detail", {"min_length": min_length})
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token or claim is unknown, expired, already used, or badly signed."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidVerificationCodeError(ServiceError):
    """Numeric code is unknown, expired, or already consumed (422)."""
    status_code = 422
    error_code = "invalid_verification_code"

    def __init__(
        self, message: str = "invalid or expired verification code", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailExistsError(ConflictError):
    error_code = "email_exists"

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InternalError(ServerError):
    """Wraps an unexpected storage, entropy, or queue failure.

    The message stays generic; the cause is chained and logged.
    """

    def __init__(self, message: str = "internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "EmptyNameError",
    "EmptyEmailError",
    "EmptyPasswordError",
    "InvalidEmailError",
    "PasswordTooShortError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidVerificationCodeError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "EmailExistsError",
    "ServerError",
    "InternalError",
]
