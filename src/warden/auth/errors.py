"""Authentication error taxonomy.

Each error carries the HTTP status and a stable machine-readable code; the
global exception handler turns them into ``{"detail", "code"}`` responses.
Messages are fixed and generic so storage details never reach the caller.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for errors raised by the authentication core."""

    status_code: int = 400
    error_code: str = "auth_error"
    default_message: str = "Authentication error"

    def __init__(self, message: str | None = None, *, detail: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}


class ValidationFailed(AuthError):
    """Malformed input. ``detail`` maps field names to messages."""

    status_code = 400
    error_code = "validation_failed"
    default_message = "Validation failed"


class DuplicateEmail(AuthError):
    status_code = 409
    error_code = "duplicate_email"
    default_message = "Email already registered"


class InvalidCredentials(AuthError):
    """Wrong email or wrong password; the two are deliberately indistinguishable."""

    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class AccountLocked(AuthError):
    status_code = 401
    error_code = "account_locked"
    default_message = "Account temporarily locked. Try again later."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(message, detail={"retry_after": retry_after} if retry_after is not None else None)
        self.retry_after = retry_after


class EmailNotVerified(AuthError):
    status_code = 401
    error_code = "email_not_verified"
    default_message = "Email verification required"


class TokenExpired(AuthError):
    status_code = 401
    error_code = "token_expired"
    default_message = "Token has expired"


class InvalidToken(AuthError):
    """Bad signature, wrong type, revoked or otherwise unusable token."""

    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid token"


class MalformedToken(InvalidToken):
    default_message = "Malformed token"


class WrongSecret(InvalidToken):
    default_message = "Token signature verification failed"


class RefreshTokenReuse(AuthError):
    """A rotated or revoked refresh token was presented again."""

    status_code = 401
    error_code = "refresh_token_reuse"
    default_message = "Refresh token has been revoked"


class InvalidOrExpired(AuthError):
    """Password-reset or email-verification token unknown, expired or used."""

    status_code = 400
    error_code = "invalid_or_expired"
    default_message = "Invalid or expired token"


class NotFound(AuthError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class Forbidden(AuthError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Insufficient permissions"
