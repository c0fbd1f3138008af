"""
Password hashing and validation using argon2id.

Hash comparison is delegated to argon2, which recomputes the hash from the
stored salt and parameters; plaintext is never compared directly.
"""

from __future__ import annotations

import argon2

from warden.auth.errors import ValidationFailed

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,  # argon2id
)

SPECIAL_CHARACTERS = "@$!%*?&#"

# Verified against when there is no real hash to check (unknown email, locked
# account) so those paths cost the same as a wrong password.
_DUMMY_HASH = _hasher.hash("warden-dummy-password")


class PasswordStrengthError(ValidationFailed):
    """Raised when a password does not meet strength requirements."""

    def __init__(self, message: str, field: str = "password") -> None:
        super().__init__(message, detail={field: message})


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full hash string."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify a password against its argon2id hash.

    Returns True if the password matches. Never raises on mismatch. A missing
    hash (federated account) still burns one verification.
    """
    if not password_hash:
        burn_verification(password)
        return False
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def burn_verification(password: str) -> None:
    """Run a verification against a dummy hash and discard the result."""
    try:
        _hasher.verify(_DUMMY_HASH, password)
    except argon2.exceptions.VerifyMismatchError:
        pass


def check_needs_rehash(password_hash: str) -> bool:
    """Check if the hash needs to be updated (parameters changed)."""
    return _hasher.check_needs_rehash(password_hash)


def validate_password_strength(password: str, field: str = "password") -> None:
    """
    Validate password meets minimum strength requirements.

    Raises PasswordStrengthError if the password is too weak.

    Requirements:
    - Minimum 8 characters
    - Maximum 128 characters (prevent DoS via huge passwords)
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character from ``@$!%*?&#``
    """
    if not password or not password.strip():
        msg = "Password cannot be empty"
        raise PasswordStrengthError(msg, field)
    if len(password) < 8:
        msg = "Password must be at least 8 characters"
        raise PasswordStrengthError(msg, field)
    if len(password) > 128:
        msg = "Password must not exceed 128 characters"
        raise PasswordStrengthError(msg, field)
    if not any(c.isupper() for c in password):
        msg = "Password must contain at least one uppercase letter"
        raise PasswordStrengthError(msg, field)
    if not any(c.islower() for c in password):
        msg = "Password must contain at least one lowercase letter"
        raise PasswordStrengthError(msg, field)
    if not any(c.isdigit() for c in password):
        msg = "Password must contain at least one digit"
        raise PasswordStrengthError(msg, field)
    if not any(c in SPECIAL_CHARACTERS for c in password):
        msg = f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"
        raise PasswordStrengthError(msg, field)
