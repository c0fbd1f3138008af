"""Tests for password hashing and validation."""

import pytest

from warden.auth.errors import ValidationFailed
from warden.auth.password import (
    PasswordStrengthError,
    burn_verification,
    check_needs_rehash,
    hash_password,
    validate_password_strength,
    verify_password,
)


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("SecureP@ss1")
        assert verify_password("SecureP@ss1", hashed) is True

    def test_wrong_password_rejected(self):
        hashed = hash_password("CorrectP@ss1")
        assert verify_password("WrongP@ss1", hashed) is False

    def test_hash_is_argon2id(self):
        assert hash_password("TestP@ss1").startswith("$argon2id$")

    def test_same_password_hashes_differ(self):
        assert hash_password("TestP@ss1") != hash_password("TestP@ss1")

    def test_missing_hash_never_verifies(self):
        assert verify_password("TestP@ss1", None) is False
        assert verify_password("TestP@ss1", "") is False

    def test_garbage_hash_never_verifies(self):
        assert verify_password("TestP@ss1", "not-an-argon2-hash") is False

    def test_burn_verification_returns_nothing(self):
        assert burn_verification("anything") is None

    def test_check_needs_rehash(self):
        assert check_needs_rehash(hash_password("TestP@ss1")) is False


class TestPasswordStrength:
    def test_strong_password_accepted(self):
        validate_password_strength("StrongP@ss1")

    @pytest.mark.parametrize(
        "password",
        [
            "",
            "   ",
            "Sh0rt!",
            "nouppercase1!",
            "NOLOWERCASE1!",
            "NoDigitHere!",
            "NoSpecial123",
            "Aa1!" + "x" * 125,
        ],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(PasswordStrengthError):
            validate_password_strength(password)

    def test_error_is_validation_failure_with_field(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_password_strength("weak", field="new_password")
        assert "new_password" in exc_info.value.detail
        assert exc_info.value.status_code == 400
