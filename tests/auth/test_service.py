"""Tests for the auth orchestrator flows."""

from datetime import datetime, timedelta, timezone

import argon2
import pytest
from sqlalchemy import func, select, update

from tests.conftest import OTHER_PASSWORD, STRONG_PASSWORD
from warden.auth.credentials import CredentialStore
from warden.auth.errors import (
    AccountLocked,
    DuplicateEmail,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpired,
    InvalidToken,
    RefreshTokenReuse,
    ValidationFailed,
)
from warden.auth.ledger import RefreshTokenLedger
from warden.auth.password import check_needs_rehash, verify_password
from warden.auth.service import AuthResult
from warden.auth.tokens import TokenKind
from warden.db.models import LoginAttempt, RefreshToken, SecurityEvent, User
from warden.email.service import NotificationKind


async def _count(session, model, *criteria):
    stmt = select(func.count()).select_from(model)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    return (await session.execute(stmt)).scalar_one()


class TestRegister:
    async def test_stores_hash_not_plaintext(self, auth_service, db_session):
        result = await auth_service.register("alice@warden.io", STRONG_PASSWORD, "Alice")
        user = result.user
        assert user.password_hash != STRONG_PASSWORD
        assert verify_password(STRONG_PASSWORD, user.password_hash)
        assert result.created is True
        assert user.email_verified is False

    async def test_issues_pair_and_ledger_entry(self, auth_service, db_session, signer):
        result = await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        payload = signer.verify(TokenKind.ACCESS, result.tokens.access_token)
        assert payload["sub"] == str(result.user.id)
        assert payload["role"] == "standard"
        entry = await RefreshTokenLedger(db_session).find_active(result.user.id, result.tokens.refresh_token)
        assert entry is not None

    async def test_email_is_normalized(self, auth_service):
        result = await auth_service.register("  Alice@Warden.IO ", STRONG_PASSWORD)
        assert result.user.email == "alice@warden.io"

    async def test_duplicate_email_rejected(self, auth_service, db_session):
        await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        with pytest.raises(DuplicateEmail):
            await auth_service.register("ALICE@warden.io", OTHER_PASSWORD)
        assert await _count(db_session, User) == 1

    async def test_weak_password_rejected(self, auth_service, db_session):
        with pytest.raises(ValidationFailed) as exc_info:
            await auth_service.register("alice@warden.io", "weak")
        assert "password" in exc_info.value.detail
        assert await _count(db_session, User) == 0

    async def test_invalid_email_rejected(self, auth_service):
        with pytest.raises(ValidationFailed) as exc_info:
            await auth_service.register("not-an-email", STRONG_PASSWORD)
        assert "email" in exc_info.value.detail

    async def test_sends_verification_notice(self, auth_service, mock_notifier, last_token):
        await auth_service.register("alice@warden.io", STRONG_PASSWORD, "Alice")
        mock_notifier.send.assert_awaited_once()
        args, kwargs = mock_notifier.send.call_args
        assert args[0] is NotificationKind.VERIFY_EMAIL
        assert args[1] == "alice@warden.io"
        assert kwargs["display_name"] == "Alice"
        assert last_token()

    async def test_notification_failure_does_not_fail_registration(self, auth_service, mock_notifier, db_session):
        mock_notifier.send.side_effect = RuntimeError("smtp down")
        result = await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        assert result.tokens is not None
        assert await _count(db_session, User) == 1


class TestLogin:
    async def test_correct_credentials(self, auth_service, db_session, make_user):
        user = await make_user()
        result = await auth_service.login("alice@warden.io", STRONG_PASSWORD, "10.0.0.1", "pytest")
        assert result.user.id == user.id
        entry = await RefreshTokenLedger(db_session).find_active(user.id, result.tokens.refresh_token)
        assert entry is not None
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "pytest"
        assert await _count(db_session, RefreshToken, RefreshToken.token_hash == entry.token_hash) == 1
        assert result.user.login_count == 1
        assert result.user.last_login is not None

    async def test_email_case_insensitive(self, auth_service, make_user):
        await make_user()
        result = await auth_service.login("ALICE@WARDEN.IO", STRONG_PASSWORD)
        assert result.tokens is not None

    async def test_each_login_creates_new_session(self, auth_service, db_session, make_user):
        user = await make_user()
        first = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        second = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert first.tokens.refresh_token != second.tokens.refresh_token
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 2

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth_service, make_user):
        await make_user()
        with pytest.raises(InvalidCredentials) as wrong_password:
            await auth_service.login("alice@warden.io", OTHER_PASSWORD)
        with pytest.raises(InvalidCredentials) as unknown_email:
            await auth_service.login("nobody@warden.io", STRONG_PASSWORD)
        assert wrong_password.value.message == unknown_email.value.message

    async def test_attempts_are_recorded(self, auth_service, db_session, make_user):
        await make_user()
        with pytest.raises(InvalidCredentials):
            await auth_service.login("nobody@warden.io", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentials):
            await auth_service.login("alice@warden.io", OTHER_PASSWORD)
        await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert await _count(db_session, LoginAttempt, LoginAttempt.success == False) == 2  # noqa: E712
        assert await _count(db_session, LoginAttempt, LoginAttempt.success == True) == 1  # noqa: E712

    async def test_deleted_user_cannot_login(self, auth_service, db_session, make_user):
        user = await make_user()
        await db_session.execute(update(User).values(deleted_at=datetime.now(timezone.utc)))
        await db_session.commit()
        with pytest.raises(InvalidCredentials):
            await auth_service.login(user.email, STRONG_PASSWORD)

    async def test_federated_account_has_no_password(self, auth_service):
        await auth_service.link_external_identity("google", "g-123", "fed@warden.io")
        with pytest.raises(InvalidCredentials):
            await auth_service.login("fed@warden.io", STRONG_PASSWORD)

    async def test_unverified_email_allowed_by_default(self, auth_service, make_user):
        await make_user(email_verified=False)
        assert (await auth_service.login("alice@warden.io", STRONG_PASSWORD)).tokens is not None

    async def test_unverified_email_blocked_when_required(self, db_session, make_service, make_user):
        await make_user(email_verified=False)
        service = make_service(db_session, require_verified_email=True)
        with pytest.raises(EmailNotVerified):
            await service.login("alice@warden.io", STRONG_PASSWORD)

    async def test_outdated_hash_upgraded_on_login(self, auth_service, db_session):
        weak = argon2.PasswordHasher(
            time_cost=1, memory_cost=8192, parallelism=1, hash_len=32, salt_len=16, type=argon2.Type.ID
        )
        old_hash = weak.hash(STRONG_PASSWORD)
        user = await CredentialStore(db_session).create("alice@warden.io", old_hash, email_verified=True)
        await db_session.commit()
        assert check_needs_rehash(old_hash) is True

        await auth_service.login("alice@warden.io", STRONG_PASSWORD)

        await db_session.refresh(user)
        assert user.password_hash != old_hash
        assert check_needs_rehash(user.password_hash) is False
        assert verify_password(STRONG_PASSWORD, user.password_hash)

    def test_result_cannot_be_built_without_tokens(self):
        with pytest.raises(TypeError):
            AuthResult(user=User(email="alice@warden.io"))


class TestLockout:
    async def test_sixth_attempt_locked_even_with_correct_password(self, auth_service, db_session, make_user):
        user = await make_user()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice@warden.io", OTHER_PASSWORD)
        with pytest.raises(AccountLocked) as exc_info:
            await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert exc_info.value.retry_after > 0
        assert await _count(db_session, SecurityEvent, SecurityEvent.event == "account_locked") == 1
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0

    async def test_login_succeeds_after_lock_expires(self, auth_service, db_session, make_user):
        user = await make_user()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice@warden.io", OTHER_PASSWORD)

        await db_session.execute(
            update(User)
            .where(User.id == user.id)
            .values(locked_until=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await db_session.commit()

        result = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert result.user.failed_login_attempts == 0
        assert result.user.is_locked is False
        assert result.user.locked_until is None

    async def test_success_resets_failures(self, auth_service, make_user):
        await make_user()
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice@warden.io", OTHER_PASSWORD)
        await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice@warden.io", OTHER_PASSWORD)
        assert (await auth_service.login("alice@warden.io", STRONG_PASSWORD)).tokens is not None

    async def test_locked_user_cannot_refresh(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await db_session.execute(
            update(User)
            .where(User.id == user.id)
            .values(is_locked=True, locked_until=datetime.now(timezone.utc) + timedelta(minutes=5))
        )
        await db_session.commit()
        with pytest.raises(AccountLocked):
            await auth_service.refresh_tokens(session.tokens.refresh_token)


class TestRefresh:
    async def test_rotation_issues_new_pair(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        rotated = await auth_service.refresh_tokens(session.tokens.refresh_token)
        assert rotated.tokens.refresh_token != session.tokens.refresh_token
        ledger = RefreshTokenLedger(db_session)
        assert await ledger.find_active(user.id, session.tokens.refresh_token) is None
        assert await ledger.find_active(user.id, rotated.tokens.refresh_token) is not None
        old = await ledger.find(session.tokens.refresh_token)
        assert old.replaced_by == rotated.tokens.refresh_jti

    async def test_reuse_detected_and_family_revoked(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        rotated = await auth_service.refresh_tokens(session.tokens.refresh_token)

        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(session.tokens.refresh_token)

        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0
        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(rotated.tokens.refresh_token)
        assert await _count(db_session, SecurityEvent, SecurityEvent.event == "refresh_token_reuse") == 2

    async def test_reuse_without_family_revocation(self, db_session, make_service, make_user):
        user = await make_user()
        service = make_service(db_session, revoke_all_on_refresh_reuse=False)
        session = await service.login("alice@warden.io", STRONG_PASSWORD)
        rotated = await service.refresh_tokens(session.tokens.refresh_token)
        with pytest.raises(RefreshTokenReuse):
            await service.refresh_tokens(session.tokens.refresh_token)
        assert await RefreshTokenLedger(db_session).find_active(user.id, rotated.tokens.refresh_token) is not None

    async def test_racing_refreshes_one_winner(self, db_session, other_session, make_service, make_user):
        await make_user()
        first = make_service(db_session)
        second = make_service(other_session)
        session = await first.login("alice@warden.io", STRONG_PASSWORD)

        winner = await first.refresh_tokens(session.tokens.refresh_token)
        with pytest.raises(RefreshTokenReuse):
            await second.refresh_tokens(session.tokens.refresh_token)
        assert winner.tokens is not None

    async def test_access_token_cannot_refresh(self, auth_service, make_user):
        await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        with pytest.raises(InvalidToken):
            await auth_service.refresh_tokens(session.tokens.access_token)

    async def test_unrecorded_refresh_token_rejected(self, auth_service, signer, make_user):
        user = await make_user()
        forged = signer.sign(TokenKind.REFRESH, {"sub": user.id})
        with pytest.raises(InvalidToken):
            await auth_service.refresh_tokens(forged)

    async def test_refresh_reflects_current_role(self, auth_service, db_session, signer, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await db_session.execute(update(User).where(User.id == user.id).values(role="elevated"))
        await db_session.commit()
        rotated = await auth_service.refresh_tokens(session.tokens.refresh_token)
        assert signer.verify(TokenKind.ACCESS, rotated.tokens.access_token)["role"] == "elevated"


class TestLogoutAndAuthenticate:
    async def test_authenticate_returns_live_user(self, auth_service, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert (await auth_service.authenticate(session.tokens.access_token)).id == user.id

    async def test_logout_blacklists_access_and_revokes_refresh(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await auth_service.logout(session.tokens.access_token, session.tokens.refresh_token)

        with pytest.raises(InvalidToken, match="revoked"):
            await auth_service.authenticate(session.tokens.access_token)
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0
        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(session.tokens.refresh_token)

    async def test_logout_with_expired_access_token_revokes_refresh(
        self, auth_service, db_session, signer, make_user
    ):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        expired = signer.sign(TokenKind.ACCESS, {"sub": user.id}, ttl=timedelta(seconds=-10))

        await auth_service.logout(expired, session.tokens.refresh_token)

        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0
        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(session.tokens.refresh_token)

    async def test_logout_with_forged_access_token_rejected(
        self, auth_service, db_session, short_signer, make_user
    ):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        forged = short_signer.sign(TokenKind.ACCESS, {"sub": user.id}, ttl=timedelta(seconds=-10))

        with pytest.raises(InvalidToken):
            await auth_service.logout(forged, session.tokens.refresh_token)
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 1

    async def test_logout_ignores_someone_elses_refresh_token(self, auth_service, db_session, make_user):
        await make_user("alice@warden.io")
        bob = await make_user("bob@warden.io")
        alice_session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        bob_session = await auth_service.login("bob@warden.io", STRONG_PASSWORD)
        await auth_service.logout(alice_session.tokens.access_token, bob_session.tokens.refresh_token)
        assert await RefreshTokenLedger(db_session).count_active(bob.id) == 1

    async def test_logout_all(self, auth_service, db_session, make_user):
        user = await make_user()
        for _ in range(3):
            session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert await auth_service.logout_all(user, session.tokens.access_token) == 3
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0
        with pytest.raises(InvalidToken):
            await auth_service.authenticate(session.tokens.access_token)

    async def test_deleted_user_token_rejected(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await db_session.execute(
            update(User).where(User.id == user.id).values(deleted_at=datetime.now(timezone.utc))
        )
        await db_session.commit()
        with pytest.raises(InvalidToken, match="User not found"):
            await auth_service.authenticate(session.tokens.access_token)

    async def test_locked_user_token_rejected(self, auth_service, db_session, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await db_session.execute(
            update(User)
            .where(User.id == user.id)
            .values(is_locked=True, locked_until=datetime.now(timezone.utc) + timedelta(minutes=5))
        )
        await db_session.commit()
        with pytest.raises(AccountLocked):
            await auth_service.authenticate(session.tokens.access_token)

    async def test_refresh_token_is_not_an_access_token(self, auth_service, make_user):
        await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        with pytest.raises(InvalidToken):
            await auth_service.authenticate(session.tokens.refresh_token)


class TestChangePassword:
    async def test_revokes_all_sessions(self, auth_service, db_session, mock_notifier, make_user):
        user = await make_user()
        first = await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        await auth_service.login("alice@warden.io", STRONG_PASSWORD)

        assert await auth_service.change_password(user, STRONG_PASSWORD, OTHER_PASSWORD) == 2

        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(first.tokens.refresh_token)
        with pytest.raises(InvalidCredentials):
            await auth_service.login("alice@warden.io", STRONG_PASSWORD)
        assert (await auth_service.login("alice@warden.io", OTHER_PASSWORD)).tokens is not None
        assert mock_notifier.send.call_args.args[0] is NotificationKind.PASSWORD_CHANGED

    async def test_wrong_current_password(self, auth_service, make_user):
        user = await make_user()
        with pytest.raises(InvalidCredentials, match="Current password"):
            await auth_service.change_password(user, OTHER_PASSWORD, "Another#Pass1")

    async def test_weak_new_password(self, auth_service, make_user):
        user = await make_user()
        with pytest.raises(ValidationFailed) as exc_info:
            await auth_service.change_password(user, STRONG_PASSWORD, "weak")
        assert "new_password" in exc_info.value.detail

    async def test_same_password_rejected(self, auth_service, make_user):
        user = await make_user()
        with pytest.raises(ValidationFailed):
            await auth_service.change_password(user, STRONG_PASSWORD, STRONG_PASSWORD)


class TestPasswordReset:
    async def test_full_reset_flow(self, auth_service, db_session, mock_notifier, last_token, make_user):
        user = await make_user()
        session = await auth_service.login("alice@warden.io", STRONG_PASSWORD)

        await auth_service.request_password_reset("alice@warden.io")
        assert mock_notifier.send.call_args.args[0] is NotificationKind.PASSWORD_RESET
        token = last_token()

        await auth_service.reset_password(token, OTHER_PASSWORD)
        assert await RefreshTokenLedger(db_session).count_active(user.id) == 0
        with pytest.raises(RefreshTokenReuse):
            await auth_service.refresh_tokens(session.tokens.refresh_token)
        assert (await auth_service.login("alice@warden.io", OTHER_PASSWORD)).tokens is not None

    async def test_second_request_invalidates_first(self, auth_service, last_token, make_user):
        await make_user()
        await auth_service.request_password_reset("alice@warden.io")
        first = last_token()
        await auth_service.request_password_reset("alice@warden.io")
        second = last_token()

        with pytest.raises(InvalidOrExpired):
            await auth_service.reset_password(first, OTHER_PASSWORD)
        await auth_service.reset_password(second, OTHER_PASSWORD)

    async def test_token_single_use(self, auth_service, last_token, make_user):
        await make_user()
        await auth_service.request_password_reset("alice@warden.io")
        token = last_token()
        await auth_service.reset_password(token, OTHER_PASSWORD)
        with pytest.raises(InvalidOrExpired):
            await auth_service.reset_password(token, "Third#Pass123")

    async def test_unknown_email_is_silent(self, auth_service, mock_notifier):
        assert await auth_service.request_password_reset("nobody@warden.io") is None
        mock_notifier.send.assert_not_awaited()

    async def test_weak_password_keeps_token_usable(self, auth_service, last_token, make_user):
        await make_user()
        await auth_service.request_password_reset("alice@warden.io")
        token = last_token()
        with pytest.raises(ValidationFailed):
            await auth_service.reset_password(token, "weak")
        await auth_service.reset_password(token, OTHER_PASSWORD)


class TestEmailVerification:
    async def test_verify_with_registration_token(self, auth_service, last_token):
        result = await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        user = await auth_service.verify_email(last_token())
        assert user.id == result.user.id
        assert user.email_verified is True

    async def test_token_single_use(self, auth_service, last_token):
        await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        token = last_token()
        await auth_service.verify_email(token)
        with pytest.raises(InvalidOrExpired):
            await auth_service.verify_email(token)

    async def test_resend_invalidates_previous(self, auth_service, last_token):
        result = await auth_service.register("alice@warden.io", STRONG_PASSWORD)
        original = last_token()
        await auth_service.resend_verification(result.user)
        with pytest.raises(InvalidOrExpired):
            await auth_service.verify_email(original)
        await auth_service.verify_email(last_token())

    async def test_resend_for_verified_user_rejected(self, auth_service, make_user):
        user = await make_user(email_verified=True)
        with pytest.raises(ValidationFailed, match="already verified"):
            await auth_service.resend_verification(user)


class TestExternalIdentity:
    async def test_creates_federated_account(self, auth_service, db_session):
        result = await auth_service.link_external_identity("google", "g-1", "Fed@Warden.io", "Fed")
        assert result.created is True
        assert result.user.email == "fed@warden.io"
        assert result.user.password_hash is None
        assert result.user.email_verified is True
        assert result.tokens is not None

    async def test_links_existing_account_by_email(self, auth_service, db_session, make_user):
        user = await make_user(email_verified=False)
        result = await auth_service.link_external_identity("google", "g-1", "alice@warden.io")
        assert result.created is False
        assert result.user.id == user.id
        assert result.user.external_id == "g-1"
        assert result.user.email_verified is True
        assert await _count(db_session, SecurityEvent, SecurityEvent.event == "identity_linked") == 1
        # Password login still works after linking.
        assert (await auth_service.login("alice@warden.io", STRONG_PASSWORD)).tokens is not None

    async def test_returning_identity_found_by_external_id(self, auth_service, db_session):
        first = await auth_service.link_external_identity("google", "g-1", "fed@warden.io")
        again = await auth_service.link_external_identity("google", "g-1", "renamed@warden.io")
        assert again.user.id == first.user.id
        assert again.created is False
        assert await _count(db_session, User) == 1


class TestAliceScenario:
    async def test_register_login_lock_unlock(self, auth_service, db_session):
        registered = await auth_service.register("alice@example.com", "P@ssw0rd1")
        assert registered.tokens.access_token and registered.tokens.refresh_token

        logged_in = await auth_service.login("alice@example.com", "P@ssw0rd1")
        assert logged_in.tokens.refresh_token != registered.tokens.refresh_token
        assert await RefreshTokenLedger(db_session).count_active(registered.user.id) == 2

        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice@example.com", "Wr0ng!pass")
        with pytest.raises(AccountLocked):
            await auth_service.login("alice@example.com", "P@ssw0rd1")

        await db_session.execute(
            update(User).values(locked_until=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await db_session.commit()
        assert (await auth_service.login("alice@example.com", "P@ssw0rd1")).user.failed_login_attempts == 0
