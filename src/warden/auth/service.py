"""
Authentication orchestrator.

``AuthService`` composes the credential store, token signer, refresh ledger,
blacklist, one-time tokens and lockout policy into the user-facing flows. One
instance serves one request and owns that request's session: every mutating
operation commits at its end, so each flow is a single transaction.

Notifications are sent after commit. A failed send is logged and never
undoes or fails the operation that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog
from email_validator import EmailNotValidError, validate_email

from warden.auth import audit
from warden.auth.credentials import CredentialStore
from warden.auth.errors import (
    AccountLocked,
    DuplicateEmail,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpired,
    InvalidToken,
    MalformedToken,
    RefreshTokenReuse,
    TokenExpired,
    ValidationFailed,
)
from warden.auth.ledger import RefreshTokenLedger
from warden.auth.lockout import LockoutPolicy
from warden.auth.one_time import OneTimeTokenLedger, TokenPurpose
from warden.auth.password import (
    burn_verification,
    check_needs_rehash,
    hash_password,
    validate_password_strength,
    verify_password,
)
from warden.auth.tokens import TokenKind, TokenPair
from warden.config import get_settings
from warden.email.service import NotificationKind

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from warden.auth.blacklist import Blacklist
    from warden.auth.lockout import AttemptCounter
    from warden.auth.tokens import TokenSigner
    from warden.config import Settings
    from warden.db.models import User
    from warden.email.service import NotificationSink

logger = structlog.get_logger()


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    created: bool = False


def normalize_valid_email(email: str) -> str:
    """Syntax-check an address and return it lowercased. Raises ValidationFailed."""
    try:
        info = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationFailed("Invalid email address", detail={"email": str(e)}) from None
    return info.normalized.lower()


def subject_of(payload: dict[str, Any]) -> int:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise MalformedToken("Token subject is not a user id") from None


class AuthService:
    """Per-request facade over the authentication core."""

    def __init__(
        self,
        db: AsyncSession,
        signer: TokenSigner,
        blacklist: Blacklist,
        counter: AttemptCounter,
        notifier: NotificationSink,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.signer = signer
        self.blacklist = blacklist
        self.counter = counter
        self.notifier = notifier
        self.settings = settings or get_settings()

        self.credentials = CredentialStore(db)
        self.ledger = RefreshTokenLedger(db)
        self.one_time = OneTimeTokenLedger(
            db,
            reset_ttl=timedelta(minutes=self.settings.password_reset_token_ttl_minutes),
            verification_ttl=timedelta(hours=self.settings.email_verification_token_ttl_hours),
        )
        self.lockout = LockoutPolicy(
            counter,
            threshold=self.settings.account_lockout_threshold,
            duration=timedelta(minutes=self.settings.account_lockout_duration_minutes),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _start_session(
        self,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Sign a token pair and record its refresh half in the ledger."""
        pair = self.signer.issue_pair(user.id, user.email, user.role)
        await self.ledger.store(
            user.id,
            pair.refresh_token,
            token_id=pair.refresh_jti,
            expires_at=pair.refresh_expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    async def _notify(self, kind: NotificationKind, user: User, token: str | None = None) -> None:
        try:
            sent = await self.notifier.send(kind, user.email, token, display_name=user.display_name)
        except Exception:
            logger.exception("notification_failed", kind=kind.value, user_id=user.id)
            return
        if not sent:
            logger.warning("notification_not_sent", kind=kind.value, user_id=user.id)

    # ------------------------------------------------------------------
    # Registration & login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Create a password account and sign the user in.

        Raises:
            ValidationFailed: Malformed email or weak password.
            DuplicateEmail: The email is already registered.
        """
        email = normalize_valid_email(email)
        validate_password_strength(password)
        if await self.credentials.find_by_email(email) is not None:
            raise DuplicateEmail

        user = await self.credentials.create(email, hash_password(password), display_name)
        verification_token = await self.one_time.issue(user.id, TokenPurpose.EMAIL_VERIFICATION)
        pair = await self._start_session(user, ip_address, user_agent)
        await self.db.commit()
        logger.info("user_registered", user_id=user.id)

        await self._notify(NotificationKind.VERIFY_EMAIL, user, verification_token)
        return AuthResult(user=user, tokens=pair, created=True)

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Password login.

        The lockout gate runs before the password is hashed. Unknown emails and
        locked accounts still cost one hash verification so response time does
        not reveal which case applied.

        Raises:
            InvalidCredentials: Unknown email or wrong password.
            AccountLocked: Too many recent failures.
            EmailNotVerified: ``require_verified_email`` is on and the email is unverified.
        """
        user = await self.credentials.find_by_email(email)
        if user is None:
            burn_verification(password)
            await self.counter.record(email, ip_address, success=False)
            await self.db.commit()
            raise InvalidCredentials

        try:
            await self.lockout.check(user)
        except AccountLocked:
            burn_verification(password)
            await self.counter.record(user.email, ip_address, success=False)
            await self.db.commit()
            logger.info("login_rejected_locked", user_id=user.id)
            raise

        if not verify_password(password, user.password_hash):
            await self.lockout.register_failure(user, ip_address)
            await self.db.commit()
            raise InvalidCredentials

        if self.settings.require_verified_email and not user.email_verified:
            await self.db.commit()
            raise EmailNotVerified

        if user.password_hash and check_needs_rehash(user.password_hash):
            await self.credentials.rehash_password(user, hash_password(password))

        await self.lockout.register_success(user, ip_address)
        await self.credentials.record_login(user)
        pair = await self._start_session(user, ip_address, user_agent)
        await self.db.commit()
        logger.info("user_logged_in", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def link_external_identity(
        self,
        provider: str,
        external_id: str,
        email: str,
        display_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Sign in with an identity vouched for by an external provider.

        Resolution order: an account already linked to ``(provider,
        external_id)``; else the live account with this email, which gets
        linked; else a new password-less account with the email pre-verified.
        """
        created = False
        user = await self.credentials.find_by_external_id(provider, external_id)
        if user is None:
            email = normalize_valid_email(email)
            user = await self.credentials.find_by_email(email)
            if user is not None:
                await self.credentials.link_external_identity(user, provider, external_id)
                await audit.log_security_event(
                    self.db,
                    audit.IDENTITY_LINKED,
                    user_id=user.id,
                    ip_address=ip_address,
                    provider=provider,
                )
            else:
                user = await self.credentials.create(
                    email,
                    None,
                    display_name,
                    external_provider=provider,
                    external_id=external_id,
                    email_verified=True,
                )
                created = True

        await self.lockout.check(user)
        await self.credentials.record_login(user)
        pair = await self._start_session(user, ip_address, user_agent)
        await self.db.commit()
        logger.info("external_login", user_id=user.id, provider=provider, created=created)
        return AuthResult(user=user, tokens=pair, created=created)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def refresh_tokens(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """
        Exchange a refresh token for a new pair, revoking the old token.

        Of two concurrent refreshes with the same token exactly one succeeds;
        the other sees the token already revoked and is treated as reuse.

        Raises:
            TokenExpired / InvalidToken: Signature, expiry or type check failed,
                or the token is unknown to the ledger.
            RefreshTokenReuse: The token was already rotated or revoked.
            AccountLocked: The account is currently locked.
        """
        payload = self.signer.verify(TokenKind.REFRESH, refresh_token)
        user = await self.credentials.find_by_id(subject_of(payload))
        if user is None:
            raise InvalidToken("User not found")
        await self.lockout.check(user)

        pair = self.signer.issue_pair(user.id, user.email, user.role)
        try:
            await self.ledger.rotate(
                user.id,
                refresh_token,
                pair.refresh_token,
                new_token_id=pair.refresh_jti,
                expires_at=pair.refresh_expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except RefreshTokenReuse:
            revoked = 0
            if self.settings.revoke_all_on_refresh_reuse:
                revoked = await self.ledger.revoke_all(user.id)
            await audit.log_security_event(
                self.db,
                audit.REFRESH_TOKEN_REUSE,
                user_id=user.id,
                ip_address=ip_address,
                jti=payload.get("jti"),
                sessions_revoked=revoked,
            )
            await self.db.commit()
            raise

        await self.db.commit()
        return AuthResult(user=user, tokens=pair)

    async def logout(self, access_token: str, refresh_token: str | None = None) -> None:
        """
        End one session.

        The access token is blacklisted for the rest of its lifetime. The
        refresh token, if given, is revoked only when it belongs to the same
        user. An expired but genuine access token still identifies the user,
        so the refresh token is revoked even after the access token lapsed.
        """
        try:
            payload = self.signer.verify(TokenKind.ACCESS, access_token)
        except TokenExpired:
            payload = self.signer.verify(TokenKind.ACCESS, access_token, verify_exp=False)
        user_id = subject_of(payload)
        await self.blacklist.add(access_token)
        if refresh_token:
            entry = await self.ledger.find(refresh_token)
            if entry is not None and entry.user_id == user_id:
                await self.ledger.revoke(refresh_token)
        await self.db.commit()
        logger.info("user_logged_out", user_id=user_id)

    async def logout_all(self, user: User, access_token: str | None = None) -> int:
        """Revoke every refresh token of the user. Returns the number revoked."""
        revoked = await self.ledger.revoke_all(user.id)
        if access_token:
            await self.blacklist.add(access_token)
        await audit.log_security_event(self.db, audit.SESSIONS_REVOKED, user_id=user.id, count=revoked)
        await self.db.commit()
        return revoked

    async def authenticate(self, access_token: str) -> User:
        """
        Resolve an access token to a live user.

        The user row is re-read on every call so role, lock and deletion
        changes apply immediately.
        """
        payload = self.signer.verify(TokenKind.ACCESS, access_token)
        if await self.blacklist.is_blacklisted(access_token):
            raise InvalidToken("Token has been revoked")
        user = await self.credentials.find_by_id(subject_of(payload))
        if user is None:
            raise InvalidToken("User not found")
        if user.locked_until is not None and user.locked_until > datetime.now(timezone.utc):
            raise AccountLocked
        return user

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
    ) -> int:
        """
        Change the password of a signed-in user and end all their sessions.

        Returns the number of refresh tokens revoked.
        """
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")
        validate_password_strength(new_password, "new_password")
        if new_password == current_password:
            raise ValidationFailed(detail={"new_password": "New password must differ from the current one"})

        revoked = await self.credentials.update_password(user, hash_password(new_password))
        await audit.log_security_event(
            self.db, audit.PASSWORD_CHANGED, user_id=user.id, ip_address=ip_address, sessions_revoked=revoked
        )
        await self.db.commit()
        await self._notify(NotificationKind.PASSWORD_CHANGED, user)
        return revoked

    async def request_password_reset(self, email: str) -> None:
        """Send a reset link if the account exists. Indistinguishable either way to the caller."""
        user = await self.credentials.find_by_email(email)
        if user is None:
            logger.info("password_reset_requested_unknown")
            return
        token = await self.one_time.issue(user.id, TokenPurpose.PASSWORD_RESET)
        await self.db.commit()
        await self._notify(NotificationKind.PASSWORD_RESET, user, token)

    async def reset_password(self, token: str, new_password: str, ip_address: str | None = None) -> User:
        """
        Set a new password with a reset token.

        Consuming the token, replacing the hash and revoking every session
        commit together.

        Raises:
            ValidationFailed: Weak password; the token is left unused.
            InvalidOrExpired: Unknown, expired or already-used token.
        """
        validate_password_strength(new_password, "new_password")
        user_id = await self.one_time.consume(token, TokenPurpose.PASSWORD_RESET)
        user = await self.credentials.find_by_id(user_id)
        if user is None:
            raise InvalidOrExpired("Invalid or expired reset token")

        revoked = await self.credentials.update_password(user, hash_password(new_password))
        await audit.log_security_event(
            self.db, audit.PASSWORD_RESET, user_id=user.id, ip_address=ip_address, sessions_revoked=revoked
        )
        await self.db.commit()
        await self._notify(NotificationKind.PASSWORD_CHANGED, user)
        return user

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> User:
        user_id = await self.one_time.consume(token, TokenPurpose.EMAIL_VERIFICATION)
        user = await self.credentials.mark_email_verified(user_id)
        if user is None:
            raise InvalidOrExpired("Invalid or expired verification token")
        await self.db.commit()
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user: User) -> None:
        """Issue a fresh verification token, invalidating the outstanding one."""
        if user.email_verified:
            raise ValidationFailed("Email is already verified")
        token = await self.one_time.issue(user.id, TokenPurpose.EMAIL_VERIFICATION)
        await self.db.commit()
        await self._notify(NotificationKind.VERIFY_EMAIL, user, token)
