"""
Single-use, time-boxed tokens for password reset and email verification.

The raw token goes to the user; only its sha256 digest is stored. Issuing a
token deletes every earlier token of the same purpose for that user, so at
most one request is outstanding. Consumption is a conditional write whose
row count decides whether this caller was first.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, select, update

from warden.auth.errors import InvalidOrExpired
from warden.auth.tokens import token_digest
from warden.db.models import EmailVerificationToken, PasswordResetToken

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class OneTimeTokenLedger:
    """Issue and consume password-reset / email-verification tokens."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        reset_ttl: timedelta = timedelta(minutes=60),
        verification_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.db = db
        self._ttl = {
            TokenPurpose.PASSWORD_RESET: reset_ttl,
            TokenPurpose.EMAIL_VERIFICATION: verification_ttl,
        }

    async def issue(self, user_id: int, purpose: TokenPurpose) -> str:
        """
        Create a token for ``user_id``, invalidating any outstanding one.

        Returns the raw token to deliver to the user.
        """
        model = _model_for(purpose)
        await self.db.execute(delete(model).where(model.user_id == user_id))

        raw_token = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        self.db.add(
            model(
                user_id=user_id,
                token_hash=token_digest(raw_token),
                created_at=now,
                expires_at=now + self._ttl[purpose],
            )
        )
        await self.db.flush()
        logger.info("one_time_token_issued", user_id=user_id, purpose=purpose.value)
        return raw_token

    async def consume(self, raw_token: str, purpose: TokenPurpose) -> int:
        """
        Validate and consume a token. Returns the owning user id.

        Reset tokens are marked used; verification tokens are deleted.

        Raises:
            InvalidOrExpired: Unknown, expired, already used, or lost a race
                with a concurrent consumer.
        """
        digest = token_digest(raw_token)
        now = datetime.now(timezone.utc)

        if purpose is TokenPurpose.PASSWORD_RESET:
            result = await self.db.execute(
                select(PasswordResetToken.id, PasswordResetToken.user_id)
                .where(PasswordResetToken.token_hash == digest)
                .where(PasswordResetToken.used_at == None)  # noqa: E711
                .where(PasswordResetToken.expires_at > now)
            )
            row = result.one_or_none()
            if row is None:
                raise InvalidOrExpired("Invalid or expired reset token")
            claimed = await self.db.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == row.id)
                .where(PasswordResetToken.used_at == None)  # noqa: E711
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
        else:
            result = await self.db.execute(
                select(EmailVerificationToken.id, EmailVerificationToken.user_id)
                .where(EmailVerificationToken.token_hash == digest)
                .where(EmailVerificationToken.expires_at > now)
            )
            row = result.one_or_none()
            if row is None:
                raise InvalidOrExpired("Invalid or expired verification token")
            claimed = await self.db.execute(
                delete(EmailVerificationToken)
                .where(EmailVerificationToken.id == row.id)
                .execution_options(synchronize_session=False)
            )

        if claimed.rowcount != 1:  # type: ignore[attr-defined]
            raise InvalidOrExpired
        logger.info("one_time_token_consumed", user_id=row.user_id, purpose=purpose.value)
        return int(row.user_id)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired tokens of both purposes. Returns count deleted."""
        now = now or datetime.now(timezone.utc)
        total = 0
        for model in (PasswordResetToken, EmailVerificationToken):
            result = await self.db.execute(delete(model).where(model.expires_at <= now))
            total += result.rowcount  # type: ignore[attr-defined]
        return total


def _model_for(purpose: TokenPurpose) -> type[PasswordResetToken] | type[EmailVerificationToken]:
    if purpose is TokenPurpose.PASSWORD_RESET:
        return PasswordResetToken
    return EmailVerificationToken
