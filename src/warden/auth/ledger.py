"""
Refresh token ledger.

Every issued refresh token is recorded by the sha256 digest of its value. A
token is *active* while it is unrevoked and unexpired. Revocation is always a
conditional ``UPDATE ... WHERE is_revoked = false`` so that concurrent callers
racing on the same token have exactly one winner: the row count decides.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, select, update

from warden.auth.errors import InvalidToken, RefreshTokenReuse
from warden.auth.tokens import token_digest
from warden.db.models import RefreshToken

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


class RefreshTokenLedger:
    """Persistent record of refresh tokens, bound to one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def store(
        self,
        user_id: int,
        token: str,
        ttl: timedelta | None = None,
        *,
        token_id: str | None = None,
        expires_at: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshToken:
        """Record a newly issued refresh token. Either ``ttl`` or ``expires_at`` is required."""
        now = datetime.now(timezone.utc)
        if expires_at is None:
            if ttl is None:
                msg = "store() needs ttl or expires_at"
                raise ValueError(msg)
            expires_at = now + ttl
        entry = RefreshToken(
            user_id=user_id,
            token_hash=token_digest(token),
            issued_at=now,
            expires_at=expires_at,
            is_revoked=False,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if token_id is not None:
            entry.id = token_id
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def find(self, token: str) -> RefreshToken | None:
        """Look up a ledger entry by token value regardless of its state."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_hash == token_digest(token))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active(self, user_id: int, token: str) -> RefreshToken | None:
        """Return the entry if it belongs to ``user_id``, is unrevoked and unexpired."""
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_hash == token_digest(token))
            .where(RefreshToken.user_id == user_id)
            .where(RefreshToken.is_revoked == False)  # noqa: E712
            .where(RefreshToken.expires_at > now)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def revoke(self, token: str, *, replaced_by: str | None = None) -> bool:
        """Revoke one token. Returns True only if this call flipped it from active."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.token_hash == token_digest(token))
            .where(RefreshToken.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=datetime.now(timezone.utc), replaced_by=replaced_by)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def rotate(
        self,
        user_id: int,
        old_token: str,
        new_token: str,
        ttl: timedelta | None = None,
        *,
        new_token_id: str | None = None,
        expires_at: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshToken:
        """
        Revoke ``old_token`` and record ``new_token`` in the caller's transaction.

        The conditional revoke must match exactly one active row owned by
        ``user_id``; otherwise nothing is written and the rotation fails
        closed. The caller commits both halves together, or neither.

        Raises:
            RefreshTokenReuse: The old token exists but was already revoked.
            InvalidToken: The old token is unknown, expired, or not owned by ``user_id``.
        """
        old_hash = token_digest(old_token)
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == old_hash)
            .where(RefreshToken.user_id == user_id)
            .where(RefreshToken.is_revoked == False)  # noqa: E712
            .where(RefreshToken.expires_at > now)
            .values(is_revoked=True, revoked_at=now, replaced_by=new_token_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            existing = await self.find(old_token)
            if existing is not None and existing.user_id == user_id and existing.is_revoked:
                raise RefreshTokenReuse
            raise InvalidToken("Refresh token not found or expired")

        new_entry = await self.store(
            user_id,
            new_token,
            ttl,
            token_id=new_token_id,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("refresh_token_rotated", user_id=user_id, new_token_id=new_entry.id)
        return new_entry

    async def revoke_all(self, user_id: int, exclude_token_id: str | None = None) -> int:
        """Revoke every active refresh token for a user. Returns count revoked."""
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id)
            .where(RefreshToken.is_revoked == False)  # noqa: E712
        )
        if exclude_token_id:
            stmt = stmt.where(RefreshToken.id != exclude_token_id)
        stmt = stmt.values(is_revoked=True, revoked_at=datetime.now(timezone.utc)).execution_options(
            synchronize_session=False
        )
        result = await self.db.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, no-any-return]

    async def count_active(self, user_id: int) -> int:
        """Number of active refresh tokens (sessions) for a user."""
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(RefreshToken.id)
            .where(RefreshToken.user_id == user_id)
            .where(RefreshToken.is_revoked == False)  # noqa: E712
            .where(RefreshToken.expires_at > now)
        )
        return len(result.all())

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete entries past their expiry. Returns count deleted."""
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            delete(RefreshToken).where(RefreshToken.expires_at <= now).execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined, no-any-return]
