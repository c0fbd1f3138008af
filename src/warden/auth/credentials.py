"""
Credential store: user records, password hashes and lock state.

Every lookup excludes soft-deleted users and compares email
case-insensitively. Emails are stored lowercased and unique.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from warden.auth.errors import DuplicateEmail, ValidationFailed
from warden.auth.ledger import RefreshTokenLedger
from warden.db.models import Role, User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore:
    """Repository for ``User`` rows, bound to one session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_by_email(self, email: str) -> User | None:
        """Fetch a live user by email (case-insensitive)."""
        result = await self.db.execute(
            select(User)
            .where(func.lower(User.email) == normalize_email(email))
            .where(User.deleted_at == None)  # noqa: E711
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, user_id: int) -> User | None:
        """Fetch a live user by ID. Always re-reads the row."""
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .where(User.deleted_at == None)  # noqa: E711
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_external_id(self, provider: str, external_id: str) -> User | None:
        """Fetch a live user by linked external identity."""
        result = await self.db.execute(
            select(User)
            .where(User.external_provider == provider)
            .where(User.external_id == external_id)
            .where(User.deleted_at == None)  # noqa: E711
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_users(self, limit: int = 100, offset: int = 0) -> list[User]:
        result = await self.db.execute(
            select(User).where(User.deleted_at == None).order_by(User.id).limit(limit).offset(offset)  # noqa: E711
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        email: str,
        password_hash: str | None,
        display_name: str | None = None,
        role: Role = Role.STANDARD,
        *,
        external_provider: str | None = None,
        external_id: str | None = None,
        email_verified: bool = False,
    ) -> User:
        """
        Insert a new user.

        Raises:
            DuplicateEmail: The email unique constraint rejected the insert.
            ValidationFailed: Neither a password hash nor an external identity was given.
        """
        if password_hash is None and external_id is None:
            raise ValidationFailed(detail={"password": "A password or linked identity is required"})

        now = datetime.now(timezone.utc)
        user = User(
            email=normalize_email(email),
            password_hash=password_hash,
            display_name=display_name,
            role=role.value,
            email_verified=email_verified,
            is_locked=False,
            failed_login_attempts=0,
            login_count=0,
            external_provider=external_provider,
            external_id=external_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateEmail from e
        logger.info("user_created", user_id=user.id, federated=password_hash is None)
        return user

    async def update_password(self, user: User, password_hash: str) -> int:
        """
        Replace the password hash and revoke every active refresh token.

        Both writes belong to the caller's transaction. Returns the number of
        sessions revoked.
        """
        user.password_hash = password_hash
        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        revoked = await RefreshTokenLedger(self.db).revoke_all(user.id)
        logger.info("password_updated", user_id=user.id, sessions_revoked=revoked)
        return revoked

    async def update_lock_state(
        self,
        user: User,
        *,
        locked_until: datetime | None,
        failed_attempts: int,
    ) -> None:
        user.is_locked = locked_until is not None
        user.locked_until = locked_until
        user.failed_login_attempts = failed_attempts
        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

    async def record_login(self, user: User) -> None:
        """Stamp a successful login and clear failure state."""
        user.last_login = datetime.now(timezone.utc)
        user.login_count = (user.login_count or 0) + 1
        user.failed_login_attempts = 0
        user.is_locked = False
        user.locked_until = None
        await self.db.flush()

    async def rehash_password(self, user: User, password_hash: str) -> None:
        """Swap in a hash with current parameters. Sessions are not touched."""
        user.password_hash = password_hash
        await self.db.flush()
        logger.info("password_rehashed", user_id=user.id)

    async def mark_email_verified(self, user_id: int) -> User | None:
        user = await self.find_by_id(user_id)
        if user is None:
            return None
        user.email_verified = True
        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return user

    async def link_external_identity(self, user: User, provider: str, external_id: str) -> None:
        """Attach an external identity. The provider has vouched for the email."""
        user.external_provider = provider
        user.external_id = external_id
        user.email_verified = True
        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

    async def update_role(self, user: User, role: Role) -> None:
        user.role = role.value
        user.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

    async def soft_delete(self, user: User) -> int:
        """Hide the user from every lookup and end all sessions. Returns sessions revoked."""
        now = datetime.now(timezone.utc)
        user.deleted_at = now
        user.updated_at = now
        await self.db.flush()
        return await RefreshTokenLedger(self.db).revoke_all(user.id)
