"""User administration business logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from warden.auth import audit
from warden.auth.credentials import CredentialStore
from warden.auth.errors import Forbidden, NotFound

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from warden.db.models import Role, User

logger = structlog.get_logger()


async def get_user(db: AsyncSession, user_id: int) -> User:
    """
    Fetch a live user.

    Raises:
        NotFound: No such user, or the user was deleted.
    """
    user = await CredentialStore(db).find_by_id(user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def list_users(db: AsyncSession, limit: int = 50, offset: int = 0) -> list[User]:
    return await CredentialStore(db).list_users(limit=limit, offset=offset)


async def update_role(db: AsyncSession, actor: User, user_id: int, role: Role) -> User:
    """Change a user's role. Admins cannot change their own."""
    if actor.id == user_id:
        raise Forbidden("Admins cannot change their own role")
    user = await get_user(db, user_id)
    previous = user.role
    await CredentialStore(db).update_role(user, role)
    await audit.log_security_event(
        db, audit.ROLE_CHANGED, user_id=user.id, actor_id=actor.id, previous=previous, role=role.value
    )
    return user


async def delete_user(db: AsyncSession, actor: User, user_id: int) -> int:
    """
    Soft-delete a user and revoke their sessions.

    Returns the number of refresh tokens revoked. Outstanding access tokens
    stop working immediately because every request re-reads the user.
    """
    if actor.id == user_id:
        raise Forbidden("Admins cannot delete their own account")
    user = await get_user(db, user_id)
    revoked = await CredentialStore(db).soft_delete(user)
    await audit.log_security_event(
        db, audit.ACCOUNT_DELETED, user_id=user.id, actor_id=actor.id, sessions_revoked=revoked
    )
    logger.info("user_deleted", user_id=user.id, actor_id=actor.id)
    return revoked
