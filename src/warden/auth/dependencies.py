"""
FastAPI dependencies for the auth core.

Cache-backed or store-backed blacklist and attempt counter are chosen per
request from whether Redis was configured at startup.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from datetime import timedelta
from functools import lru_cache
from typing import Any

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.blacklist import Blacklist, CachedBlacklist, StoreBlacklist
from warden.auth.errors import Forbidden, InvalidToken
from warden.auth.lockout import AttemptCounter, CachedAttemptCounter, StoreAttemptCounter
from warden.auth.service import AuthService
from warden.auth.tokens import TokenSigner
from warden.config import get_settings
from warden.database import get_session
from warden.db.models import Role, User
from warden.email.service import NotificationSink, get_email_service
from warden.redis_client import get_redis

_bearer = HTTPBearer(auto_error=False)


@lru_cache
def get_signer() -> TokenSigner:
    return TokenSigner(get_settings().token_config())


def get_blacklist(db: AsyncSession = Depends(get_session)) -> Blacklist:
    store = StoreBlacklist(db)
    redis = get_redis()
    return CachedBlacklist(redis, store) if redis is not None else store


def get_attempt_counter(db: AsyncSession = Depends(get_session)) -> AttemptCounter:
    window = timedelta(minutes=get_settings().account_lockout_window_minutes)
    redis = get_redis()
    if redis is not None:
        return CachedAttemptCounter(db, window, redis)
    return StoreAttemptCounter(db, window)


def get_notifier() -> NotificationSink:
    return get_email_service(redis=get_redis())


def get_auth_service(
    db: AsyncSession = Depends(get_session),
    signer: TokenSigner = Depends(get_signer),
    blacklist: Blacklist = Depends(get_blacklist),
    counter: AttemptCounter = Depends(get_attempt_counter),
    notifier: NotificationSink = Depends(get_notifier),
) -> AuthService:
    return AuthService(db, signer, blacklist, counter, notifier, get_settings())


def get_access_token(credentials: HTTPAuthorizationCredentials | None = Security(_bearer)) -> str:
    """Raw bearer token from the Authorization header."""
    if credentials is None or not credentials.credentials:
        raise InvalidToken("Missing bearer token")
    return credentials.credentials


async def get_current_user(
    token: str = Depends(get_access_token),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """
    Verify the access token and return the live user behind it.

    Blacklisted tokens, deleted users and locked accounts are rejected.
    """
    return await service.authenticate(token)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def require_role(*roles: Role) -> Callable[..., Coroutine[Any, Any, User]]:
    """Dependency factory: the current user must hold one of ``roles``."""
    allowed = {role.value for role in roles}

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise Forbidden
        return user

    return _check


require_admin = require_role(Role.ADMIN)
