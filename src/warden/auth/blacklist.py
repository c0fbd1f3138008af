"""
Access-token blacklist.

Two implementations behind one interface, selected at startup:

- ``StoreBlacklist``: rows in ``token_blacklist``; always correct.
- ``CachedBlacklist``: Redis in front of a ``StoreBlacklist``. Writes go to
  both, reads try Redis first and fall back to the store on a miss or when
  Redis is unavailable. Redis is a latency optimisation only.

Entries live exactly as long as the token they shadow: the TTL is the
token's remaining lifetime, read from its own ``exp`` claim.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from warden.auth.tokens import TokenSigner, expiry_of, token_digest
from warden.db.models import TokenBlacklist

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

_KEY_PREFIX = "blacklist:"


def _remaining(token: str, now: datetime) -> tuple[datetime | None, int]:
    """Return (expiry, remaining seconds) of a token, from its unverified ``exp``."""
    payload = TokenSigner.decode_unsafe(token)
    expires_at = expiry_of(payload) if payload else None
    if expires_at is None:
        return None, 0
    return expires_at, math.ceil((expires_at - now).total_seconds())


class Blacklist(ABC):
    """Revoked access-token set."""

    @abstractmethod
    async def add(self, token: str) -> bool:
        """Blacklist a token for its remaining lifetime. Returns False if it had already expired."""
        ...

    @abstractmethod
    async def is_blacklisted(self, token: str) -> bool: ...

    @abstractmethod
    async def purge_expired(self, now: datetime | None = None) -> int:
        """Remove entries whose token has expired."""
        ...


class StoreBlacklist(Blacklist):
    """Durable blacklist in the relational store."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, token: str) -> bool:
        now = datetime.now(timezone.utc)
        expires_at, ttl = _remaining(token, now)
        if expires_at is None or ttl <= 0:
            return False
        return await self.add_digest(token_digest(token), expires_at, now)

    async def add_digest(self, digest: str, expires_at: datetime, now: datetime) -> bool:
        """Insert a digest; a concurrent insert of the same digest is a no-op."""
        insert = sqlite_insert if self.db.get_bind().dialect.name == "sqlite" else pg_insert
        stmt = (
            insert(TokenBlacklist)
            .values(token_hash=digest, expires_at=expires_at, created_at=now)
            .on_conflict_do_nothing(index_elements=["token_hash"])
        )
        await self.db.execute(stmt)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        return await self.contains_digest(token_digest(token))

    async def contains_digest(self, digest: str) -> bool:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(TokenBlacklist.token_hash)
            .where(TokenBlacklist.token_hash == digest)
            .where(TokenBlacklist.expires_at > now)
        )
        return result.scalar_one_or_none() is not None

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(delete(TokenBlacklist).where(TokenBlacklist.expires_at <= now))
        return result.rowcount  # type: ignore[attr-defined, no-any-return]


class CachedBlacklist(Blacklist):
    """Redis fast path over a durable ``StoreBlacklist``."""

    def __init__(self, redis: Redis, store: StoreBlacklist) -> None:
        self.redis = redis
        self.store = store

    async def add(self, token: str) -> bool:
        now = datetime.now(timezone.utc)
        expires_at, ttl = _remaining(token, now)
        if expires_at is None or ttl <= 0:
            return False
        digest = token_digest(token)
        await self.store.add_digest(digest, expires_at, now)
        try:
            await self.redis.set(f"{_KEY_PREFIX}{digest}", "1", ex=ttl)
        except RedisError:
            logger.warning("blacklist_cache_write_failed", exc_info=True)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        digest = token_digest(token)
        try:
            if await self.redis.exists(f"{_KEY_PREFIX}{digest}"):
                return True
        except RedisError:
            logger.warning("blacklist_cache_read_failed", exc_info=True)
        return await self.store.contains_digest(digest)

    async def purge_expired(self, now: datetime | None = None) -> int:
        # Redis expires its own keys.
        return await self.store.purge_expired(now)
