"""
Account lockout.

Failed password attempts are counted per account inside a rolling window.
Reaching the threshold locks the account until ``now + duration``. The lock
lives on the user row and is authoritative; counters only decide *when* to
lock. An expired lock is released lazily by the next ``check``.

Counting is pluggable:

- ``StoreAttemptCounter`` counts failed ``login_attempts`` rows for the
  email since the later of the window start and ``users.failures_reset_at``.
- ``CachedAttemptCounter`` keeps one sorted-set member per failure in Redis,
  scored by time, and trims it to the same rolling window and reset floor as
  the store. It falls back to the store count when Redis errors.

Either way every attempt is appended to ``login_attempts``.
"""

from __future__ import annotations

import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError
from sqlalchemy import func, select

from warden.auth import audit
from warden.auth.credentials import CredentialStore
from warden.auth.errors import AccountLocked
from warden.db.models import LoginAttempt, User

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

_KEY_PREFIX = "login_attempts:"


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    failed_attempts: int = 0
    locked_until: datetime | None = None


# ---------------------------------------------------------------------------
# Attempt counters
# ---------------------------------------------------------------------------


class AttemptCounter(ABC):
    """Failed-login counter for one account within a rolling window."""

    def __init__(self, db: AsyncSession, window: timedelta) -> None:
        self.db = db
        self.window = window

    async def record(self, email: str, ip_address: str | None, *, success: bool) -> None:
        """Append an attempt to the audit trail."""
        self.db.add(
            LoginAttempt(
                email=email.strip().lower(),
                ip_address=ip_address,
                success=success,
                attempted_at=datetime.now(timezone.utc),
            )
        )
        await self.db.flush()

    @abstractmethod
    async def increment(self, user: User) -> int:
        """Count a failure that was just recorded. Returns failures in the window."""
        ...

    @abstractmethod
    async def reset(self, user: User) -> None: ...


class StoreAttemptCounter(AttemptCounter):
    """Counts failures from ``login_attempts`` rows."""

    async def count(self, user: User) -> int:
        now = datetime.now(timezone.utc)
        since = now - self.window
        if user.failures_reset_at is not None and user.failures_reset_at > since:
            since = user.failures_reset_at
        result = await self.db.execute(
            select(func.count(LoginAttempt.id))
            .where(LoginAttempt.email == user.email)
            .where(LoginAttempt.success == False)  # noqa: E712
            .where(LoginAttempt.attempted_at > since)
        )
        return int(result.scalar_one())

    async def increment(self, user: User) -> int:
        count = await self.count(user)
        user.failed_login_attempts = count
        await self.db.flush()
        return count

    async def reset(self, user: User) -> None:
        user.failures_reset_at = datetime.now(timezone.utc)
        user.failed_login_attempts = 0
        await self.db.flush()


class CachedAttemptCounter(AttemptCounter):
    """Redis counter with the store as fallback and durable reset point."""

    def __init__(self, db: AsyncSession, window: timedelta, redis: Redis) -> None:
        super().__init__(db, window)
        self.redis = redis
        self.store = StoreAttemptCounter(db, window)

    async def increment(self, user: User) -> int:
        """Add the failure to a sorted set scored by time and count what is left inside the window."""
        key = f"{_KEY_PREFIX}{user.id}"
        now = datetime.now(timezone.utc)
        since = now - self.window
        if user.failures_reset_at is not None and user.failures_reset_at > since:
            since = user.failures_reset_at
        try:
            pipe = self.redis.pipeline()
            pipe.zadd(key, {uuid.uuid4().hex: now.timestamp()})
            pipe.zremrangebyscore(key, "-inf", since.timestamp())
            pipe.zcard(key)
            pipe.expire(key, math.ceil(self.window.total_seconds()))
            results = await pipe.execute()
        except RedisError:
            logger.warning("attempt_counter_cache_failed", user_id=user.id, exc_info=True)
            return await self.store.increment(user)
        count = int(results[2])
        user.failed_login_attempts = count
        await self.db.flush()
        return count

    async def reset(self, user: User) -> None:
        await self.store.reset(user)
        try:
            await self.redis.delete(f"{_KEY_PREFIX}{user.id}")
        except RedisError:
            logger.warning("attempt_counter_cache_failed", user_id=user.id, exc_info=True)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class LockoutPolicy:
    """Unlocked -> Locked(until) -> Unlocked, driven by failed attempts."""

    def __init__(
        self,
        counter: AttemptCounter,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(minutes=30),
    ) -> None:
        self.counter = counter
        self.threshold = threshold
        self.duration = duration

    @property
    def db(self) -> AsyncSession:
        return self.counter.db

    async def check(self, user: User) -> LockStatus:
        """
        Gate a login attempt. Call before any password hashing.

        Raises:
            AccountLocked: The lock has not expired yet.
        """
        if not user.is_locked and user.locked_until is None:
            return LockStatus(locked=False, failed_attempts=user.failed_login_attempts or 0)

        now = datetime.now(timezone.utc)
        if user.locked_until is not None and user.locked_until > now:
            retry_after = math.ceil((user.locked_until - now).total_seconds())
            raise AccountLocked(retry_after=retry_after)

        await CredentialStore(self.db).update_lock_state(user, locked_until=None, failed_attempts=0)
        await self.counter.reset(user)
        logger.info("account_unlocked", user_id=user.id)
        return LockStatus(locked=False)

    async def register_failure(self, user: User, ip_address: str | None = None) -> LockStatus:
        """Record a wrong password. Locks the account once the threshold is reached."""
        await self.counter.record(user.email, ip_address, success=False)
        count = await self.counter.increment(user)
        if count < self.threshold:
            logger.info("login_failed", user_id=user.id, failed_attempts=count)
            return LockStatus(locked=False, failed_attempts=count)

        locked_until = datetime.now(timezone.utc) + self.duration
        await CredentialStore(self.db).update_lock_state(user, locked_until=locked_until, failed_attempts=count)
        await audit.log_security_event(
            self.db,
            audit.ACCOUNT_LOCKED,
            user_id=user.id,
            ip_address=ip_address,
            failed_attempts=count,
            locked_until=locked_until.isoformat(),
        )
        return LockStatus(locked=True, failed_attempts=count, locked_until=locked_until)

    async def register_success(self, user: User, ip_address: str | None = None) -> None:
        await self.counter.record(user.email, ip_address, success=True)
        await self.counter.reset(user)
