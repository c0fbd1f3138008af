"""Tests for failed-attempt counting and the lockout state machine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select, update

from warden.auth.errors import AccountLocked
from warden.auth.lockout import CachedAttemptCounter, LockoutPolicy, StoreAttemptCounter
from warden.db.models import LoginAttempt, SecurityEvent, User

WINDOW = timedelta(minutes=15)


def _policy(session, threshold=3):
    return LockoutPolicy(StoreAttemptCounter(session, WINDOW), threshold=threshold, duration=timedelta(minutes=30))


class TestStoreAttemptCounter:
    async def test_counts_failures_in_window(self, db_session, make_user):
        user = await make_user()
        counter = StoreAttemptCounter(db_session, WINDOW)
        for expected in (1, 2, 3):
            await counter.record(user.email, "10.0.0.1", success=False)
            assert await counter.increment(user) == expected
        assert user.failed_login_attempts == 3

    async def test_old_failures_fall_out_of_window(self, db_session, make_user):
        user = await make_user()
        counter = StoreAttemptCounter(db_session, WINDOW)
        await counter.record(user.email, None, success=False)
        await db_session.execute(
            update(LoginAttempt).values(attempted_at=datetime.now(timezone.utc) - timedelta(minutes=20))
        )
        await counter.record(user.email, None, success=False)
        assert await counter.increment(user) == 1

    async def test_reset_sets_floor(self, db_session, make_user):
        user = await make_user()
        counter = StoreAttemptCounter(db_session, WINDOW)
        await counter.record(user.email, None, success=False)
        await counter.increment(user)
        await counter.reset(user)
        assert user.failed_login_attempts == 0
        await counter.record(user.email, None, success=False)
        assert await counter.increment(user) == 1

    async def test_record_normalizes_email(self, db_session):
        counter = StoreAttemptCounter(db_session, WINDOW)
        await counter.record("  Alice@Warden.IO ", "10.0.0.1", success=True)
        row = (await db_session.execute(select(LoginAttempt))).scalar_one()
        assert row.email == "alice@warden.io"
        assert row.success is True


class SortedSetRedis:
    """In-memory stand-in for the sorted-set commands the cached counter pipelines."""

    def __init__(self):
        self.sets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}

    def seed(self, key, *moments):
        members = self.sets.setdefault(key, {})
        for i, moment in enumerate(moments):
            members[f"seed-{len(members)}-{i}"] = moment.timestamp()

    def pipeline(self):
        return _Pipeline(self)

    async def delete(self, key):
        self.sets.pop(key, None)


class _Pipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def zadd(self, key, mapping):
        self.ops.append(lambda: self.redis.sets.setdefault(key, {}).update(mapping) or len(mapping))

    def zremrangebyscore(self, key, low, high):
        def op():
            members = self.redis.sets.get(key, {})
            doomed = [m for m, score in members.items() if score <= float(high)]
            for member in doomed:
                del members[member]
            return len(doomed)

        self.ops.append(op)

    def zcard(self, key):
        self.ops.append(lambda: len(self.redis.sets.get(key, {})))

    def expire(self, key, seconds):
        self.ops.append(lambda: self.redis.ttls.__setitem__(key, seconds) or True)

    async def execute(self):
        return [op() for op in self.ops]


class TestCachedAttemptCounter:
    async def test_counts_failures_in_sorted_set(self, db_session, make_user):
        user = await make_user()
        redis = SortedSetRedis()
        counter = CachedAttemptCounter(db_session, WINDOW, redis)
        for expected in (1, 2, 3):
            await counter.record(user.email, None, success=False)
            assert await counter.increment(user) == expected
        assert user.failed_login_attempts == 3
        assert len(redis.sets[f"login_attempts:{user.id}"]) == 3
        assert redis.ttls[f"login_attempts:{user.id}"] == 900

    async def test_rolling_window_matches_store(self, db_session, make_user):
        user = await make_user()
        now = datetime.now(timezone.utc)
        history = [now - timedelta(minutes=17)] + [now - timedelta(minutes=3)] * 3

        # Same history in both backends: one failure outside the window, three inside.
        redis = SortedSetRedis()
        redis.seed(f"login_attempts:{user.id}", *history)
        for moment in history:
            db_session.add(LoginAttempt(email=user.email, success=False, attempted_at=moment))
        await db_session.flush()

        policy = LockoutPolicy(CachedAttemptCounter(db_session, WINDOW, redis), threshold=5)
        assert (await policy.register_failure(user)).failed_attempts == 4
        status = await policy.register_failure(user)

        assert status.locked is True
        assert status.failed_attempts == 5
        assert await StoreAttemptCounter(db_session, WINDOW).count(user) == 5

    async def test_reset_floor_trims_older_members(self, db_session, make_user):
        user = await make_user()
        redis = SortedSetRedis()
        redis.seed(f"login_attempts:{user.id}", datetime.now(timezone.utc) - timedelta(minutes=2))
        user.failures_reset_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await db_session.flush()

        counter = CachedAttemptCounter(db_session, WINDOW, redis)
        await counter.record(user.email, None, success=False)
        assert await counter.increment(user) == 1

    async def test_falls_back_to_store_on_redis_error(self, db_session, make_user):
        user = await make_user()
        redis = MagicMock()
        redis.pipeline.return_value.execute = AsyncMock(side_effect=RedisConnectionError("down"))
        counter = CachedAttemptCounter(db_session, WINDOW, redis)
        for _ in range(2):
            await counter.record(user.email, None, success=False)
        assert await counter.increment(user) == 2

    async def test_reset_clears_both(self, db_session, make_user):
        user = await make_user()
        redis = AsyncMock()
        counter = CachedAttemptCounter(db_session, WINDOW, redis)
        await counter.reset(user)
        redis.delete.assert_awaited_once_with(f"login_attempts:{user.id}")
        assert user.failures_reset_at is not None

    async def test_reset_survives_redis_error(self, db_session, make_user):
        user = await make_user()
        redis = AsyncMock()
        redis.delete.side_effect = RedisConnectionError("down")
        await CachedAttemptCounter(db_session, WINDOW, redis).reset(user)
        assert user.failed_login_attempts == 0


class TestLockoutPolicy:
    async def test_unlocked_user_passes(self, db_session, make_user):
        user = await make_user()
        status = await _policy(db_session).check(user)
        assert status.locked is False

    async def test_locks_at_threshold(self, db_session, make_user):
        user = await make_user()
        policy = _policy(db_session, threshold=3)
        assert (await policy.register_failure(user)).locked is False
        assert (await policy.register_failure(user)).locked is False
        status = await policy.register_failure(user, "10.0.0.9")
        assert status.locked is True
        assert status.failed_attempts == 3
        assert user.is_locked is True
        assert user.locked_until > datetime.now(timezone.utc) + timedelta(minutes=29)

        event = (await db_session.execute(select(SecurityEvent))).scalar_one()
        assert event.event == "account_locked"
        assert event.user_id == user.id
        assert event.ip_address == "10.0.0.9"

    async def test_locked_user_rejected_with_retry_after(self, db_session, make_user):
        user = await make_user()
        policy = _policy(db_session, threshold=1)
        await policy.register_failure(user)
        with pytest.raises(AccountLocked) as exc_info:
            await policy.check(user)
        assert 1700 < exc_info.value.retry_after <= 1800

    async def test_expired_lock_released_lazily(self, db_session, make_user):
        user = await make_user()
        policy = _policy(db_session, threshold=1)
        await policy.register_failure(user)
        user.locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        await db_session.flush()

        status = await policy.check(user)
        assert status.locked is False
        assert user.is_locked is False
        assert user.locked_until is None
        assert user.failed_login_attempts == 0

        # The failure that caused the lock no longer counts.
        assert (await policy.register_failure(user)).locked is True
        assert user.failed_login_attempts == 1

    async def test_success_resets_counter(self, db_session, make_user):
        user = await make_user()
        policy = _policy(db_session, threshold=3)
        await policy.register_failure(user)
        await policy.register_failure(user)
        await policy.register_success(user)
        assert (await policy.register_failure(user)).failed_attempts == 1

    async def test_every_attempt_is_recorded(self, db_session, make_user):
        user = await make_user()
        policy = _policy(db_session)
        await policy.register_failure(user, "10.0.0.1")
        await policy.register_success(user, "10.0.0.1")
        rows = (await db_session.execute(select(LoginAttempt).order_by(LoginAttempt.id))).scalars().all()
        assert [r.success for r in rows] == [False, True]

    async def test_lock_state_persists(self, db_session, other_session, make_user):
        user = await make_user()
        await _policy(db_session, threshold=1).register_failure(user)
        await db_session.commit()
        fresh = (await other_session.execute(select(User).where(User.id == user.id))).scalar_one()
        with pytest.raises(AccountLocked):
            await _policy(other_session).check(fresh)
