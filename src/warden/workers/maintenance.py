"""arq maintenance worker: periodic purge of expired auth records.

Import path for arq CLI: arq warden.workers.maintenance.WorkerSettings

Expired refresh tokens, blacklist entries and one-time tokens carry no
information once past their expiry; login attempts and security events are
kept for a retention period.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog
from arq.connections import RedisSettings
from arq.cron import cron
from sqlalchemy import delete

from warden.auth.blacklist import StoreBlacklist
from warden.auth.ledger import RefreshTokenLedger
from warden.auth.one_time import OneTimeTokenLedger
from warden.config import get_settings
from warden.database import close_db, get_session_factory, init_db
from warden.db.models import LoginAttempt, SecurityEvent
from warden.middleware.logging import setup_logging

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def purge_expired_records(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    attempt_retention: timedelta = timedelta(days=30),
    event_retention: timedelta = timedelta(days=365),
) -> dict[str, int]:
    """Delete everything past its expiry or retention. Commits. Returns counts per table."""
    now = now or datetime.now(timezone.utc)
    counts = {
        "refresh_tokens": await RefreshTokenLedger(db).purge_expired(now),
        "token_blacklist": await StoreBlacklist(db).purge_expired(now),
        "one_time_tokens": await OneTimeTokenLedger(db).purge_expired(now),
    }
    result = await db.execute(delete(LoginAttempt).where(LoginAttempt.attempted_at < now - attempt_retention))
    counts["login_attempts"] = result.rowcount  # type: ignore[attr-defined]
    result = await db.execute(delete(SecurityEvent).where(SecurityEvent.created_at < now - event_retention))
    counts["security_events"] = result.rowcount  # type: ignore[attr-defined]
    await db.commit()
    return counts


async def startup(_ctx: dict[str, Any]) -> None:
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    logger.info("maintenance_worker_started")


async def shutdown(_ctx: dict[str, Any]) -> None:
    await close_db()
    logger.info("maintenance_worker_stopped")


async def purge_expired(_ctx: dict[str, Any]) -> dict[str, int]:
    """Scheduled arq task: hourly purge."""
    settings = get_settings()
    async with get_session_factory()() as db:
        counts = await purge_expired_records(
            db,
            attempt_retention=timedelta(days=settings.login_attempt_retention_days),
            event_retention=timedelta(days=settings.security_event_retention_days),
        )
    logger.info("expired_records_purged", **counts)
    return counts


class WorkerSettings:
    """arq worker settings for the maintenance worker."""

    functions = [purge_expired]
    cron_jobs = [cron(purge_expired, minute=7, run_at_startup=True)]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 1
    job_timeout = 600
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url or "redis://localhost:6379")
