"""Security audit trail: a structlog warning plus a ``security_events`` row."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from warden.db.models import SecurityEvent

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger("warden.security")

REFRESH_TOKEN_REUSE = "refresh_token_reuse"
ACCOUNT_LOCKED = "account_locked"
PASSWORD_CHANGED = "password_changed"
PASSWORD_RESET = "password_reset"
SESSIONS_REVOKED = "sessions_revoked"
IDENTITY_LINKED = "identity_linked"
ROLE_CHANGED = "role_changed"
ACCOUNT_DELETED = "account_deleted"


async def log_security_event(
    db: AsyncSession,
    event: str,
    user_id: int | None = None,
    ip_address: str | None = None,
    **detail: Any,  # noqa: ANN401
) -> SecurityEvent:
    """Record a security-relevant event. Flushed with the caller's transaction."""
    logger.warning("security_event", security_event=event, user_id=user_id, ip=ip_address, **detail)
    entry = SecurityEvent(
        user_id=user_id,
        event=event,
        detail=json.dumps(detail, default=str) if detail else None,
        ip_address=ip_address,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()
    return entry
