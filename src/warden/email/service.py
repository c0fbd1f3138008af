"""
Account notifications over email.

``NotificationSink`` is what the auth core depends on. ``EmailService``
implements it: it turns a notification kind and token into a link, renders
the matching template and hands it to a provider (SMTP, or console for
development). Delivery problems are logged and reported as ``False``; they
never propagate into the auth flow.
"""

from __future__ import annotations

import hashlib
import ssl
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import TYPE_CHECKING

import aiosmtplib
import structlog

from warden.config import get_settings
from warden.email.templates import password_changed, password_reset, verify_email

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from warden.config import Settings

logger = structlog.get_logger()


class NotificationKind(str, Enum):
    VERIFY_EMAIL = "verify_email"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"


class NotificationSink(ABC):
    """Outbound channel for account notifications."""

    @abstractmethod
    async def send(
        self,
        kind: NotificationKind,
        recipient: str,
        token: str | None = None,
        *,
        display_name: str | None = None,
    ) -> bool:
        """Deliver a notification. Returns True on success."""
        ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class BaseEmailProvider(ABC):
    """Abstract base class for email delivery providers."""

    @abstractmethod
    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email. Returns True on success."""
        ...


class SMTPProvider(BaseEmailProvider):
    """Send emails via SMTP using aiosmtplib."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.from_name = from_name
        self.use_tls = use_tls

    def build_message(self, to_email: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        msg = self.build_message(to_email, subject, html_body, text_body)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
                tls_context=ssl.create_default_context() if self.use_tls else None,
            )
        except (aiosmtplib.SMTPException, OSError):
            logger.exception("email_send_failed", to=to_email, provider="smtp")
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider="smtp")
        return True


class ConsoleProvider(BaseEmailProvider):
    """Write emails to the log instead of sending them. Development only."""

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        logger.info("email_console", to=to_email, subject=subject, body=text_body)
        return True


def create_provider(settings: Settings | None = None) -> BaseEmailProvider:
    """Create email provider based on configuration."""
    settings = settings or get_settings()
    provider_name = settings.email_provider.lower()

    if provider_name == "smtp":
        return SMTPProvider(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            use_tls=settings.smtp_use_tls,
        )
    if provider_name == "console":
        return ConsoleProvider()
    msg = f"Unsupported email provider: {provider_name}"
    raise ValueError(msg)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class EmailService(NotificationSink):
    """
    Notification sink backed by an email provider.

    Sends to any one address are capped per hour when Redis is available.
    """

    RATE_LIMIT_MAX = 5
    RATE_LIMIT_WINDOW = 3600

    def __init__(
        self,
        provider: BaseEmailProvider | None = None,
        redis: Redis | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider or create_provider(self.settings)
        self._redis = redis

    async def _check_rate_limit(self, email: str) -> bool:
        """Check if we can send another email to this address."""
        if self._redis is None:
            return True
        key = f"email_rate:{hashlib.sha256(email.lower().encode()).hexdigest()}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, self.RATE_LIMIT_WINDOW)
        return count <= self.RATE_LIMIT_MAX

    def link(self, path: str, token: str) -> str:
        return f"{self.settings.frontend_base_url.rstrip('/')}/{path}?token={token}"

    def render(
        self,
        kind: NotificationKind,
        token: str | None,
        display_name: str | None = None,
    ) -> tuple[str, str, str]:
        """
        Render the template for a notification kind.

        Raises:
            ValueError: The kind needs a token and none was given.
        """
        if kind is NotificationKind.PASSWORD_CHANGED:
            return password_changed(display_name)
        if token is None:
            msg = f"Notification {kind.value} requires a token"
            raise ValueError(msg)
        if kind is NotificationKind.VERIFY_EMAIL:
            return verify_email(
                display_name,
                self.link("verify-email", token),
                self.settings.email_verification_token_ttl_hours,
            )
        return password_reset(
            self.link("reset-password", token),
            self.settings.password_reset_token_ttl_minutes,
        )

    async def send(
        self,
        kind: NotificationKind,
        recipient: str,
        token: str | None = None,
        *,
        display_name: str | None = None,
    ) -> bool:
        subject, html_body, text_body = self.render(kind, token, display_name)
        if not await self._check_rate_limit(recipient):
            logger.warning("email_rate_limited", to=recipient, kind=kind.value)
            return False
        return await self.provider.send(recipient, subject, html_body, text_body)


# Module-level singleton
_email_service: EmailService | None = None


def get_email_service(redis: Redis | None = None) -> EmailService:
    """Get or create the email service singleton."""
    global _email_service  # noqa: PLW0603
    if _email_service is None:
        _email_service = EmailService(redis=redis)
    return _email_service


def reset_email_service() -> None:
    """Reset the email service singleton (for testing)."""
    global _email_service  # noqa: PLW0603
    _email_service = None
