"""Shared test fixtures.

Every test gets its own SQLite file database with the schema created from
model metadata. Redis and the notification sink are mocked.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("WARDEN_JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
os.environ.setdefault("WARDEN_JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef")
os.environ.setdefault("WARDEN_EMAIL_PROVIDER", "console")
os.environ.setdefault("WARDEN_LOG_FORMAT", "console")
os.environ["WARDEN_REDIS_URL"] = ""

from warden.auth.blacklist import StoreBlacklist  # noqa: E402
from warden.auth.dependencies import get_notifier, get_signer  # noqa: E402
from warden.auth.lockout import StoreAttemptCounter  # noqa: E402
from warden.auth.password import hash_password  # noqa: E402
from warden.auth.service import AuthService  # noqa: E402
from warden.auth.tokens import TokenConfig, TokenSigner  # noqa: E402
from warden.config import Settings, get_settings  # noqa: E402
from warden.database import close_db, create_schema, get_session_factory, init_db  # noqa: E402
from warden.db.models import Role, User  # noqa: E402
from warden.email.service import NotificationSink  # noqa: E402

get_settings.cache_clear()
get_signer.cache_clear()

STRONG_PASSWORD = "Correct#Horse9"
OTHER_PASSWORD = "Battery$Staple7"


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def signer(settings: Settings) -> TokenSigner:
    return TokenSigner(settings.token_config())


@pytest.fixture
def short_signer() -> TokenSigner:
    """Signer with a one-second access TTL."""
    return TokenSigner(
        TokenConfig(
            access_secret="short-access",
            refresh_secret="short-refresh",
            access_ttl_seconds=1,
            refresh_ttl_seconds=2,
        )
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:  # noqa: ANN001
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'warden.db'}")
    await create_schema()
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def other_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A second, independent session on the same database."""
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def mock_notifier() -> AsyncMock:
    notifier = AsyncMock(spec=NotificationSink)
    notifier.send.return_value = True
    return notifier


@pytest.fixture
def make_service(
    signer: TokenSigner,
    mock_notifier: AsyncMock,
    settings: Settings,
) -> Callable[..., AuthService]:
    """Build an AuthService bound to a session, with store-backed capabilities."""

    def _make(session: AsyncSession, **overrides: object) -> AuthService:
        effective = settings.model_copy(update=overrides) if overrides else settings
        counter = StoreAttemptCounter(session, timedelta(minutes=effective.account_lockout_window_minutes))
        return AuthService(session, signer, StoreBlacklist(session), counter, mock_notifier, effective)

    return _make


@pytest.fixture
def auth_service(db_session: AsyncSession, make_service: Callable[..., AuthService]) -> AuthService:
    return make_service(db_session)


@pytest.fixture
def last_token(mock_notifier: AsyncMock) -> Callable[[], str]:
    """Token carried by the most recent notification."""

    def _last() -> str:
        args = mock_notifier.send.call_args.args
        return args[2]

    return _last


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession) -> Callable[..., object]:
    """Insert a user directly, bypassing registration."""

    async def _make(
        email: str = "alice@warden.io",
        password: str = STRONG_PASSWORD,
        role: Role = Role.STANDARD,
        *,
        email_verified: bool = True,
    ) -> User:
        from warden.auth.credentials import CredentialStore

        user = await CredentialStore(db_session).create(
            email, hash_password(password), role=role, email_verified=email_verified
        )
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(database: None, mock_notifier: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against a fresh app. Lifespan does not run; the database fixture stands in."""
    from warden.main import create_app

    app = create_app()
    app.dependency_overrides[get_notifier] = lambda: mock_notifier
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def register(client: AsyncClient, email: str = "alice@warden.io", password: str = STRONG_PASSWORD) -> dict:
    response = await client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
