"""Pytest configuration and shared fixtures: SQLite database, app client, users, fake dispatcher."""

import os
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test DB before app imports so config/engine use it
_DB_PATH = os.path.join(tempfile.gettempdir(), f"deadman_test_{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-with-at-least-32-chars")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("RETRY_MAX_DELAY_SECONDS", "0")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("TELNYX_API_KEY", "")
os.environ.setdefault("ADMIN_EMAIL", "")

from deadman.core.auth import create_access_token
from deadman.db.base import Base
from deadman.db.session import async_session_maker, engine
from deadman.main import app
from deadman.models.enums import ContactMethod, Tier
from deadman.models.user import User

import deadman.models  # noqa: F401 - register all tables on Base.metadata
from helpers import FakeDispatcher

pytest_plugins = ["pytest_asyncio"]


@pytest_asyncio.fixture
async def db():
    """Fresh schema per test; the engine is disposed so no connection outlives the test's loop."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db):
    async with async_session_maker() as s:
        yield s


@pytest_asyncio.fixture
async def client(db):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def _create_user(user_id: str, email: str, tier: str = Tier.FREE.value) -> User:
    async with async_session_maker() as s:
        user = User(
            id=user_id,
            email=email,
            name=user_id.title(),
            contact_method=ContactMethod.EMAIL.value,
            tier=tier,
        )
        s.add(user)
        await s.commit()
        return user


@pytest_asyncio.fixture
async def test_user(db):
    return await _create_user("alice", "alice@example.com")


@pytest_asyncio.fixture
async def pro_user(db):
    return await _create_user("carol", "carol@example.com", tier=Tier.PRO.value)


@pytest_asyncio.fixture
async def other_user(db):
    return await _create_user("bob", "bob@example.com")


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token(test_user.id, test_user.email)}"}


@pytest.fixture
def other_auth_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(other_user.id, other_user.email)}"}


@pytest.fixture
def cron_headers():
    return {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def dispatcher():
    return FakeDispatcher()
