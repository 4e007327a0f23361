"""API test configuration."""

import os
import uuid
from unittest.mock import AsyncMock, MagicMock

from webhook_payloads import WEBHOOK_SECRET

os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["PUBLIC_URL"] = "https://app.example.com"
os.environ["ENVIRONMENT"] = "test"
os.environ["SKIP_MIGRATION_CHECK"] = "true"

import pytest  # noqa: E402
from catracker.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from api.dependencies import get_current_user, get_db  # noqa: E402
from api.main import create_app  # noqa: E402
from catracker.models import Base  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402


class FakeUser:
    """Minimal stand-in for the User model."""

    id = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
    email = "member@test.local"
    first_name = "Test"
    last_name = "Member"
    is_active = True


def _fake_user():
    return FakeUser()


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def mock_db():
    """Creates a mock AsyncSession with common patterns pre-configured."""
    session = AsyncMock()
    # AsyncSession.add() is synchronous; use MagicMock to avoid un-awaited coroutine warnings.
    session.add = MagicMock()
    # Default: execute returns empty result set
    empty_result = MagicMock()
    empty_result.scalars.return_value.all.return_value = []
    empty_result.scalars.return_value.first.return_value = None
    empty_result.scalar.return_value = 0
    empty_result.all.return_value = []
    empty_result.rowcount = 0
    session.execute.return_value = empty_result
    # Default: get returns None
    session.get.return_value = None
    return session


@pytest.fixture
async def client(app, mock_db):
    async def _override_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_current_user] = _fake_user
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(mock_db):
    """Client with NO auth override -- tests that endpoints require auth."""
    a = create_app()

    async def _override_db():
        yield mock_db

    a.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def sqlite_client(app, session_factory):
    """Client backed by a real (in-memory SQLite) database and real auth."""

    async def _override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
