"""
Pytest fixtures for test database, client, clock, and caller tokens.

Tables are created and dropped around every test. The database defaults to
a SQLite file through aiosqlite; set TEST_DATABASE_URL to run the same
suite against PostgreSQL.
"""

import os

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///./test_venue_checkins.db")

# Settings are cached on first import, so configure them before the app loads
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("REDIS_ENABLED", "false")

from datetime import timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from checkin_engine.main import app
from checkin_engine.core.clock import get_clock, utc_now
from checkin_engine.core.security import create_access_token
from checkin_engine.db.base import Base
from checkin_engine.db.session import configure_sqlite_locking, get_db
from checkin_engine.models import Reward, UserReward, Venue

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
if TEST_DATABASE_URL.startswith("sqlite"):
    configure_sqlite_locking(test_engine)
TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start=None):
        self.now = start or utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield session, then drop tables for isolation."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session):
    """Independent sessions, for tests that race two requests against each other."""
    return TestSessionLocal


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, clock: FakeClock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB and clock dependencies."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _persist(db_session: AsyncSession, obj):
    db_session.add(obj)
    await db_session.commit()
    await db_session.refresh(obj)
    # Detached copies stay readable after a service rolls the session back
    db_session.expunge(obj)
    # The refresh opened a transaction; end it so other sessions can write
    await db_session.commit()
    return obj


@pytest_asyncio.fixture
async def venue(db_session: AsyncSession) -> Venue:
    return await _persist(db_session, Venue(slug="the-tap-room", name="The Tap Room"))


@pytest_asyncio.fixture
async def closed_venue(db_session: AsyncSession) -> Venue:
    return await _persist(db_session, Venue(slug="gone-bar", name="Gone Bar", is_active=False))


@pytest_asyncio.fixture
async def reward(db_session: AsyncSession, venue: Venue) -> Reward:
    """Free drink after three check-ins."""
    return await _persist(
        db_session,
        Reward(venue_id=venue.id, name="Free Drink", checkins_required=3),
    )


@pytest_asyncio.fixture
async def single_visit_reward(db_session: AsyncSession, venue: Venue) -> Reward:
    return await _persist(
        db_session,
        Reward(venue_id=venue.id, name="Welcome Shot", checkins_required=1),
    )


def token_headers(subject: str, anonymous: bool = False) -> dict:
    token = create_access_token(data={"sub": subject, "is_anonymous": anonymous})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    """Build bearer headers for any caller id."""
    return token_headers


@pytest.fixture
def user_headers() -> dict:
    return token_headers("user-1")


@pytest.fixture
def anonymous_headers() -> dict:
    return token_headers("anon-1", anonymous=True)


@pytest.fixture
def load_user_reward(db_session: AsyncSession):
    """Fresh read of a ledger; services update rows with Core statements."""

    async def _load(user_id: str, reward_id: str):
        result = await db_session.execute(
            select(UserReward)
            .where(UserReward.user_id == user_id, UserReward.reward_id == reward_id)
            .execution_options(populate_existing=True)
        )
        ledger = result.scalar_one_or_none()
        await db_session.commit()
        return ledger

    return _load
