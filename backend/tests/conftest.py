import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key-minimum-32-characters")
os.environ["RESEND_API_KEY"] = ""  # Force dev mode: no real emails in tests

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
import app.models as _app_models  # noqa: F401
from app.models.enums import MembershipStatus
from app.models.membership import Membership
from app.models.user import User

# Use SQLite for tests (in-memory, one shared connection)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
TestSessionFactory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionFactory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db: AsyncSession):
    """Session factory to patch over app.services.scheduler.async_session.

    Depends on ``db`` so the schema exists; jobs open their own sessions.
    """
    return TestSessionFactory


@pytest_asyncio.fixture
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    # Reset rate limiter storage between tests to avoid 429 errors
    from app.utils.rate_limit import limiter
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"X-Internal-Key": os.environ["INTERNAL_API_KEY"]}


@pytest.fixture
def make_user(db: AsyncSession):
    async def _make_user(email: str | None = None, name: str | None = "Test User", **kwargs) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            name=name,
            **kwargs,
        )
        db.add(user)
        await db.flush()
        return user

    return _make_user


@pytest.fixture
def make_membership(db: AsyncSession):
    async def _make_membership(
        user: User,
        status: MembershipStatus = MembershipStatus.TRIAL,
        current_period_end: datetime | None = None,
        tier: str = "T1",
    ) -> Membership:
        membership = Membership(
            id=uuid.uuid4(),
            user_id=user.id,
            status=status,
            tier=tier,
            current_period_end=current_period_end or NOW + timedelta(days=14),
        )
        db.add(membership)
        await db.flush()
        return membership

    return _make_membership


@pytest_asyncio.fixture
async def referrer(make_user) -> User:
    return await make_user(email="referrer@test.com", name="Referrer", referral_slug="alice")


@pytest_asyncio.fixture
async def referred(make_user) -> User:
    return await make_user(email="referred@test.com", name="Referred")
