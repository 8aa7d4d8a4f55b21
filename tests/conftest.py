"""
tests/conftest.py
Shared fixtures: a fresh SQLite database per test, the app wired to it,
an in-memory stand-in for the Redis deny-list, and seeded users.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused.db")
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    AvailableDate,
    Platform,
    RecordedSession,
    Task,
    User,
    UserRole,
)
from shared.utils.dates import format_time_slot
from shared.utils.security import hash_password, issue_access_token

TEST_PASSWORD = "s3cure-Passw0rd"


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed so concurrent sessions really contend for the database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    """Only the deny-list commands the API uses."""
    keys = set()
    redis = AsyncMock()
    redis.setex.side_effect = lambda key, ttl, value: keys.add(key)
    redis.exists.side_effect = lambda key: int(key in keys)
    return redis


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token = issue_access_token(user.id, user.role.value, user.email).token
    return {"Authorization": f"Bearer {token}"}


async def make_user(
    db: AsyncSession,
    role: UserRole = UserRole.STUDENT,
    balance: Decimal = Decimal("500.00"),
    email: Optional[str] = None,
    **fields,
) -> User:
    user = User(
        email=email or f"{uuid.uuid4().hex[:10]}@example.com",
        name=fields.pop("name", "Test User"),
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        balance=balance,
        **fields,
    )
    db.add(user)
    await db.commit()
    return user


async def make_slot(
    db: AsyncSession,
    days_ahead: int = 3,
    start_time: str = "10:00",
    end_time: str = "11:00",
) -> AvailableDate:
    slot = AvailableDate(
        date=date.today() + timedelta(days=days_ahead),
        start_time=start_time,
        end_time=end_time,
        time_slot=format_time_slot(start_time, end_time),
    )
    db.add(slot)
    await db.commit()
    return slot


async def reload(db: AsyncSession, obj):
    """Re-read a row another session changed."""
    await db.refresh(obj)
    return obj


# ── Seeded entities ───────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, name="Student One", email="student@example.com")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(
        db,
        role=UserRole.ADMIN,
        balance=Decimal("0.00"),
        name="Mentor Admin",
        email="admin@example.com",
        is_mentor=True,
    )


@pytest_asyncio.fixture
async def slot(db) -> AvailableDate:
    return await make_slot(db)


@pytest_asyncio.fixture
async def recorded_session(db) -> RecordedSession:
    session = RecordedSession(
        title="System Design Basics",
        description="Intro to scaling web services",
        video_link="https://videos.example.com/system-design",
        price=Decimal("100.00"),
    )
    db.add(session)
    await db.commit()
    return session


@pytest_asyncio.fixture
async def platform(db) -> Platform:
    platform = Platform(
        name="Algorithms & Data Structures",
        description="Learn fundamental algorithms and data structures",
        url="https://algorithms.example.com",
    )
    db.add(platform)
    await db.commit()
    return platform


@pytest_asyncio.fixture
async def task(db, platform) -> Task:
    task = Task(platform_id=platform.id, title="Binary Search", order=1)
    db.add(task)
    await db.commit()
    return task
