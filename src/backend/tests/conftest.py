"""Pytest configuration and fixtures for MeterHub tests."""

import os
import uuid
from typing import AsyncGenerator

# Configure before the application modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("DEVICE_MONITOR_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from meterhub.main import app
from meterhub.models.base import Base
# Import all models to ensure they're registered with Base.metadata
from meterhub.models import (
    User, UserRole, Device, DeviceRelay, DailyLoadProfile, LoadProfileEntry,
    Alarm, BillingProfile, MonthlyProfile,
)
from meterhub.core.deps import get_db
from meterhub.core.security import create_access_token, get_password_hash
from meterhub.services.device_service import DeviceService

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on a file-backed database, each with its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'meterhub.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def shared_device(file_session_factory) -> Device:
    """A meter with two relays registered on the file-backed database."""
    async with file_session_factory() as session:
        owner = await _create_user(session, "owner", UserRole.USER)
        service = DeviceService(session)
        await service.register_device(user_id=owner.id, device_id="shared_001", device_name="Shared Meter")
        return await service.configure_relays(
            owner.id, "shared_001", [{"id": 1, "name": "Pump"}, {"id": 2, "name": "Boiler"}]
        )


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database override."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _create_user(db_session: AsyncSession, username: str, role: UserRole) -> User:
    user = User(
        id=uuid.uuid4(),
        username=username,
        hashed_password=get_password_hash("TestPassword123!"),
        full_name=username.title(),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test operator."""
    return await _create_user(db_session, "operator", UserRole.USER)


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    """Create a second operator who owns nothing of test_user's."""
    return await _create_user(db_session, "neighbour", UserRole.USER)


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Bearer header for test_user."""
    return {"Authorization": f"Bearer {create_access_token(str(test_user.id))}"}


@pytest.fixture
def other_auth_headers(other_user: User) -> dict[str, str]:
    """Bearer header for other_user."""
    return {"Authorization": f"Bearer {create_access_token(str(other_user.id))}"}


@pytest_asyncio.fixture
async def test_device(db_session: AsyncSession, test_user: User) -> Device:
    """A registered meter with default thresholds (207V / 253V / 20A) and no relays."""
    return await DeviceService(db_session).register_device(
        user_id=test_user.id,
        device_id="device_001",
        device_name="Kitchen Meter",
        location="Kitchen",
    )


@pytest_asyncio.fixture
async def relay_device(db_session: AsyncSession, test_user: User, test_device: Device) -> Device:
    """test_device with relays 1-3 configured and a device report of two relays on pins 16, 17."""
    test_device.device_reported_count = 2
    test_device.device_reported_pins = [16, 17]
    await db_session.commit()

    return await DeviceService(db_session).configure_relays(
        test_user.id,
        test_device.device_id,
        [{"id": 1, "name": "Light"}, {"id": 2, "name": "Fan"}, {"id": 3, "name": "Heater"}],
    )


def make_reading(entry_no: int, offset_seconds: float = 0, **overrides) -> dict:
    """Device-format reading with nominal values."""
    reading = {
        "offsetSeconds": offset_seconds,
        "entryNo": entry_no,
        "accumulatedAvgPower": 10.0,
        "maxAvgCurrent": 5.0,
        "maxAvgVoltage": 235.0,
        "minAvgVoltage": 225.0,
    }
    reading.update(overrides)
    return reading
