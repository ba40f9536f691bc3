"""
Test Configuration — Fixtures for async DB, test client, and check-in data.

Each test gets its own in-memory SQLite database. The pipeline commits
and rolls back on its own, so tests cannot share one outer transaction.
"""

import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_db, get_event_locks
from api.main import app
from db.session import Base
from discovery.locks import EventLockRegistry

# In-memory SQLite (no PostGIS/asyncpg features needed).
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

EVENT_ID = "00000000-0000-0000-0000-00000000e001"
BASE_TIME = datetime(2025, 6, 14, 10, 0, 0)

# Gate A and gate B sit ~111 m apart.
GATE_A = (40.71280, -74.00600)
GATE_B = (40.71380, -74.00600)

# Sub-meter wobble that stays inside one 5-decimal grid cell.
JITTER = (0.0, 0.000002, -0.000002, 0.000001, -0.000001)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables, one per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def pipeline_settings():
    """Runtime limits small enough for tests; thresholds fall back to defaults."""
    return SimpleNamespace(
        pipeline_step_timeout_seconds=5.0,
        pipeline_max_attempts=3,
        pipeline_retry_backoff_seconds=0.0,
        event_lock_timeout_seconds=0.1,
    )


@pytest.fixture
async def client(test_db):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_locks] = EventLockRegistry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def live_event(test_db):
    from db.models import Event

    event = Event(event_id=uuid.UUID(EVENT_ID), name="Riverside Music Festival", status="live")
    test_db.add(event)
    await test_db.commit()
    return event


@pytest.fixture
def add_checkins(test_db):
    """
    Insert ``count`` check-ins for an event and commit them.

    Each check-in gets its own wristband of ``category`` (distinct
    attendees). ``lat=None`` produces check-ins without GPS. Timestamps
    start at ``start`` and advance ``step_minutes`` per check-in.
    """
    from db.models import CheckinLog, Wristband

    async def _add(
        event_id,
        *,
        count: int,
        lat: float | None = None,
        lon: float | None = None,
        accuracy: float | None = 8.0,
        category: str = "General",
        start: datetime = BASE_TIME,
        step_minutes: float = 6.0,
        jitter: bool = True,
        gate_id=None,
        status: str = "success",
    ) -> list:
        rows = []
        for i in range(count):
            wristband = Wristband(wristband_id=uuid.uuid4(), event_id=event_id, category=category)
            test_db.add(wristband)
            offset = JITTER[i % len(JITTER)] if jitter else 0.0
            rows.append(
                CheckinLog(
                    checkin_id=uuid.uuid4(),
                    event_id=event_id,
                    wristband_id=wristband.wristband_id,
                    staff_id=f"staff-{i % 3}",
                    timestamp=start + timedelta(minutes=step_minutes * i),
                    app_lat=None if lat is None else lat + offset,
                    app_lon=None if lon is None else lon - offset,
                    app_accuracy=accuracy if lat is not None else None,
                    processing_time_ms=120,
                    status=status,
                    gate_id=gate_id,
                    checkin_metadata={},
                )
            )
        test_db.add_all(rows)
        await test_db.commit()
        return rows

    return _add


@pytest.fixture
async def two_gate_event(live_event, add_checkins):
    """60 General check-ins at gate A and 60 VIP check-ins at gate B, over six hours."""
    await add_checkins(live_event.event_id, count=60, lat=GATE_A[0], lon=GATE_A[1], category="General")
    await add_checkins(live_event.event_id, count=60, lat=GATE_B[0], lon=GATE_B[1], category="VIP")
    return live_event


@pytest.fixture
async def same_spot_event(live_event, add_checkins):
    """30 VIP and 10 Staff check-ins at one identical coordinate."""
    await add_checkins(
        live_event.event_id,
        count=30,
        lat=GATE_A[0],
        lon=GATE_A[1],
        category="VIP",
        step_minutes=8,
        jitter=False,
    )
    await add_checkins(
        live_event.event_id,
        count=10,
        lat=GATE_A[0],
        lon=GATE_A[1],
        category="Staff",
        start=BASE_TIME + timedelta(minutes=5),
        step_minutes=20,
        jitter=False,
    )
    return live_event


class FakeRedisLock:
    def __init__(self, server, name):
        self.server = server
        self.name = name

    async def acquire(self):
        if self.server.unreachable:
            raise ConnectionError("Connection refused")
        if self.name in self.server.held:
            return False
        self.server.held.add(self.name)
        self.server.acquired.append(self.name)
        return True

    async def release(self):
        self.server.held.discard(self.name)
        self.server.released.append(self.name)


class FakeRedisClient:
    def __init__(self, server):
        self.server = server

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.server.lock_kwargs = {"timeout": timeout, "blocking_timeout": blocking_timeout}
        return FakeRedisLock(self.server, name)

    async def aclose(self):
        self.server.closed += 1


class FakeRedisServer:
    """Redis locks shared by every client the lock backend opens."""

    def __init__(self):
        self.held: set[str] = set()
        self.acquired: list[str] = []
        self.released: list[str] = []
        self.lock_kwargs: dict = {}
        self.closed = 0
        self.unreachable = False

    def client(self, redis_url):
        return FakeRedisClient(self)


@pytest.fixture
def fake_redis(monkeypatch):
    server = FakeRedisServer()
    monkeypatch.setattr("discovery.locks._redis_client", server.client)
    return server
