import os
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Required settings; tests never touch these services
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./visitflow-unused.db")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-visitflow-tests")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from visitflow.config import Settings  # noqa: E402
from visitflow.core.clock import FrozenClock  # noqa: E402
from visitflow.core.security import create_access_token  # noqa: E402
from visitflow.database import build_session_factory  # noqa: E402
from visitflow.dependencies import get_visit_engine  # noqa: E402
from visitflow.main import app  # noqa: E402
from visitflow.models import metadata  # noqa: E402
from visitflow.services.payment_gateway import MockPaymentGateway  # noqa: E402
from visitflow.services.visit_engine import VisitLifecycleEngine, build_visit_engine  # noqa: E402

GATEWAY_SECRET = "test-gateway-secret"

# 2025-01-09 10:00 in the clinic timezone (Asia/Kolkata)
CLINIC_NOW = datetime(2025, 1, 9, 4, 30, tzinfo=UTC)
TODAY = date(2025, 1, 9)
TOMORROW = date(2025, 1, 10)


@pytest.fixture
def test_settings() -> Settings:
    """Engine settings pinned for tests, independent of the local .env."""
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        DATABASE_URL=os.environ["DATABASE_URL"],
        REDIS_HOST="localhost",
        REDIS_PORT=6379,
        JWT_SECRET_KEY=os.environ["JWT_SECRET_KEY"],
        APPOINTMENT_HOLD_MINUTES=15,
        PAYMENT_TIMEOUT_MINUTES=20,
        RECONCILE_MAX_ATTEMPTS=3,
        CLINIC_TIMEZONE="Asia/Kolkata",
        CLINIC_OPEN="09:00",
        CLINIC_CLOSE="17:00",
        SLOT_MINUTES=30,
        BREAK_START="13:00",
        BREAK_END="14:00",
        PAYMENT_PROVIDER="mock",
        PAYMENT_CURRENCY="INR",
        PAYMENT_GATEWAY_SECRET=GATEWAY_SECRET,
        PAYMENT_GATEWAY_TIMEOUT_SECONDS=5,
        DEFAULT_CONSULTATION_FEE="500.00",
        CONSULTATION_FEES='{"D101": "750.00"}',
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database with the full schema, one per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'visitflow.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    # Take the write lock when a transaction starts so concurrent sessions
    # queue on the busy timeout instead of failing to upgrade their locks
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(CLINIC_NOW)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def tomorrow() -> date:
    return TOMORROW


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(secret=GATEWAY_SECRET)


@pytest.fixture
def redis_mock() -> MagicMock:
    """Redis stand-in: every cache read misses, every publish succeeds."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = None
    return mock_redis


@pytest_asyncio.fixture
async def visit_engine(
    db_engine: AsyncEngine,
    test_settings: Settings,
    clock: FrozenClock,
    gateway: MockPaymentGateway,
    redis_mock: MagicMock,
) -> AsyncGenerator[VisitLifecycleEngine, None]:
    engine = build_visit_engine(
        test_settings,
        session_factory=build_session_factory(db_engine),
        redis_client=redis_mock,
        clock=clock,
        gateway=gateway,
    )
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def client(visit_engine: VisitLifecycleEngine) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app.dependency_overrides[get_visit_engine] = lambda: visit_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def bearer(subject_id: str, role: str) -> dict:
    token = create_access_token(
        data={"sub": subject_id, "role": role},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def patient_headers() -> dict:
    return bearer("patient-1", "patient")


@pytest.fixture
def other_patient_headers() -> dict:
    return bearer("patient-2", "patient")


@pytest.fixture
def staff_headers() -> dict:
    return bearer("reception-1", "receptionist")


@pytest.fixture
def admin_headers() -> dict:
    return bearer("admin-1", "admin")
