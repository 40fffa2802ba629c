"""
Pytest configuration and fixtures.

Provides shared fixtures for testing including:
- A file-backed SQLite database per test (aiosqlite)
- Seeding helpers for customers and vehicles
- Processor and service instances wired to a logging notifier
- An httpx client bound to the FastAPI app
"""

import os

# Settings are cached on first use; make the test environment visible first.
os.environ.setdefault("API_KEY", "test-api-key-123")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./parkingmate-test.db")
os.environ.setdefault("LOG_FORMAT", "text")

import uuid
from datetime import datetime
from typing import AsyncIterator, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from parkingmate.application.detection_processor import DetectionEventProcessor
from parkingmate.application.guest_validation import GuestValidationService
from parkingmate.application.locking import KeyedLockRegistry
from parkingmate.application.notification_outbox import OutboxDispatcher
from parkingmate.application.registration_flow import RegistrationService
from parkingmate.core.config import Settings
from parkingmate.domain.models import Customer, DetectionInput, Vehicle, utcnow
from parkingmate.infrastructure.db.repository import CustomerRepository, VehicleRepository
from parkingmate.infrastructure.db.session import create_session_factory, create_tables
from parkingmate.infrastructure.email.notifier import LoggingNotifier

API_KEY = os.environ["API_KEY"]
ORG_ID = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts for tests."""
    return Settings(
        api_key=API_KEY,
        database_url="sqlite+aiosqlite:///./parkingmate-test.db",
        store_timeout_seconds=5.0,
        notifier_timeout_seconds=2.0,
    )


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """Create a fresh file-backed SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'parkingmate.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncIterator[AsyncSession]:
    """Session for arranging and inspecting state directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def locks() -> KeyedLockRegistry:
    return KeyedLockRegistry()


@pytest.fixture
def dispatcher(session_factory, notifier) -> OutboxDispatcher:
    return OutboxDispatcher(session_factory, notifier, timeout_seconds=2.0)


@pytest.fixture
def processor(session_factory, dispatcher, locks, settings) -> DetectionEventProcessor:
    return DetectionEventProcessor(
        session_factory,
        dispatcher=dispatcher,
        locks=locks,
        settings=settings,
    )


@pytest.fixture
def guest_validation(session_factory, locks, settings) -> GuestValidationService:
    return GuestValidationService(session_factory, locks=locks, settings=settings)


@pytest.fixture
def registration(session_factory, dispatcher, locks, settings) -> RegistrationService:
    return RegistrationService(
        session_factory,
        dispatcher=dispatcher,
        locks=locks,
        settings=settings,
    )


class Seeder:
    """Creates customers and vehicles in committed transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def customer(
        self,
        name: str = "Dana Driver",
        email: str | None = None,
        registered: bool = False,
        org_id: str = ORG_ID,
    ) -> Customer:
        async with self._session_factory() as session:
            customer = await CustomerRepository(session).create(
                Customer(
                    id=str(uuid.uuid4()),
                    org_id=org_id,
                    name=name,
                    email=email or f"{uuid.uuid4().hex[:8]}@example.com",
                    registered=registered,
                )
            )
            await session.commit()
        return customer

    async def vehicle(
        self,
        plate: str,
        customer: Customer | None = None,
        customer_id: str | None = None,
        org_id: str = ORG_ID,
    ) -> Vehicle:
        async with self._session_factory() as session:
            vehicle = await VehicleRepository(session).create(
                Vehicle(
                    id=str(uuid.uuid4()),
                    org_id=org_id,
                    plate=plate,
                    customer_id=customer.id if customer else customer_id,
                )
            )
            await session.commit()
        return vehicle

    async def owned_vehicle(self, plate: str, registered: bool = True, **kwargs) -> tuple[Customer, Vehicle]:
        customer = await self.customer(registered=registered, **kwargs)
        vehicle = await self.vehicle(plate, customer)
        return customer, vehicle


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def make_detection() -> Callable[..., DetectionInput]:
    """Factory for detections stamped with the current time."""

    def _make(
        plate: str | None = "AB-123",
        direction: str | None = "entry",
        camera_id: str | None = "gate-1",
        timestamp: datetime | None = None,
        **kwargs,
    ) -> DetectionInput:
        return DetectionInput(
            plate=plate,
            direction=direction,
            timestamp=timestamp or utcnow(),
            camera_id=camera_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def app(session_factory, notifier, locks):
    """FastAPI app wired to the test database and notifier."""
    from parkingmate.api.deps import get_db_session_factory, get_email_notifier, get_locks
    from parkingmate.core.security import get_rate_limiter
    from parkingmate.main import create_app

    get_rate_limiter().reset()
    application = create_app()
    application.dependency_overrides[get_db_session_factory] = lambda: session_factory
    application.dependency_overrides[get_email_notifier] = lambda: notifier
    application.dependency_overrides[get_locks] = lambda: locks
    return application


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    """Async HTTP client sending the API key."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-API-Key": API_KEY},
    ) as http_client:
        yield http_client
