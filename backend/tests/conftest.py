"""
Pytest fixtures for test database, client, collaborators and authentication.

Each test gets its own SQLite file (aiosqlite) with the schema created from
the models, so concurrent sessions really compete for the same rows.
Every fixture and helper opens a short-lived session and closes it again:
an open SQLite transaction holds the write lock.
"""

import itertools
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.main import app
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import build_engine, get_db
from app.infrastructure.mpesa_client import (
    GatewayRejected,
    GatewayUnavailable,
    ProviderStatus,
    PushResult,
    get_mpesa_client,
)
from app.models.event import Event
from app.models.registration import Registration
from app.models.user import User
from app.services.interfaces.notifier import TicketNotifier
from app.services.interfaces.optimistic_admission import OptimisticAdmission
from app.services.strategy_factory import get_admission, get_notifier


class FakeGateway:
    """Stands in for MpesaClient. Records pushes and serves scripted statuses."""

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.push_error: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.statuses: dict[str, ProviderStatus] = {}
        self._ids = itertools.count(1)

    async def initiate_push(self, phone, amount, reference, description) -> PushResult:
        self.pushes.append(
            {"phone": phone, "amount": amount, "reference": reference, "description": description}
        )
        if self.push_error is not None:
            raise self.push_error
        n = next(self._ids)
        return PushResult(
            checkout_request_id=f"ws_CO_TEST_{n}",
            merchant_request_id=f"29115-{n}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    async def query_status(self, checkout_request_id: str) -> ProviderStatus:
        self.queries.append(checkout_request_id)
        if self.query_error is not None:
            raise self.query_error
        return self.statuses.get(
            checkout_request_id,
            ProviderStatus(checkout_request_id, None, "The transaction is being processed"),
        )

    def fail_push(self, unavailable: bool = True) -> None:
        if unavailable:
            self.push_error = GatewayUnavailable("M-Pesa request timed out")
        else:
            self.push_error = GatewayRejected("Invalid PhoneNumber", status_code=400)


class RecordingNotifier(TicketNotifier):
    def __init__(self):
        self.tickets = []
        self.organizer_notices = []

    async def issue_ticket(self, registration, event) -> None:
        self.tickets.append(registration.id)

    async def notify_organizer(self, registration, event) -> None:
        self.organizer_notices.append(registration.id)


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh database file per test; yields a session factory bound to it."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'registrations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def admission() -> OptimisticAdmission:
    return OptimisticAdmission()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, notifier, admission) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the DB and every outside collaborator overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mpesa_client] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_admission] = lambda: admission

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def add(session_factory, obj):
    """Persist one object in its own transaction and return it loaded."""
    async with session_factory() as session:
        session.add(obj)
        await session.commit()
        await session.refresh(obj)
    return obj


async def load(session_factory, model, obj_id):
    async with session_factory() as session:
        return await session.get(model, obj_id)


async def load_registration(session_factory, event_id: int, user_id: int) -> Optional[Registration]:
    async with session_factory() as session:
        result = await session.execute(
            select(Registration).where(Registration.event_id == event_id, Registration.user_id == user_id)
        )
        return result.scalar_one_or_none()


async def create_users(session_factory, count: int, prefix: str = "user") -> list[User]:
    users = [User(email=f"{prefix}{i}@example.com", first_name=f"User{i}") for i in range(count)]
    async with session_factory() as session:
        session.add_all(users)
        await session.commit()
        for user in users:
            await session.refresh(user)
    return users


def bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(user.id)})}"}


@pytest_asyncio.fixture
async def organizer(session_factory) -> User:
    return await add(session_factory, User(email="organizer@example.com", first_name="Olive", last_name="Otieno"))


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    return await add(session_factory, User(email="test@example.com", first_name="Test", last_name="User"))


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict:
    """Authorization headers with Bearer token."""
    return bearer(test_user)


@pytest_asyncio.fixture
async def organizer_headers(organizer: User) -> dict:
    return bearer(organizer)


@pytest_asyncio.fixture
async def free_event(session_factory, organizer: User) -> Event:
    """Free meetup with 10 slots."""
    return await add(
        session_factory,
        Event(title="Nairobi Python Meetup", location="iHub", organizer_id=organizer.id, max_attendees=10),
    )


@pytest_asyncio.fixture
async def unlimited_event(session_factory, organizer: User) -> Event:
    return await add(
        session_factory,
        Event(title="Open Day", location="Campus", organizer_id=organizer.id, max_attendees=0),
    )


@pytest_asyncio.fixture
async def paid_event(session_factory, organizer: User) -> Event:
    """500 KES per ticket, 10 slots."""
    return await add(
        session_factory,
        Event(
            title="DevFest Nairobi",
            location="KICC",
            organizer_id=organizer.id,
            max_attendees=10,
            is_paid=True,
            price=Decimal("500.00"),
            currency="KES",
        ),
    )
