from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from trustdesk.access.gate import AccessGate
from trustdesk.access.ledger import SuspensionLedger
from trustdesk.access.repository import UserRepository
from trustdesk.core.identity import Identity, Role
from trustdesk.db.session import ensure_schema
from trustdesk.notifications.fanout import NotificationFanOut
from trustdesk.notifications.repository import NotificationRepository
from trustdesk.notifications.service import NotificationService
from trustdesk.tickets.models import EscalationPolicy
from trustdesk.tickets.repository import TicketRepository
from trustdesk.tickets.service import TicketService


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


@dataclass
class People:
    client: Identity
    other_client: Identity
    professional: Identity
    moderator: Identity
    other_moderator: Identity
    admin: Identity


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File backed so concurrent sessions get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trustdesk.db'}")
    await ensure_schema(engine)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def user_repository(session_factory) -> UserRepository:
    return UserRepository(session_factory)


@pytest.fixture
def notification_repository(session_factory) -> NotificationRepository:
    return NotificationRepository(session_factory)


@pytest.fixture
def fanout(notification_repository, clock) -> NotificationFanOut:
    return NotificationFanOut(notification_repository, clock)


@pytest_asyncio.fixture
async def people(user_repository, clock) -> People:
    async def make(user_id: str, role: Role) -> Identity:
        await user_repository.create_user(
            user_id=user_id, display_name=user_id.title(), role=role, created_at=clock.now()
        )
        return Identity(user_id=user_id, role=role)

    return People(
        client=await make("client-1", Role.CLIENT),
        other_client=await make("client-2", Role.CLIENT),
        professional=await make("pro-1", Role.PROFESSIONAL),
        moderator=await make("mod-1", Role.MODERATOR),
        other_moderator=await make("mod-2", Role.MODERATOR),
        admin=await make("admin-1", Role.ADMIN),
    )


@pytest.fixture
def policy() -> EscalationPolicy:
    return EscalationPolicy()


@pytest.fixture
def ticket_service(session_factory, user_repository, fanout, clock, policy) -> TicketService:
    return TicketService(TicketRepository(session_factory), user_repository, fanout, clock, policy=policy)


@pytest.fixture
def notification_service(notification_repository, clock) -> NotificationService:
    return NotificationService(notification_repository, clock)


@pytest.fixture
def ledger(user_repository, fanout, clock) -> SuspensionLedger:
    return SuspensionLedger(user_repository, fanout, clock, max_days=365)


@pytest.fixture
def gate(user_repository, clock) -> AccessGate:
    return AccessGate(user_repository, clock, notice_refresh_seconds=60)
