from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from estatedesk.core.impersonation import UserRole
from estatedesk.models import Base, Building, ImpersonationGrant, User
from estatedesk.services.audit_queue import AuditWriteQueue
from estatedesk.services.identity import to_profile
from estatedesk.services.impersonation_facade import ImpersonationFacade
from estatedesk.services.impersonation_safety import SafetyMonitor
from estatedesk.services.impersonation_state import InMemorySessionStorage, SessionStorage
from tests.helpers import (
    ADMIN_ID,
    BANNED_ID,
    DIRECTOR_ID,
    HOMEOWNER_ID,
    LEASEHOLDER_ID,
    OTHER_ADMIN_ID,
    SHAREHOLDER_ID,
    SOUTH_LEASEHOLDER_ID,
    FakeClock,
    RecordingBroker,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


def _user(
    user_id: str,
    email: str,
    role: UserRole,
    first_name: str,
    last_name: str,
    now: datetime,
    building_id: Optional[str] = None,
    banned_until: Optional[datetime] = None,
    created_days_ago: int = 365,
    last_login_days_ago: Optional[int] = 1,
) -> User:
    return User(
        id=user_id,
        email=email,
        role=role.value,
        first_name=first_name,
        last_name=last_name,
        building_id=building_id,
        banned_until=banned_until,
        last_login_at=now - timedelta(days=last_login_days_ago) if last_login_days_ago is not None else None,
        created_at=now - timedelta(days=created_days_ago),
    )


@pytest.fixture
async def directory(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> None:
    """Two buildings, two super-admins and a spread of resident accounts."""
    now = clock()
    async with session_factory() as session:
        session.add_all(
            [
                Building(id="bldg-north", name="North Tower"),
                Building(id="bldg-south", name="South Court"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                _user(ADMIN_ID, "admin@estatedesk.test", UserRole.SUPER_ADMIN, "Ada", "Admin", now),
                _user(OTHER_ADMIN_ID, "ops@estatedesk.test", UserRole.SUPER_ADMIN, "Otto", "Ops", now),
                _user(
                    LEASEHOLDER_ID, "lena@example.com", UserRole.LEASEHOLDER, "Lena", "Holt", now,
                    building_id="bldg-north", created_days_ago=200,
                ),
                _user(
                    SOUTH_LEASEHOLDER_ID, "sam@example.com", UserRole.LEASEHOLDER, "Sam", "Reed", now,
                    building_id="bldg-south", created_days_ago=100,
                ),
                _user(
                    HOMEOWNER_ID, "hugo@example.com", UserRole.HOMEOWNER, "Hugo", "Marsh", now,
                    building_id="bldg-north", created_days_ago=50, last_login_days_ago=60,
                ),
                _user(DIRECTOR_ID, "dina@example.com", UserRole.RTM_DIRECTOR, "Dina", "Cole", now),
                _user(
                    BANNED_ID, "bart@example.com", UserRole.LEASEHOLDER, "Bart", "Vale", now,
                    building_id="bldg-north", banned_until=now + timedelta(days=7), created_days_ago=10,
                ),
                _user(SHAREHOLDER_ID, "shay@example.com", UserRole.SHAREHOLDER, "Shay", "Nunn", now),
            ]
        )
        await session.commit()


@pytest.fixture
def make_grant(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock):
    async def _make_grant(admin_id: str = ADMIN_ID, **overrides: Any) -> ImpersonationGrant:
        values: Dict[str, Any] = {
            "id": str(uuid4()),
            "admin_id": admin_id,
            "allowed_target_roles": [UserRole.LEASEHOLDER.value, UserRole.HOMEOWNER.value],
            "allowed_building_ids": None,
            "max_session_duration_minutes": 60,
            "max_daily_sessions": 5,
            "max_concurrent_sessions": 1,
            "allowed_actions": [],
            "restricted_actions": [],
            "granted_by": "root",
            "granted_at": clock() - timedelta(days=1),
            "expires_at": None,
            "is_active": True,
        }
        values.update(overrides)
        grant = ImpersonationGrant(**values)
        async with session_factory() as session:
            session.add(grant)
            await session.commit()
        return grant

    return _make_grant


@pytest.fixture
def scheduler() -> AsyncIOScheduler:
    # Never started: jobs stay pending, so tests inspect and fire them by hand
    return AsyncIOScheduler(timezone="UTC")


@pytest.fixture
def broker() -> RecordingBroker:
    return RecordingBroker()


@pytest.fixture
def monitor(
    scheduler: AsyncIOScheduler,
    session_factory: async_sessionmaker[AsyncSession],
    broker: RecordingBroker,
    clock: FakeClock,
) -> SafetyMonitor:
    return SafetyMonitor(scheduler, session_factory, events=broker, clock=clock)


@pytest.fixture
def audit_queue() -> AuditWriteQueue:
    return AuditWriteQueue(maxsize=10, max_attempts=2)


@pytest.fixture
def storage() -> InMemorySessionStorage:
    return InMemorySessionStorage()


@pytest.fixture
async def open_facade(
    session_factory: async_sessionmaker[AsyncSession],
    monitor: SafetyMonitor,
    audit_queue: AuditWriteQueue,
    clock: FakeClock,
):
    """Build a facade the way one request does: fresh DB session, state loaded from storage."""
    opened: List[AsyncSession] = []

    async def _open(
        storage: SessionStorage,
        actor_id: str = ADMIN_ID,
        safety_monitor: Optional[SafetyMonitor] = None,
    ) -> ImpersonationFacade:
        db = session_factory()
        opened.append(db)
        async with session_factory() as lookup:
            actor = to_profile(await lookup.get(User, actor_id))
        facade = ImpersonationFacade(
            real_actor=actor,
            db=db,
            storage=storage,
            monitor=safety_monitor or monitor,
            audit_queue=audit_queue,
            clock=clock,
        )
        await facade.load()
        return facade

    yield _open

    for db in opened:
        await db.close()
