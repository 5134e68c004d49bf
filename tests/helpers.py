from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatedesk.models import ImpersonationAction, ImpersonationSession
from estatedesk.services.impersonation_safety import job_id

START = datetime(2026, 3, 10, 9, 0, 0)

ADMIN_ID = "admin-1"
OTHER_ADMIN_ID = "admin-2"
LEASEHOLDER_ID = "user-leaseholder-1"
SOUTH_LEASEHOLDER_ID = "user-leaseholder-2"
HOMEOWNER_ID = "user-homeowner-1"
DIRECTOR_ID = "user-director-1"
BANNED_ID = "user-leaseholder-banned"
SHAREHOLDER_ID = "user-shareholder-1"


class FakeClock:
    """Naive-UTC clock the tests move by hand."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class RecordingBroker:
    """Stands in for the WebSocket broker; keeps every event it is asked to push."""

    def __init__(self):
        self.sent: List[tuple[str, Dict[str, Any]]] = []

    async def send_to_admin(self, admin_id: str, event: Dict[str, Any]) -> int:
        self.sent.append((admin_id, event))
        return 1

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for _, event in self.sent if event["type"] == event_type]


async def fire_job(scheduler: AsyncIOScheduler, session_id: str, kind: str) -> None:
    job = scheduler.get_job(job_id(session_id, kind))
    assert job is not None, f"no {kind} job armed for {session_id}"
    await job.func(*job.args)


def job_run_at(scheduler: AsyncIOScheduler, session_id: str, kind: str) -> Optional[datetime]:
    job = scheduler.get_job(job_id(session_id, kind))
    if job is None:
        return None
    return job.trigger.run_date.replace(tzinfo=None)


async def fetch_session(
    session_factory: async_sessionmaker[AsyncSession], session_id: str
) -> Optional[ImpersonationSession]:
    async with session_factory() as session:
        result = await session.execute(
            select(ImpersonationSession).where(ImpersonationSession.session_id == session_id)
        )
        return result.scalar_one_or_none()


async def count_rows(session_factory: async_sessionmaker[AsyncSession], model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar() or 0


async def fetch_actions(
    session_factory: async_sessionmaker[AsyncSession], session_id: str
) -> List[ImpersonationAction]:
    async with session_factory() as session:
        result = await session.execute(
            select(ImpersonationAction)
            .where(ImpersonationAction.session_id == session_id)
            .order_by(ImpersonationAction.performed_at)
        )
        return list(result.scalars().all())
