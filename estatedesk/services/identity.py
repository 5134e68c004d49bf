"""
Identity provider used by the impersonation services.

Impersonation never re-authenticates as the target. The services only need
to look users up by id and to know who the real (signed-in) actor is.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.core.impersonation import AccountStatus
from estatedesk.models.user import Building, User
from estatedesk.schemas.user import UserProfile

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def lookup_user_by_id(self, user_id: str) -> Optional[UserProfile]:
        ...

    async def current_actor(self) -> Optional[UserProfile]:
        ...


class UserDirectory(IdentityProvider, Protocol):
    """Identity provider that can also search the user directory."""

    async def search_users(
        self,
        criteria: "DirectoryQuery",
        offset: int,
        limit: int,
        now: datetime,
        inactive_days: int = 30,
    ) -> Tuple[List[UserProfile], int]:
        ...


@dataclass
class DirectoryQuery:
    """Constraints for a directory search. Every populated field narrows the result."""
    roles: Iterable[str]
    building_ids: Optional[Iterable[str]] = None
    email: Optional[str] = None
    name: Optional[str] = None
    building_name: Optional[str] = None
    registered_from: Optional[datetime] = None
    registered_to: Optional[datetime] = None
    last_login_from: Optional[datetime] = None
    last_login_to: Optional[datetime] = None
    account_status: Optional[AccountStatus] = None
    exclude_roles: List[str] = field(default_factory=list)


def to_profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        role=user.role,
        first_name=user.first_name,
        last_name=user.last_name,
        building_id=user.building_id,
        building_name=user.building.name if user.building else None,
        banned_until=user.banned_until,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def derive_account_status(profile: UserProfile, now: datetime, inactive_days: int = 30) -> AccountStatus:
    """Suspended while banned; inactive without a login in ``inactive_days``."""
    if profile.banned_until is not None and profile.banned_until > now:
        return AccountStatus.SUSPENDED
    if profile.last_login_at is None or profile.last_login_at < now - timedelta(days=inactive_days):
        return AccountStatus.INACTIVE
    return AccountStatus.ACTIVE


class DatabaseIdentityProvider:
    """Identity provider backed by the ``users`` table."""

    def __init__(self, db: AsyncSession, current_user_id: Optional[str] = None):
        self.db = db
        self.current_user_id = current_user_id

    async def lookup_user_by_id(self, user_id: str) -> Optional[UserProfile]:
        user = await self.db.get(User, user_id)
        if user is None:
            return None
        return to_profile(user)

    async def current_actor(self) -> Optional[UserProfile]:
        if not self.current_user_id:
            return None
        return await self.lookup_user_by_id(self.current_user_id)

    async def search_users(
        self,
        criteria: DirectoryQuery,
        offset: int,
        limit: int,
        now: datetime,
        inactive_days: int = 30,
    ) -> Tuple[List[UserProfile], int]:
        """Return one page of matching profiles and the total match count."""
        conditions = [User.role.in_(list(criteria.roles))]

        if criteria.exclude_roles:
            conditions.append(User.role.notin_(criteria.exclude_roles))

        if criteria.building_ids is not None:
            conditions.append(User.building_id.in_(list(criteria.building_ids)))

        if criteria.email:
            conditions.append(User.email.ilike(f"%{criteria.email}%"))

        if criteria.name:
            term = f"%{criteria.name}%"
            conditions.append(or_(User.first_name.ilike(term), User.last_name.ilike(term)))

        if criteria.building_name:
            conditions.append(Building.name.ilike(f"%{criteria.building_name}%"))

        if criteria.registered_from:
            conditions.append(User.created_at >= criteria.registered_from)
        if criteria.registered_to:
            conditions.append(User.created_at <= criteria.registered_to)

        if criteria.last_login_from:
            conditions.append(User.last_login_at >= criteria.last_login_from)
        if criteria.last_login_to:
            conditions.append(User.last_login_at <= criteria.last_login_to)

        if criteria.account_status:
            conditions.append(self._account_status_condition(criteria.account_status, now, inactive_days))

        where_clause = and_(*conditions)

        count_query = (
            select(func.count(User.id))
            .select_from(User)
            .outerjoin(Building, User.building_id == Building.id)
            .where(where_clause)
        )
        total_result = await self.db.execute(count_query)
        total = total_result.scalar() or 0

        query = (
            select(User)
            .outerjoin(Building, User.building_id == Building.id)
            .where(where_clause)
            .order_by(desc(User.created_at), User.id)
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        users = result.scalars().all()

        return [to_profile(user) for user in users], total

    @staticmethod
    def _account_status_condition(status: AccountStatus, now: datetime, inactive_days: int):
        cutoff = now - timedelta(days=inactive_days)
        suspended = and_(User.banned_until.is_not(None), User.banned_until > now)
        not_suspended = or_(User.banned_until.is_(None), User.banned_until <= now)
        stale_login = or_(User.last_login_at.is_(None), User.last_login_at < cutoff)

        if status == AccountStatus.SUSPENDED:
            return suspended
        if status == AccountStatus.INACTIVE:
            return and_(not_suspended, stale_login)
        return and_(not_suspended, User.last_login_at >= cutoff)
