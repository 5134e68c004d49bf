from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.core.impersonation import AccountStatus
from estatedesk.schemas.user import UserProfile
from estatedesk.services.identity import DatabaseIdentityProvider, DirectoryQuery, derive_account_status
from tests.helpers import (
    ADMIN_ID,
    BANNED_ID,
    DIRECTOR_ID,
    HOMEOWNER_ID,
    LEASEHOLDER_ID,
    OTHER_ADMIN_ID,
    SHAREHOLDER_ID,
    SOUTH_LEASEHOLDER_ID,
    START,
    FakeClock,
)


def _profile(**overrides) -> UserProfile:
    values = {"id": "u1", "email": "u1@example.com", "role": "leaseholder", "last_login_at": START}
    values.update(overrides)
    return UserProfile(**values)


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, AccountStatus.ACTIVE),
        ({"last_login_at": None}, AccountStatus.INACTIVE),
        ({"last_login_at": START - timedelta(days=31)}, AccountStatus.INACTIVE),
        ({"last_login_at": START - timedelta(days=29)}, AccountStatus.ACTIVE),
        ({"banned_until": START + timedelta(hours=1)}, AccountStatus.SUSPENDED),
        ({"banned_until": START - timedelta(hours=1)}, AccountStatus.ACTIVE),
        ({"banned_until": START + timedelta(days=1), "last_login_at": None}, AccountStatus.SUSPENDED),
    ],
)
def test_derive_account_status(overrides, expected: AccountStatus) -> None:
    assert derive_account_status(_profile(**overrides), START) == expected


def test_display_name_falls_back_to_email() -> None:
    assert _profile(first_name="Lena", last_name="Holt").display_name == "Lena Holt"
    assert _profile(first_name="Lena").display_name == "Lena"
    assert _profile().display_name == "u1@example.com"


@pytest.mark.usefixtures("directory")
class TestDatabaseIdentityProvider:
    async def test_lookup_includes_building(self, db: AsyncSession) -> None:
        profile = await DatabaseIdentityProvider(db).lookup_user_by_id(LEASEHOLDER_ID)

        assert profile.email == "lena@example.com"
        assert profile.building_id == "bldg-north"
        assert profile.building_name == "North Tower"

    async def test_lookup_unknown(self, db: AsyncSession) -> None:
        assert await DatabaseIdentityProvider(db).lookup_user_by_id("user-missing") is None

    async def test_current_actor(self, db: AsyncSession) -> None:
        assert (await DatabaseIdentityProvider(db, ADMIN_ID).current_actor()).role == "super-admin"
        assert await DatabaseIdentityProvider(db).current_actor() is None

    async def _search(self, db: AsyncSession, clock: FakeClock, **criteria):
        values = {"roles": ["leaseholder", "homeowner", "rtm-director", "shareholder", "super-admin"]}
        values.update(criteria)
        profiles, total = await DatabaseIdentityProvider(db).search_users(
            DirectoryQuery(**values), offset=0, limit=50, now=clock()
        )
        return [profile.id for profile in profiles], total

    async def test_exclude_roles(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, total = await self._search(db, clock, exclude_roles=["super-admin"])

        assert ADMIN_ID not in ids
        assert OTHER_ADMIN_ID not in ids
        assert total == 6

    async def test_email_filter_is_case_insensitive(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, _ = await self._search(db, clock, email="SAM@")
        assert ids == [SOUTH_LEASEHOLDER_ID]

    async def test_building_ids(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, _ = await self._search(db, clock, building_ids=["bldg-south"])
        assert ids == [SOUTH_LEASEHOLDER_ID]

    async def test_registration_window(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, _ = await self._search(
            db,
            clock,
            registered_from=clock() - timedelta(days=120),
            registered_to=clock() - timedelta(days=20),
        )
        assert ids == [HOMEOWNER_ID, SOUTH_LEASEHOLDER_ID]

    async def test_last_login_window(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, _ = await self._search(db, clock, last_login_to=clock() - timedelta(days=30))
        assert ids == [HOMEOWNER_ID]

    @pytest.mark.parametrize(
        "status, expected",
        [
            (AccountStatus.SUSPENDED, [BANNED_ID]),
            (AccountStatus.INACTIVE, [HOMEOWNER_ID]),
        ],
    )
    async def test_account_status(self, db: AsyncSession, clock: FakeClock, status, expected) -> None:
        ids, _ = await self._search(db, clock, account_status=status)
        assert ids == expected

    async def test_active_accounts(self, db: AsyncSession, clock: FakeClock) -> None:
        ids, _ = await self._search(
            db, clock, account_status=AccountStatus.ACTIVE, roles=["leaseholder", "rtm-director", "shareholder"]
        )
        assert set(ids) == {LEASEHOLDER_ID, SOUTH_LEASEHOLDER_ID, DIRECTOR_ID, SHAREHOLDER_ID}

    async def test_paging(self, db: AsyncSession, clock: FakeClock) -> None:
        provider = DatabaseIdentityProvider(db)
        criteria = DirectoryQuery(roles=["leaseholder"])

        first, total = await provider.search_users(criteria, offset=0, limit=2, now=clock())
        rest, _ = await provider.search_users(criteria, offset=2, limit=2, now=clock())

        assert total == 3
        assert [p.id for p in first] == [BANNED_ID, SOUTH_LEASEHOLDER_ID]
        assert [p.id for p in rest] == [LEASEHOLDER_ID]
