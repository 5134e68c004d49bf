from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatedesk.core.errors import AuditRecordImmutableError, ImpersonationConflictError
from estatedesk.core.impersonation import (
    ActionType,
    AlertType,
    EndReason,
    RiskLevel,
    SessionStatus,
)
from estatedesk.schemas.impersonation import ActionContext, AuditLogFilter
from estatedesk.services.identity import DatabaseIdentityProvider
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from tests.helpers import (
    ADMIN_ID,
    HOMEOWNER_ID,
    LEASEHOLDER_ID,
    OTHER_ADMIN_ID,
    SOUTH_LEASEHOLDER_ID,
    FakeClock,
    fetch_session,
)

pytestmark = pytest.mark.usefixtures("directory")


async def _open(audit: ImpersonationAuditService, db: AsyncSession, target_id: str, admin_id: str = ADMIN_ID):
    target = await DatabaseIdentityProvider(db).lookup_user_by_id(target_id)
    return await audit.start_session(
        admin_id=admin_id,
        admin_email=f"{admin_id}@estatedesk.test",
        target=target,
        reason="Customer Support",
        ip_address="10.0.0.5",
        user_agent="pytest",
    )


async def test_get_user_permissions_returns_latest_active_grant(
    db: AsyncSession, clock: FakeClock, make_grant
) -> None:
    await make_grant(max_daily_sessions=3, granted_at=clock() - timedelta(days=10))
    latest = await make_grant(max_daily_sessions=7, granted_at=clock() - timedelta(days=2))
    await make_grant(max_daily_sessions=9, is_active=False, granted_at=clock() - timedelta(hours=1))

    grant = await ImpersonationAuditService(db, clock).get_user_permissions(ADMIN_ID)

    assert grant is not None
    assert grant.id == latest.id
    assert grant.max_daily_sessions == 7


async def test_start_session_records_target_snapshot(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)

    session = await _open(audit, db, LEASEHOLDER_ID)

    assert session.status == SessionStatus.ACTIVE.value
    assert session.started_at == clock()
    assert session.target_email == "lena@example.com"
    assert session.target_role == "leaseholder"
    assert session.target_building_id == "bldg-north"
    assert session.admin_ip_address == "10.0.0.5"
    assert session.ended_at is None
    assert len(session.session_id) >= 24


async def test_second_active_session_on_same_pair_is_a_conflict(
    db: AsyncSession, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> None:
    audit = ImpersonationAuditService(db, clock)
    first = await _open(audit, db, LEASEHOLDER_ID)
    first_id = first.session_id

    with pytest.raises(ImpersonationConflictError) as exc_info:
        await _open(audit, db, LEASEHOLDER_ID)
    assert exc_info.value.category == "conflict"

    active = await audit.get_active_sessions(admin_id=ADMIN_ID, target_user_id=LEASEHOLDER_ID)
    assert [s.session_id for s in active] == [first_id]

    # Once the first one ends the pair is free again
    await audit.end_session(first_id, SessionStatus.ENDED_MANUALLY)
    second = await _open(audit, db, LEASEHOLDER_ID)
    assert (await fetch_session(session_factory, second.session_id)).status == "active"


async def test_end_session_sets_duration_and_appends_notes(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)

    clock.advance(minutes=12, seconds=40)
    ended = await audit.end_session(session.session_id, SessionStatus.ENDED_MANUALLY, "Resolved ticket 881")

    assert ended is not None
    assert ended.status == "ended_manually"
    assert ended.ended_at == clock()
    assert ended.ended_at >= ended.started_at
    assert ended.duration_minutes == 13
    assert ended.additional_notes == "Resolved ticket 881"

    actions = await audit.get_session_actions(session.session_id)
    assert actions[-1].description == "Impersonation session ended with status: ended_manually"
    assert actions[-1].system_generated is True

    # Ending twice is a no-op
    assert await audit.end_session(session.session_id, SessionStatus.ENDED_TIMEOUT) is None


async def test_sessions_started_on_uses_utc_calendar_day(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)

    clock.now = clock.now.replace(hour=23, minute=50)
    late = await _open(audit, db, LEASEHOLDER_ID)
    await audit.end_session(late.session_id, SessionStatus.ENDED_MANUALLY)

    clock.advance(minutes=20)  # 00:10 the next day
    early = await _open(audit, db, HOMEOWNER_ID)
    await audit.end_session(early.session_id, SessionStatus.ENDED_MANUALLY)
    await _open(audit, db, SOUTH_LEASEHOLDER_ID)

    today = clock().date()
    assert await audit.count_sessions_started_on(ADMIN_ID, today) == 2
    assert await audit.count_sessions_started_on(ADMIN_ID, today - timedelta(days=1)) == 1
    assert await audit.count_sessions_started_on(OTHER_ADMIN_ID, today) == 0


async def test_validate_session_warns_as_the_limit_approaches(
    db: AsyncSession, clock: FakeClock, make_grant
) -> None:
    await make_grant(max_session_duration_minutes=60)
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)

    fresh = await audit.validate_session(session.session_id)
    assert fresh.valid is True
    assert fresh.time_remaining_minutes == 60
    assert fresh.warnings == []

    clock.advance(minutes=50)
    assert (await audit.validate_session(session.session_id)).warnings == [
        "Session expires in less than 15 minutes"
    ]

    clock.advance(minutes=6)
    assert (await audit.validate_session(session.session_id)).warnings == [
        "Session expires in less than 5 minutes"
    ]

    clock.advance(minutes=4)
    expired = await audit.validate_session(session.session_id)
    assert expired.valid is False
    assert expired.warnings == ["Session has exceeded maximum duration"]


async def test_validate_session_unknown_or_ungranted(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)

    missing = await audit.validate_session("no-such-session")
    assert missing.valid is False
    assert missing.warnings == ["Session not found or no longer active"]

    session = await _open(audit, db, LEASEHOLDER_ID)
    ungranted = await audit.validate_session(session.session_id)
    assert ungranted.valid is False
    assert ungranted.warnings == ["No active impersonation permissions"]


async def test_force_end_all_sessions_for_one_admin(
    db: AsyncSession, session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> None:
    audit = ImpersonationAuditService(db, clock)
    mine = await _open(audit, db, LEASEHOLDER_ID)
    theirs = await _open(audit, db, HOMEOWNER_ID, admin_id=OTHER_ADMIN_ID)

    clock.advance(minutes=3)
    assert await audit.force_end_all_sessions(ADMIN_ID, "Credential reset") == 1

    ended = await fetch_session(session_factory, mine.session_id)
    assert ended.status == "ended_security"
    assert ended.duration_minutes == 3
    assert "Force ended: Credential reset" in ended.additional_notes
    assert (await fetch_session(session_factory, theirs.session_id)).status == "active"

    assert await audit.force_end_all_sessions(ADMIN_ID) == 0


async def test_find_overdue_sessions(db: AsyncSession, clock: FakeClock, make_grant) -> None:
    await make_grant(ADMIN_ID, max_session_duration_minutes=30)
    revoked = await make_grant(OTHER_ADMIN_ID, max_session_duration_minutes=120, is_active=False)
    audit = ImpersonationAuditService(db, clock)

    overdue_candidate = await _open(audit, db, LEASEHOLDER_ID)
    clock.advance(minutes=10)
    fresh = await _open(audit, db, HOMEOWNER_ID)
    ungranted = await _open(audit, db, SOUTH_LEASEHOLDER_ID, admin_id=OTHER_ADMIN_ID)
    assert revoked.is_active is False

    clock.advance(minutes=20)  # first session is now exactly 30 minutes old
    overdue = {session.session_id: reason for session, reason in await audit.find_overdue_sessions()}

    assert overdue == {
        overdue_candidate.session_id: EndReason.TIMEOUT,
        ungranted.session_id: EndReason.SECURITY,
    }
    assert fresh.session_id not in overdue


async def test_log_action_assigns_risk_and_raises_alerts(db: AsyncSession, clock: FakeClock, make_grant) -> None:
    await make_grant(restricted_actions=["document_delete"])
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)

    view = await audit.log_action(
        session.session_id, ADMIN_ID, LEASEHOLDER_ID, ActionType.DATA_VIEW, "Opened service charge statement"
    )
    assert view.risk_level == "low"
    assert await audit.list_security_alerts() == []

    deleted = await audit.log_action(
        session.session_id,
        ADMIN_ID,
        LEASEHOLDER_ID,
        "document_delete",
        "Removed duplicate lease PDF",
        context=ActionContext(affected_data_type="document", affected_record_id="doc-17"),
    )
    assert deleted.risk_level == "high"
    assert deleted.affected_record_id == "doc-17"

    alerts = await audit.list_security_alerts()
    assert {alert.type for alert in alerts} == {
        AlertType.SUSPICIOUS_ACTIVITY.value,
        AlertType.UNAUTHORIZED_ACTION.value,
    }
    suspicious = next(a for a in alerts if a.type == AlertType.SUSPICIOUS_ACTIVITY.value)
    assert suspicious.severity == "high"
    assert suspicious.message == "High-risk action performed: document_delete - Removed duplicate lease PDF"
    restricted = next(a for a in alerts if a.type == AlertType.UNAUTHORIZED_ACTION.value)
    assert restricted.message == "Restricted action attempted: document_delete"


async def test_explicit_risk_level_overrides_the_table(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)

    action = await audit.log_action(
        session.session_id,
        ADMIN_ID,
        LEASEHOLDER_ID,
        ActionType.PAGE_VISIT,
        "Session forcibly ended: timeout",
        risk_level=RiskLevel.HIGH,
        system_generated=True,
    )

    assert action.risk_level == "high"
    assert await audit.count_session_actions(session.session_id) == 0


async def test_actions_are_append_only(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)
    action = await audit.log_action(session.session_id, ADMIN_ID, LEASEHOLDER_ID, "data_view", "Viewed arrears")

    action.description = "Viewed nothing"
    with pytest.raises(AuditRecordImmutableError):
        await db.commit()
    await db.rollback()


async def test_sessions_are_never_deleted(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    session = await _open(audit, db, LEASEHOLDER_ID)

    await db.delete(session)
    with pytest.raises(AuditRecordImmutableError):
        await db.commit()
    await db.rollback()


async def test_resolve_security_alert(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    alert = await audit.create_security_alert(
        AlertType.SESSION_LIMIT_EXCEEDED, RiskLevel.MEDIUM, "Daily limit hit", admin_id=ADMIN_ID
    )

    clock.advance(minutes=5)
    resolved = await audit.resolve_security_alert(alert.id, OTHER_ADMIN_ID)

    assert resolved.resolved is True
    assert resolved.resolved_by == OTHER_ADMIN_ID
    assert resolved.resolved_at == clock()
    assert await audit.list_security_alerts(resolved=False) == []
    assert await audit.resolve_security_alert("missing-alert", OTHER_ADMIN_ID) is None


async def test_audit_log_filters(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    first = await _open(audit, db, LEASEHOLDER_ID)
    await audit.end_session(first.session_id, SessionStatus.ENDED_MANUALLY)
    clock.advance(minutes=5)
    second = await _open(audit, db, HOMEOWNER_ID)
    await _open(audit, db, SOUTH_LEASEHOLDER_ID, admin_id=OTHER_ADMIN_ID)

    mine = await audit.get_audit_log(AuditLogFilter(admin_id=ADMIN_ID))
    assert [s.session_id for s in mine] == [second.session_id, first.session_id]

    active = await audit.get_audit_log(AuditLogFilter(admin_id=ADMIN_ID, status=SessionStatus.ACTIVE))
    assert [s.session_id for s in active] == [second.session_id]

    by_target = await audit.get_audit_log(AuditLogFilter(target_user_id=LEASEHOLDER_ID))
    assert [s.session_id for s in by_target] == [first.session_id]

    assert len(await audit.get_audit_log(limit=2)) == 2


async def test_audit_summary(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)

    first = await _open(audit, db, LEASEHOLDER_ID)
    await audit.log_action(first.session_id, ADMIN_ID, LEASEHOLDER_ID, "data_view", "Viewed account")
    await audit.log_action(first.session_id, ADMIN_ID, LEASEHOLDER_ID, "data_view", "Viewed arrears")
    clock.advance(minutes=10)
    await audit.end_session(first.session_id, SessionStatus.ENDED_MANUALLY)

    second = await _open(audit, db, LEASEHOLDER_ID)
    await audit.log_action(second.session_id, ADMIN_ID, LEASEHOLDER_ID, "financial_transaction", "Refunded fee")
    clock.advance(minutes=20)
    await audit.end_session(second.session_id, SessionStatus.ENDED_TIMEOUT)

    await _open(audit, db, HOMEOWNER_ID)
    await _open(audit, db, SOUTH_LEASEHOLDER_ID, admin_id=OTHER_ADMIN_ID)

    summary = await audit.get_audit_summary(admin_id=ADMIN_ID, top_n=5)

    assert summary.total_sessions == 3
    assert summary.active_sessions == 1
    assert summary.total_duration_minutes == 30
    assert summary.average_session_duration_minutes == 15.0
    assert summary.action_counts["data_view"] == 2
    assert summary.action_counts["financial_transaction"] == 1
    # two end-of-session lifecycle entries
    assert summary.action_counts["page_visit"] == 2
    assert summary.risk_level_counts["critical"] == 1
    assert summary.most_impersonated_users[0].target_user_id == LEASEHOLDER_ID
    assert summary.most_impersonated_users[0].session_count == 2
    assert len(summary.recent_sessions) == 3
    assert summary.recent_sessions[0].target_user_id == HOMEOWNER_ID


async def test_audit_summary_date_window(db: AsyncSession, clock: FakeClock) -> None:
    audit = ImpersonationAuditService(db, clock)
    await _open(audit, db, LEASEHOLDER_ID)
    clock.advance(minutes=60 * 24)
    cutoff = clock()
    await _open(audit, db, HOMEOWNER_ID)

    summary = await audit.get_audit_summary(date_from=cutoff)

    assert summary.total_sessions == 1
    assert summary.average_session_duration_minutes == 0.0
    assert summary.recent_sessions[0].target_user_id == HOMEOWNER_ID
