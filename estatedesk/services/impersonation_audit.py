"""
Impersonation Audit Service

Owns every read and write against the impersonation audit log and the
grant store:
- Open and close session records
- Append action records (and raise security alerts for risky ones)
- Session liveness checks against the grant's limits
- Reporting rollups for the audit dashboard
"""

import logging
import secrets
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import and_, desc, func, select, text, true
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.core.errors import ImpersonationConflictError
from estatedesk.core.impersonation import (
    ABNORMAL_END_STATUSES,
    ALERTING_RISK_LEVELS,
    ActionType,
    AlertType,
    EndReason,
    RiskLevel,
    SessionStatus,
    assess_action_risk,
    session_duration_minutes,
)
from estatedesk.models.impersonation import (
    ImpersonationAction,
    ImpersonationGrant,
    ImpersonationSecurityAlert,
    ImpersonationSession,
)
from estatedesk.schemas.impersonation import (
    ActionContext,
    AuditLogFilter,
    AuditSummary,
    ImpersonatedUserCount,
    SessionRecord,
    SessionValidation,
)
from estatedesk.schemas.user import UserProfile
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

RECENT_SESSION_WINDOW = 10


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing}\n{note}"


class ImpersonationAuditService:
    """Service for the impersonation audit log and grant store."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def is_available(self) -> bool:
        """Cheap round trip to the audit store."""
        try:
            await self.db.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("impersonation_audit_store_unavailable", exc_info=True)
            await self.db.rollback()
            return False
        return True

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def get_user_permissions(self, admin_id: str) -> Optional[ImpersonationGrant]:
        """Latest active grant for the admin, expired or not.

        Callers decide what an expired grant means; ``is_usable`` covers both.
        """
        result = await self.db.execute(
            select(ImpersonationGrant)
            .where(
                and_(
                    ImpersonationGrant.admin_id == admin_id,
                    ImpersonationGrant.is_active.is_(True),
                )
            )
            .order_by(desc(ImpersonationGrant.granted_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(
        self,
        admin_id: str,
        admin_email: str,
        target: UserProfile,
        reason: str,
        additional_notes: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ImpersonationSession:
        """
        Open a session record with status ``active``.

        Raises:
            ImpersonationConflictError: the admin already holds an active
                session on this target (enforced by the store).
        """
        session = ImpersonationSession(
            id=str(uuid4()),
            session_id=secrets.token_urlsafe(24),
            admin_id=admin_id,
            admin_email=admin_email,
            admin_ip_address=ip_address,
            admin_user_agent=user_agent,
            target_user_id=target.id,
            target_email=target.email,
            target_role=target.role,
            target_building_id=target.building_id,
            reason=reason,
            additional_notes=additional_notes,
            started_at=self.clock(),
            status=SessionStatus.ACTIVE.value,
        )
        self.db.add(session)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            logger.warning(
                "impersonation_session_conflict",
                extra={"admin_id": admin_id, "target_user_id": target.id},
            )
            raise ImpersonationConflictError(
                "An impersonation session for this user is already active"
            ) from exc

        logger.info(
            "impersonation_session_opened",
            extra={
                "session_id": session.session_id,
                "admin_id": admin_id,
                "target_user_id": target.id,
                "reason": reason,
            },
        )
        return session

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus,
        additional_notes: Optional[str] = None,
    ) -> Optional[ImpersonationSession]:
        """
        Close an active session.

        Returns:
            The closed session, or None if no active session has that id.
        """
        session = await self._get_active_session(session_id)
        if session is None:
            return None

        ended_at = self.clock()
        session.ended_at = ended_at
        session.duration_minutes = session_duration_minutes(session.started_at, ended_at)
        session.status = SessionStatus(status).value
        session.additional_notes = _append_note(session.additional_notes, additional_notes)
        await self.db.commit()

        logger.info(
            "impersonation_session_closed",
            extra={
                "session_id": session_id,
                "status": session.status,
                "duration_minutes": session.duration_minutes,
            },
        )

        try:
            await self.log_action(
                session_id=session_id,
                admin_id=session.admin_id,
                target_user_id=session.target_user_id,
                action_type=ActionType.PAGE_VISIT,
                description=f"Impersonation session ended with status: {session.status}",
                risk_level=RiskLevel.LOW,
                system_generated=True,
            )
        except SQLAlchemyError:
            logger.exception("impersonation_end_action_failed", extra={"session_id": session_id})
            await self.db.rollback()

        return session

    async def get_session(self, session_id: str) -> Optional[ImpersonationSession]:
        result = await self.db.execute(
            select(ImpersonationSession).where(ImpersonationSession.session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def _get_active_session(self, session_id: str) -> Optional[ImpersonationSession]:
        result = await self.db.execute(
            select(ImpersonationSession).where(
                and_(
                    ImpersonationSession.session_id == session_id,
                    ImpersonationSession.status == SessionStatus.ACTIVE.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_active_sessions(
        self,
        admin_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
    ) -> List[ImpersonationSession]:
        query = select(ImpersonationSession).where(
            ImpersonationSession.status == SessionStatus.ACTIVE.value
        )

        conditions = []
        if admin_id:
            conditions.append(ImpersonationSession.admin_id == admin_id)
        if target_user_id:
            conditions.append(ImpersonationSession.target_user_id == target_user_id)

        if conditions:
            query = query.where(and_(*conditions))

        query = query.order_by(desc(ImpersonationSession.started_at))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_sessions_started_on(self, admin_id: str, day: date) -> int:
        """Sessions the admin started within the UTC calendar day ``day``."""
        day_start = datetime.combine(day, time.min)
        day_end = day_start + timedelta(days=1)
        result = await self.db.execute(
            select(func.count(ImpersonationSession.id)).where(
                and_(
                    ImpersonationSession.admin_id == admin_id,
                    ImpersonationSession.started_at >= day_start,
                    ImpersonationSession.started_at < day_end,
                )
            )
        )
        return result.scalar() or 0

    async def get_recent_sessions(
        self, admin_id: str, limit: int = RECENT_SESSION_WINDOW
    ) -> List[ImpersonationSession]:
        result = await self.db.execute(
            select(ImpersonationSession)
            .where(ImpersonationSession.admin_id == admin_id)
            .order_by(desc(ImpersonationSession.started_at))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_recent_abnormal_endings(
        self, admin_id: str, window: int = RECENT_SESSION_WINDOW
    ) -> int:
        """How many of the admin's last ``window`` sessions ended on security or error."""
        abnormal = {status.value for status in ABNORMAL_END_STATUSES}
        recent = await self.get_recent_sessions(admin_id, limit=window)
        return sum(1 for session in recent if session.status in abnormal)

    async def get_audit_log(
        self,
        filters: Optional[AuditLogFilter] = None,
        limit: int = 100,
    ) -> List[ImpersonationSession]:
        """Session records matching ``filters``, newest first."""
        query = select(ImpersonationSession)

        conditions = []
        if filters:
            if filters.session_id:
                conditions.append(ImpersonationSession.session_id == filters.session_id)
            if filters.admin_id:
                conditions.append(ImpersonationSession.admin_id == filters.admin_id)
            if filters.target_user_id:
                conditions.append(ImpersonationSession.target_user_id == filters.target_user_id)
            if filters.status:
                conditions.append(ImpersonationSession.status == filters.status.value)
            if filters.started_from:
                conditions.append(ImpersonationSession.started_at >= filters.started_from)
            if filters.started_to:
                conditions.append(ImpersonationSession.started_at <= filters.started_to)

        if conditions:
            query = query.where(and_(*conditions))

        query = query.order_by(desc(ImpersonationSession.started_at)).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def validate_session(self, session_id: str) -> SessionValidation:
        """
        Check an active session against its grant's maximum duration.

        Warns at 15 and 5 minutes remaining; invalid once the limit is reached.
        """
        session = await self._get_active_session(session_id)
        if session is None:
            return SessionValidation(valid=False, warnings=["Session not found or no longer active"])

        grant = await self.get_user_permissions(session.admin_id)
        now = self.clock()
        if grant is None or not grant.is_usable(now):
            return SessionValidation(valid=False, warnings=["No active impersonation permissions"])

        elapsed = (now - session.started_at).total_seconds() / 60
        remaining = grant.max_session_duration_minutes - elapsed

        if remaining <= 0:
            return SessionValidation(
                valid=False,
                time_remaining_minutes=0,
                warnings=["Session has exceeded maximum duration"],
            )

        warnings: List[str] = []
        if remaining <= 5:
            warnings.append("Session expires in less than 5 minutes")
        elif remaining <= 15:
            warnings.append("Session expires in less than 15 minutes")

        return SessionValidation(
            valid=True,
            time_remaining_minutes=round(remaining, 2),
            warnings=warnings,
        )

    async def force_end_all_sessions(
        self,
        admin_id: Optional[str],
        reason: str = "Security measure",
    ) -> int:
        """
        Close every active session (for one admin, or everyone when
        ``admin_id`` is None) with status ``ended_security``.
        """
        sessions = await self.get_active_sessions(admin_id=admin_id)
        if not sessions:
            return 0

        ended_at = self.clock()
        for session in sessions:
            session.ended_at = ended_at
            session.duration_minutes = session_duration_minutes(session.started_at, ended_at)
            session.status = SessionStatus.ENDED_SECURITY.value
            session.additional_notes = _append_note(
                session.additional_notes, f"Force ended: {reason}"
            )
        await self.db.commit()

        logger.warning(
            "impersonation_sessions_force_ended",
            extra={"admin_id": admin_id, "count": len(sessions), "reason": reason},
        )
        return len(sessions)

    async def find_overdue_sessions(self) -> List[Tuple[ImpersonationSession, EndReason]]:
        """
        Active sessions that must not continue.

        A session past its grant's maximum duration ends on ``timeout``; one
        whose grant was revoked or has expired ends on ``security``.
        """
        now = self.clock()
        grants: Dict[str, Optional[ImpersonationGrant]] = {}
        overdue: List[Tuple[ImpersonationSession, EndReason]] = []

        for session in await self.get_active_sessions():
            if session.admin_id not in grants:
                grants[session.admin_id] = await self.get_user_permissions(session.admin_id)
            grant = grants[session.admin_id]

            if grant is None or not grant.is_usable(now):
                overdue.append((session, EndReason.SECURITY))
                continue

            elapsed = (now - session.started_at).total_seconds() / 60
            if elapsed >= grant.max_session_duration_minutes:
                overdue.append((session, EndReason.TIMEOUT))

        return overdue

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def log_action(
        self,
        session_id: str,
        admin_id: str,
        target_user_id: str,
        action_type: ActionType,
        description: str,
        context: Optional[ActionContext] = None,
        risk_level: Optional[RiskLevel] = None,
        system_generated: bool = False,
        performed_at: Optional[datetime] = None,
    ) -> ImpersonationAction:
        """
        Append an action record.

        The risk level comes from the action-risk table unless given. High
        and critical actions, and actions the grant restricts, raise security
        alerts on a best-effort basis after the record is written.
        """
        context = context or ActionContext()
        action_type = ActionType(action_type)
        risk = RiskLevel(risk_level) if risk_level else assess_action_risk(action_type)

        action = ImpersonationAction(
            id=str(uuid4()),
            session_id=session_id,
            admin_id=admin_id,
            target_user_id=target_user_id,
            action_type=action_type.value,
            description=description,
            page_context=context.page_context,
            component_name=context.component_name,
            affected_data_type=context.affected_data_type,
            affected_record_id=context.affected_record_id,
            old_values=context.old_values,
            new_values=context.new_values,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            risk_level=risk.value,
            requires_approval=context.requires_approval,
            system_generated=system_generated,
            performed_at=performed_at or self.clock(),
        )
        self.db.add(action)
        await self.db.commit()

        try:
            await self._check_for_security_alerts(action)
        except SQLAlchemyError:
            logger.exception(
                "impersonation_alert_check_failed",
                extra={"session_id": session_id, "action_type": action_type.value},
            )
            await self.db.rollback()

        return action

    async def get_session_actions(
        self, session_id: str, include_system: bool = True
    ) -> List[ImpersonationAction]:
        query = select(ImpersonationAction).where(ImpersonationAction.session_id == session_id)
        if not include_system:
            query = query.where(ImpersonationAction.system_generated.is_(False))
        query = query.order_by(ImpersonationAction.performed_at)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_session_actions(self, session_id: str) -> int:
        """Actions the operator performed in the session, excluding lifecycle entries."""
        result = await self.db.execute(
            select(func.count(ImpersonationAction.id)).where(
                and_(
                    ImpersonationAction.session_id == session_id,
                    ImpersonationAction.system_generated.is_(False),
                )
            )
        )
        return result.scalar() or 0

    # ------------------------------------------------------------------
    # Security alerts
    # ------------------------------------------------------------------

    async def _check_for_security_alerts(self, action: ImpersonationAction) -> None:
        if action.risk_level in {level.value for level in ALERTING_RISK_LEVELS}:
            await self.create_security_alert(
                alert_type=AlertType.SUSPICIOUS_ACTIVITY,
                severity=RiskLevel(action.risk_level),
                message=f"High-risk action performed: {action.action_type} - {action.description}",
                session_id=action.session_id,
                admin_id=action.admin_id,
                target_user_id=action.target_user_id,
            )

        grant = await self.get_user_permissions(action.admin_id)
        if grant is not None and grant.restricts_action(action.action_type):
            await self.create_security_alert(
                alert_type=AlertType.UNAUTHORIZED_ACTION,
                severity=RiskLevel.HIGH,
                message=f"Restricted action attempted: {action.action_type}",
                session_id=action.session_id,
                admin_id=action.admin_id,
                target_user_id=action.target_user_id,
            )

    async def create_security_alert(
        self,
        alert_type: AlertType,
        severity: RiskLevel,
        message: str,
        session_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
    ) -> ImpersonationSecurityAlert:
        alert = ImpersonationSecurityAlert(
            id=str(uuid4()),
            type=AlertType(alert_type).value,
            severity=RiskLevel(severity).value,
            message=message,
            session_id=session_id,
            admin_id=admin_id,
            target_user_id=target_user_id,
            detected_at=self.clock(),
            resolved=False,
        )
        self.db.add(alert)
        await self.db.commit()

        logger.warning(
            "impersonation_security_alert",
            extra={
                "alert_type": alert.type,
                "severity": alert.severity,
                "session_id": session_id,
                "admin_id": admin_id,
            },
        )
        return alert

    async def list_security_alerts(
        self,
        admin_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        limit: int = 100,
    ) -> List[ImpersonationSecurityAlert]:
        query = select(ImpersonationSecurityAlert)

        conditions = []
        if admin_id:
            conditions.append(ImpersonationSecurityAlert.admin_id == admin_id)
        if resolved is not None:
            conditions.append(ImpersonationSecurityAlert.resolved.is_(resolved))

        if conditions:
            query = query.where(and_(*conditions))

        query = query.order_by(desc(ImpersonationSecurityAlert.detected_at)).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def resolve_security_alert(
        self, alert_id: str, resolved_by: str
    ) -> Optional[ImpersonationSecurityAlert]:
        alert = await self.db.get(ImpersonationSecurityAlert, alert_id)
        if alert is None:
            return None
        if not alert.resolved:
            alert.resolved = True
            alert.resolved_at = self.clock()
            alert.resolved_by = resolved_by
            await self.db.commit()
        return alert

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_audit_summary(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        admin_id: Optional[str] = None,
        top_n: int = 10,
    ) -> AuditSummary:
        """
        Aggregate impersonation activity over a date window.

        Args:
            date_from: Include sessions started at or after this time
            date_to: Include sessions started at or before this time
            admin_id: Restrict to one admin's sessions
            top_n: Size of the most-impersonated and recent-session lists
        """
        session_conditions = []
        action_conditions = []
        if date_from:
            session_conditions.append(ImpersonationSession.started_at >= date_from)
            action_conditions.append(ImpersonationAction.performed_at >= date_from)
        if date_to:
            session_conditions.append(ImpersonationSession.started_at <= date_to)
            action_conditions.append(ImpersonationAction.performed_at <= date_to)
        if admin_id:
            session_conditions.append(ImpersonationSession.admin_id == admin_id)
            action_conditions.append(ImpersonationAction.admin_id == admin_id)

        session_where = and_(true(), *session_conditions)
        action_where = and_(true(), *action_conditions)

        totals = await self.db.execute(
            select(
                func.count(ImpersonationSession.id),
                func.coalesce(func.sum(ImpersonationSession.duration_minutes), 0),
                func.count(ImpersonationSession.duration_minutes),
            ).where(session_where)
        )
        total_sessions, total_duration, ended_sessions = totals.one()

        active_result = await self.db.execute(
            select(func.count(ImpersonationSession.id)).where(
                and_(session_where, ImpersonationSession.status == SessionStatus.ACTIVE.value)
            )
        )
        active_sessions = active_result.scalar() or 0

        action_rows = await self.db.execute(
            select(ImpersonationAction.action_type, func.count(ImpersonationAction.id))
            .where(action_where)
            .group_by(ImpersonationAction.action_type)
        )
        action_counts = {row[0]: row[1] for row in action_rows.fetchall()}

        risk_rows = await self.db.execute(
            select(ImpersonationAction.risk_level, func.count(ImpersonationAction.id))
            .where(action_where)
            .group_by(ImpersonationAction.risk_level)
        )
        risk_level_counts = {row[0]: row[1] for row in risk_rows.fetchall()}

        top_rows = await self.db.execute(
            select(
                ImpersonationSession.target_user_id,
                func.max(ImpersonationSession.target_email),
                func.count(ImpersonationSession.id).label("session_count"),
            )
            .where(session_where)
            .group_by(ImpersonationSession.target_user_id)
            .order_by(desc("session_count"), ImpersonationSession.target_user_id)
            .limit(top_n)
        )
        most_impersonated = [
            ImpersonatedUserCount(target_user_id=row[0], target_email=row[1], session_count=row[2])
            for row in top_rows.fetchall()
        ]

        recent_result = await self.db.execute(
            select(ImpersonationSession)
            .where(session_where)
            .order_by(desc(ImpersonationSession.started_at))
            .limit(top_n)
        )
        recent_sessions = [
            SessionRecord.model_validate(session) for session in recent_result.scalars().all()
        ]

        average = round(total_duration / ended_sessions, 2) if ended_sessions else 0.0

        return AuditSummary(
            total_sessions=total_sessions,
            active_sessions=active_sessions,
            total_duration_minutes=int(total_duration),
            average_session_duration_minutes=average,
            action_counts=action_counts,
            risk_level_counts=risk_level_counts,
            most_impersonated_users=most_impersonated,
            recent_sessions=recent_sessions,
        )
