"""
Impersonation Safety Monitor

Arms three scheduler jobs per active session:
- warning: fires ``warning_at_minutes`` before the limit so the operator can extend
- timeout: fires at the session's limit and force-ends it
- inactivity: reset by operator activity; force-ends the session after silence

Every termination path (timers, the periodic sweep, per-request expiry
checks, emergency shutdown) goes through ``force_end_session``, which is
idempotent.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatedesk.core.impersonation import (
    ActionType,
    AlertType,
    EndReason,
    RiskLevel,
    status_for_end_reason,
)
from estatedesk.schemas.impersonation import ExtendSessionResponse, SessionLimits
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from estatedesk.services.impersonation_events import (
    EVENT_ENDED,
    EVENT_WARNING,
    ImpersonationEventBroker,
)
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

JOB_WARNING = "warning"
JOB_TIMEOUT = "timeout"
JOB_INACTIVITY = "inactivity"
JOB_KINDS = (JOB_WARNING, JOB_TIMEOUT, JOB_INACTIVITY)


@dataclass
class MonitoredSession:
    session_id: str
    admin_id: str
    target_user_id: str
    limits: SessionLimits
    started_at: datetime
    last_activity_at: datetime
    hidden: bool = False
    warning_issued: bool = False


def job_id(session_id: str, kind: str) -> str:
    return f"impersonation:{session_id}:{kind}"


class SafetyMonitor:
    """Long-lived; one per process, shared by every request."""

    def __init__(
        self,
        scheduler: BaseScheduler,
        session_factory: async_sessionmaker[AsyncSession],
        events: Optional[ImpersonationEventBroker] = None,
        clock: Clock = utcnow,
        warning_at_minutes: int = 25,
        inactivity_timeout_minutes: int = 30,
        hidden_inactivity_minutes: int = 5,
        extension_minutes: int = 30,
        exit_redirect: str = "/rtm",
    ):
        self.scheduler = scheduler
        self.session_factory = session_factory
        self.events = events
        self.clock = clock
        self.warning_at_minutes = warning_at_minutes
        self.inactivity_timeout_minutes = inactivity_timeout_minutes
        self.hidden_inactivity_minutes = hidden_inactivity_minutes
        self.extension_minutes = extension_minutes
        self.exit_redirect = exit_redirect
        self._sessions: Dict[str, MonitoredSession] = {}
        self._ending: Set[str] = set()

    def limits_for(self, max_duration_minutes: int) -> SessionLimits:
        return SessionLimits(
            max_duration_minutes=max_duration_minutes,
            warning_at_minutes=self.warning_at_minutes,
            inactivity_timeout_minutes=self.inactivity_timeout_minutes,
        )

    def get_monitored(self, session_id: str) -> Optional[MonitoredSession]:
        return self._sessions.get(session_id)

    def is_monitoring(self, session_id: str) -> bool:
        return session_id in self._sessions

    def sessions_for_admin(self, admin_id: str) -> List[str]:
        return [sid for sid, record in self._sessions.items() if record.admin_id == admin_id]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(
        self,
        session_id: str,
        kind: str,
        run_at: datetime,
        handler: Callable[[str], Awaitable[Any]],
    ) -> None:
        self._cancel(session_id, kind)
        self.scheduler.add_job(
            handler,
            "date",
            run_date=run_at.replace(tzinfo=timezone.utc),
            args=[session_id],
            id=job_id(session_id, kind),
            misfire_grace_time=None,
        )

    def _cancel(self, session_id: str, kind: str) -> bool:
        try:
            self.scheduler.remove_job(job_id(session_id, kind))
        except JobLookupError:
            return False
        return True

    def _arm_deadline_jobs(self, record: MonitoredSession) -> None:
        limits = record.limits
        deadline = record.started_at + timedelta(minutes=limits.max_duration_minutes)
        self._arm(record.session_id, JOB_TIMEOUT, deadline, self._on_hard_timeout)

        # Sessions shorter than the warning lead time get no warning
        if limits.max_duration_minutes > limits.warning_at_minutes:
            warn_at = deadline - timedelta(minutes=limits.warning_at_minutes)
            self._arm(record.session_id, JOB_WARNING, warn_at, self._on_warning)
        else:
            self._cancel(record.session_id, JOB_WARNING)

    def _arm_inactivity(self, record: MonitoredSession) -> None:
        window = (
            self.hidden_inactivity_minutes
            if record.hidden
            else record.limits.inactivity_timeout_minutes
        )
        run_at = record.last_activity_at + timedelta(minutes=window)
        self._arm(record.session_id, JOB_INACTIVITY, run_at, self._on_inactivity)

    async def start_monitoring(
        self,
        session_id: str,
        admin_id: str,
        target_user_id: str,
        limits: SessionLimits,
        started_at: Optional[datetime] = None,
        resumed: bool = False,
    ) -> None:
        """
        Arm the warning, hard-timeout and inactivity timers for a session.

        ``resumed`` marks a session picked up again after the process lost
        its timers (restart or redeploy); deadlines still run from
        ``started_at``.
        """
        now = self.clock()
        record = MonitoredSession(
            session_id=session_id,
            admin_id=admin_id,
            target_user_id=target_user_id,
            limits=limits,
            started_at=started_at or now,
            last_activity_at=now,
        )
        self._sessions[session_id] = record
        self._arm_deadline_jobs(record)
        self._arm_inactivity(record)

        logger.info(
            "impersonation_monitoring_resumed" if resumed else "impersonation_monitoring_started",
            extra={
                "session_id": session_id,
                "max_duration_minutes": limits.max_duration_minutes,
                "inactivity_timeout_minutes": limits.inactivity_timeout_minutes,
            },
        )

        await self._log_system_action(
            record,
            ActionType.PAGE_VISIT,
            "Session safety monitoring resumed" if resumed else "Session safety monitoring started",
            RiskLevel.LOW,
        )

    def stop_monitoring(self, session_id: str) -> bool:
        """Clear every timer for the session. Safe to call any number of times."""
        removed = [self._cancel(session_id, kind) for kind in JOB_KINDS]
        record = self._sessions.pop(session_id, None)
        stopped = record is not None or any(removed)
        if stopped:
            logger.info("impersonation_monitoring_stopped", extra={"session_id": session_id})
        return stopped

    def record_activity(self, session_id: str) -> bool:
        """Operator input observed; restart the inactivity window."""
        record = self._sessions.get(session_id)
        if record is None:
            return False
        record.last_activity_at = self.clock()
        record.hidden = False
        self._arm_inactivity(record)
        return True

    def set_visibility(self, session_id: str, hidden: bool) -> bool:
        """Page hidden: shorten the inactivity window. Visible again: treat as activity."""
        record = self._sessions.get(session_id)
        if record is None:
            return False
        if not hidden:
            return self.record_activity(session_id)
        record.hidden = True
        record.last_activity_at = self.clock()
        self._arm_inactivity(record)
        return True

    # ------------------------------------------------------------------
    # Timer handlers
    # ------------------------------------------------------------------

    async def _on_warning(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None:
            return
        record.warning_issued = True
        logger.info("impersonation_expiry_warning", extra={"session_id": session_id})
        await self._notify(
            record.admin_id,
            {
                "type": EVENT_WARNING,
                "session_id": session_id,
                "minutes_remaining": record.limits.warning_at_minutes,
                "extension_minutes": self.extension_minutes,
            },
        )

    async def _on_hard_timeout(self, session_id: str) -> None:
        await self.force_end_session(session_id, EndReason.TIMEOUT.value)

    async def _on_inactivity(self, session_id: str) -> None:
        await self.force_end_session(session_id, EndReason.INACTIVITY.value)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def force_end_session(self, session_id: str, reason: str) -> bool:
        """
        End a session outside the operator's control.

        Logs a high-risk action, closes the session with the status mapped
        from ``reason``, clears its timers and tells the operator's UI to
        leave the impersonated context. A session that is no longer active
        is left alone and False is returned.
        """
        if session_id in self._ending:
            return False
        self._ending.add(session_id)
        try:
            async with self.session_factory() as db:
                audit = ImpersonationAuditService(db, self.clock)
                session = await audit.get_session(session_id)
                if session is None or not session.is_active:
                    self.stop_monitoring(session_id)
                    return False

                admin_id = session.admin_id
                try:
                    await audit.log_action(
                        session_id=session_id,
                        admin_id=admin_id,
                        target_user_id=session.target_user_id,
                        action_type=ActionType.PAGE_VISIT,
                        description=f"Session forcibly ended: {reason}",
                        risk_level=RiskLevel.HIGH,
                        system_generated=True,
                    )
                except SQLAlchemyError:
                    logger.exception("impersonation_force_end_action_failed", extra={"session_id": session_id})
                    await db.rollback()

                ended = await audit.end_session(
                    session_id,
                    status_for_end_reason(reason),
                    f"Session automatically ended due to {reason}",
                )
        finally:
            self._ending.discard(session_id)

        self.stop_monitoring(session_id)
        if ended is None:
            return False

        logger.warning(
            "impersonation_force_ended",
            extra={"session_id": session_id, "reason": reason, "status": ended.status},
        )
        await self._notify(
            admin_id,
            {
                "type": EVENT_ENDED,
                "session_id": session_id,
                "reason": reason,
                "redirect_to": self.exit_redirect,
            },
        )
        return True

    async def request_extension(
        self,
        session_id: str,
        additional_minutes: Optional[int] = None,
    ) -> ExtendSessionResponse:
        """
        Extend a session's limit, never past the grant's ceiling.

        Refused when no headroom remains.
        """
        requested = additional_minutes or self.extension_minutes
        record = self._sessions.get(session_id)

        async with self.session_factory() as db:
            audit = ImpersonationAuditService(db, self.clock)
            session = await audit.get_session(session_id)
            if session is None or not session.is_active:
                return ExtendSessionResponse(success=False, error="No active impersonation session found")

            grant = await audit.get_user_permissions(session.admin_id)
            if grant is None or not grant.is_usable(self.clock()):
                return ExtendSessionResponse(success=False, error="No active impersonation permissions")

            ceiling = grant.max_session_duration_minutes
            current = record.limits.max_duration_minutes if record else ceiling
            extension = min(requested, ceiling - current)
            if record is None or extension <= 0:
                return ExtendSessionResponse(
                    success=False,
                    max_duration_minutes=current,
                    error="Maximum session duration reached. Cannot extend further.",
                )

            record.limits = record.limits.model_copy(
                update={"max_duration_minutes": current + extension}
            )
            record.warning_issued = False
            self._arm_deadline_jobs(record)

            try:
                await audit.log_action(
                    session_id=session_id,
                    admin_id=session.admin_id,
                    target_user_id=session.target_user_id,
                    action_type=ActionType.SETTINGS_CHANGE,
                    description=f"Session extended by {extension} minutes",
                    risk_level=RiskLevel.MEDIUM,
                    system_generated=True,
                )
            except SQLAlchemyError:
                logger.exception("impersonation_extension_action_failed", extra={"session_id": session_id})
                await db.rollback()

        logger.info(
            "impersonation_session_extended",
            extra={
                "session_id": session_id,
                "extended_by_minutes": extension,
                "max_duration_minutes": record.limits.max_duration_minutes,
            },
        )
        return ExtendSessionResponse(
            success=True,
            extended_by_minutes=extension,
            max_duration_minutes=record.limits.max_duration_minutes,
        )

    async def sweep_overdue_sessions(self) -> int:
        """
        Periodic re-check: end every active session past its grant's limit
        (or whose grant no longer holds) and drop timers of sessions that
        ended elsewhere.
        """
        async with self.session_factory() as db:
            audit = ImpersonationAuditService(db, self.clock)
            overdue = [
                (session.session_id, reason.value)
                for session, reason in await audit.find_overdue_sessions()
            ]
            active_ids = {session.session_id for session in await audit.get_active_sessions()}

        for session_id in list(self._sessions):
            if session_id not in active_ids:
                self.stop_monitoring(session_id)

        ended = 0
        for session_id, reason in overdue:
            if await self.force_end_session(session_id, reason):
                ended += 1

        if ended:
            logger.info("impersonation_expiry_sweep", extra={"ended": ended})
        return ended

    async def emergency_shutdown(self, reason: str) -> int:
        """End every active session at once and raise a critical alert."""
        async with self.session_factory() as db:
            audit = ImpersonationAuditService(db, self.clock)
            active = [(session.session_id, session.admin_id) for session in await audit.get_active_sessions()]
            count = await audit.force_end_all_sessions(None, reason)
            await audit.create_security_alert(
                alert_type=AlertType.SESSION_TIMEOUT,
                severity=RiskLevel.CRITICAL,
                message=f"Emergency shutdown: {reason}",
            )

        for session_id in list(self._sessions):
            self.stop_monitoring(session_id)

        for session_id, admin_id in active:
            self.stop_monitoring(session_id)
            await self._notify(
                admin_id,
                {
                    "type": EVENT_ENDED,
                    "session_id": session_id,
                    "reason": EndReason.SECURITY.value,
                    "redirect_to": self.exit_redirect,
                },
            )

        logger.critical("impersonation_emergency_shutdown", extra={"sessions_ended": count, "reason": reason})
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _notify(self, admin_id: str, event: Dict[str, Any]) -> None:
        if self.events is None:
            return
        await self.events.send_to_admin(admin_id, event)

    async def _log_system_action(
        self,
        record: MonitoredSession,
        action_type: ActionType,
        description: str,
        risk_level: RiskLevel,
    ) -> None:
        async with self.session_factory() as db:
            audit = ImpersonationAuditService(db, self.clock)
            try:
                await audit.log_action(
                    session_id=record.session_id,
                    admin_id=record.admin_id,
                    target_user_id=record.target_user_id,
                    action_type=action_type,
                    description=description,
                    risk_level=risk_level,
                    system_generated=True,
                )
            except SQLAlchemyError:
                logger.exception("impersonation_monitor_action_failed", extra={"session_id": record.session_id})
                await db.rollback()
