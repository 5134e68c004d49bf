"""
Per-request entry point to impersonation for routers and other features.

Wires the audit service, orchestrator, security validator and state holder
for one real actor, and forwards timer-relevant signals to the shared
safety monitor.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.core.errors import ImpersonationPolicyViolation
from estatedesk.core.impersonation import (
    PRIVILEGED_ROLE,
    POLICY_FORBIDDEN_ACTIONS,
    ActionType,
    EndReason,
)
from estatedesk.models.impersonation import ImpersonationGrant, ImpersonationSession
from estatedesk.schemas.impersonation import (
    AuditLogFilter,
    AuditSummary,
    ExtendSessionResponse,
    ImpersonationEndResponse,
    ImpersonationStartRequest,
    ImpersonationStartResponse,
    LogActionRequest,
    SessionValidation,
    UserSearchFilters,
    UserSearchResponse,
)
from estatedesk.schemas.user import UserProfile
from estatedesk.services.audit_queue import AuditWriteQueue
from estatedesk.services.identity import DatabaseIdentityProvider, UserDirectory
from estatedesk.services.impersonation import ImpersonationService
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from estatedesk.services.impersonation_safety import SafetyMonitor
from estatedesk.services.impersonation_security import ImpersonationSecurityValidator
from estatedesk.services.impersonation_state import (
    ImpersonationState,
    ImpersonationStateHolder,
    SessionStorage,
)
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class ImpersonationFacade:
    def __init__(
        self,
        real_actor: UserProfile,
        db: AsyncSession,
        storage: SessionStorage,
        monitor: SafetyMonitor,
        identity: Optional[UserDirectory] = None,
        audit_queue: Optional[AuditWriteQueue] = None,
        clock: Clock = utcnow,
        inactive_account_days: int = 30,
    ):
        self.real_actor = real_actor
        self.monitor = monitor
        self.clock = clock
        self.identity = identity or DatabaseIdentityProvider(db, real_actor.id)
        self.audit = ImpersonationAuditService(db, clock)
        self.state_holder = ImpersonationStateHolder(
            storage,
            self.identity,
            real_actor=real_actor,
            clock=clock,
            on_expired=monitor.force_end_session,
        )
        self.service = ImpersonationService(
            self.audit,
            self.identity,
            state=self.state_holder,
            security_validator=ImpersonationSecurityValidator(self.audit, self.identity, clock),
            audit_queue=audit_queue,
            clock=clock,
            inactive_account_days=inactive_account_days,
        )

    async def load(self) -> None:
        """Restore persisted state for this request and enforce expiry."""
        if not await self.state_holder.rehydrate():
            return

        session = await self.audit.get_session(self.state_holder.session_id)
        if session is None or not session.is_active or session.admin_id != self.real_actor.id:
            # Ended elsewhere (timer, sweep, another tab); drop the stale record
            self.state_holder.clear()
            return

        await self.state_holder.check_expiry()
        if not self.is_impersonating or self.monitor.is_monitoring(session.session_id):
            return

        # Timers live in process memory; a restarted worker has none for this session
        await self.monitor.start_monitoring(
            session_id=session.session_id,
            admin_id=session.admin_id,
            target_user_id=session.target_user_id,
            limits=self.monitor.limits_for(self.state.max_duration_minutes),
            started_at=session.started_at,
            resumed=True,
        )

    @property
    def is_impersonating(self) -> bool:
        return self.state_holder.is_impersonating

    @property
    def can_impersonate(self) -> bool:
        return self.real_actor.role == PRIVILEGED_ROLE.value

    @property
    def state(self) -> ImpersonationState:
        return self.state_holder.state

    def get_effective_actor(self) -> Optional[UserProfile]:
        return self.state_holder.get_effective_actor()

    async def start_impersonation(
        self,
        request: ImpersonationStartRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ImpersonationStartResponse:
        if self.is_impersonating:
            return ImpersonationStartResponse(success=False, error="Already impersonating another user")

        result = await self.service.start_impersonation(
            request,
            admin_id=self.real_actor.id,
            admin_email=self.real_actor.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if result.success and result.session_id and result.effective_actor:
            await self.monitor.start_monitoring(
                session_id=result.session_id,
                admin_id=self.real_actor.id,
                target_user_id=result.effective_actor.id,
                limits=self.monitor.limits_for(result.max_duration),
                started_at=self.state_holder.state.start_time,
            )
        return result

    async def end_impersonation(
        self,
        reason: str = EndReason.MANUAL.value,
        additional_notes: Optional[str] = None,
    ) -> ImpersonationEndResponse:
        session_id = self.state_holder.session_id
        if not self.is_impersonating or not session_id:
            return ImpersonationEndResponse(success=False, error="No active impersonation session")

        self.monitor.stop_monitoring(session_id)
        result = await self.service.end_impersonation(session_id, reason, additional_notes)
        if self.state_holder.session_id == session_id:
            self.state_holder.clear()
        return result

    async def log_action(self, action: LogActionRequest) -> None:
        """
        Record an operator action against the current session.

        No-op when not impersonating. An action the current context refuses
        is recorded as a blocked attempt before the violation is raised.

        Raises:
            ImpersonationPolicyViolation: the action may not run while impersonating.
        """
        if not self.is_impersonating:
            return

        effective = self.state_holder.get_effective_actor()
        session_id = self.state_holder.session_id
        allowed = await self.can_perform_action(action.action_type)
        await self.service.log_action(
            session_id=session_id,
            admin_id=self.real_actor.id,
            target_user_id=effective.id,
            action_type=action.action_type,
            description=action.description if allowed else f"Blocked: {action.description}",
            context=action.context,
        )
        if session_id:
            self.monitor.record_activity(session_id)

        if not allowed:
            logger.warning(
                "impersonation_action_blocked",
                extra={"session_id": session_id, "action_type": ActionType(action.action_type).value},
            )
            raise ImpersonationPolicyViolation(
                f"Action not permitted while impersonating: {ActionType(action.action_type).value}"
            )

    async def search_users(
        self,
        filters: Optional[UserSearchFilters] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> UserSearchResponse:
        return await self.service.search_users(filters, page, page_size, self.real_actor.id)

    async def validate_request(self, request: ImpersonationStartRequest):
        return await self.service.validate_impersonation_request(request, self.real_actor.id)

    async def get_audit_log(
        self,
        filters: Optional[AuditLogFilter] = None,
        limit: int = 100,
    ) -> List[ImpersonationSession]:
        """The caller's own sessions; other admins' sessions are never listed."""
        filters = (filters or AuditLogFilter()).model_copy(update={"admin_id": self.real_actor.id})
        return await self.audit.get_audit_log(filters, limit)

    async def get_audit_summary(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        top_n: int = 10,
    ) -> AuditSummary:
        return await self.audit.get_audit_summary(
            date_from=date_from,
            date_to=date_to,
            admin_id=self.real_actor.id,
            top_n=top_n,
        )

    async def check_session_status(self) -> SessionValidation:
        session_id = self.state_holder.session_id
        if not self.is_impersonating or not session_id:
            return SessionValidation(valid=False, time_remaining_minutes=0)
        return await self.audit.validate_session(session_id)

    async def can_perform_action(self, action_type: ActionType) -> bool:
        """Whether the action may run in the current context.

        Always true when not impersonating. While impersonating, policy-
        forbidden actions and the grant's restricted actions are refused,
        as is anything outside a non-empty allowed-action list.
        """
        if not self.is_impersonating:
            return True

        action_type = ActionType(action_type)
        if action_type in POLICY_FORBIDDEN_ACTIONS:
            return False

        try:
            grant = await self.audit.get_user_permissions(self.real_actor.id)
        except SQLAlchemyError:
            logger.exception("impersonation_permission_lookup_failed", extra={"admin_id": self.real_actor.id})
            return False

        if grant is None or not grant.is_usable(self.clock()):
            return False
        if grant.restricts_action(action_type.value):
            return False
        if grant.allowed_actions and action_type.value not in grant.allowed_actions:
            return False
        return True

    async def extend_session(self, additional_minutes: Optional[int] = None) -> ExtendSessionResponse:
        session_id = self.state_holder.session_id
        if not self.is_impersonating or not session_id:
            return ExtendSessionResponse(success=False, error="No active impersonation session")

        result = await self.monitor.request_extension(session_id, additional_minutes)
        if result.success:
            self.state_holder.extend(result.extended_by_minutes)
        return result

    async def get_user_permissions(self) -> Optional[ImpersonationGrant]:
        return await self.audit.get_user_permissions(self.real_actor.id)

    def record_activity(self) -> bool:
        session_id = self.state_holder.session_id
        if not self.is_impersonating or not session_id:
            return False
        return self.monitor.record_activity(session_id)

    def set_visibility(self, hidden: bool) -> bool:
        session_id = self.state_holder.session_id
        if not self.is_impersonating or not session_id:
            return False
        return self.monitor.set_visibility(session_id, hidden)
