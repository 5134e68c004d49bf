"""
Impersonation Service

Policy engine behind super-admin impersonation:
- User search scoped by the admin's grant
- End-to-end validation of a start request
- Start and end sessions
- Action logging that never blocks the operator
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from estatedesk.core.errors import (
    ImpersonationAuthorizationError,
    ImpersonationCapacityError,
    ImpersonationConflictError,
    ImpersonationError,
    ImpersonationNotFoundError,
)
from estatedesk.core.impersonation import (
    PRIVILEGED_ROLE,
    AccountStatus,
    ActionType,
    RiskLevel,
    SessionStatus,
    status_for_end_reason,
)
from estatedesk.models.impersonation import ImpersonationGrant
from estatedesk.schemas.impersonation import (
    ActionContext,
    ImpersonationEndResponse,
    ImpersonationStartRequest,
    ImpersonationStartResponse,
    UserSearchFilters,
    UserSearchResponse,
    UserSearchResult,
    ValidationResult,
)
from estatedesk.services.audit_queue import AuditWriteQueue, PendingAuditWrite
from estatedesk.services.identity import DirectoryQuery, UserDirectory, derive_account_status
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from estatedesk.services.impersonation_security import ImpersonationSecurityValidator
from estatedesk.services.impersonation_state import ImpersonationStateHolder
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

START_FAILED = "Failed to start impersonation session"
VALIDATION_FAILED = "Failed to validate impersonation request"
SEARCH_FAILED = "Failed to search users"
END_FAILED = "Failed to end impersonation session"


def _rejected(exc: ImpersonationError, warnings: Optional[List[str]] = None) -> ValidationResult:
    return ValidationResult(
        valid=False,
        errors=[exc.message],
        warnings=warnings or [],
        error_category=exc.category,
    )


class ImpersonationService:
    """Orchestrates validation, session lifecycle and action logging."""

    def __init__(
        self,
        audit: ImpersonationAuditService,
        identity: UserDirectory,
        state: Optional[ImpersonationStateHolder] = None,
        security_validator: Optional[ImpersonationSecurityValidator] = None,
        audit_queue: Optional[AuditWriteQueue] = None,
        clock: Clock = utcnow,
        inactive_account_days: int = 30,
    ):
        self.audit = audit
        self.identity = identity
        self.state = state
        self.security_validator = security_validator
        self.audit_queue = audit_queue
        self.clock = clock
        self.inactive_account_days = inactive_account_days

    async def search_users(
        self,
        filters: Optional[UserSearchFilters],
        page: int,
        page_size: int,
        admin_id: str,
    ) -> UserSearchResponse:
        """
        Search users the admin's grant allows them to impersonate.

        Raises:
            ImpersonationAuthorizationError: the admin holds no usable grant.
            ImpersonationError: the user store could not be read.
        """
        try:
            return await self._search(filters or UserSearchFilters(), page, page_size, admin_id)
        except SQLAlchemyError as exc:
            logger.exception("impersonation_search_failed", extra={"admin_id": admin_id})
            await self.audit.db.rollback()
            raise ImpersonationError(SEARCH_FAILED) from exc

    async def _search(
        self,
        filters: UserSearchFilters,
        page: int,
        page_size: int,
        admin_id: str,
    ) -> UserSearchResponse:
        now = self.clock()

        grant = await self.audit.get_user_permissions(admin_id)
        if grant is None or not grant.is_usable(now):
            raise ImpersonationAuthorizationError("No active impersonation permissions")

        roles = [role for role in grant.allowed_target_roles if role != PRIVILEGED_ROLE.value]
        if filters.role:
            roles = [role for role in roles if role == filters.role]
        if not roles:
            return UserSearchResponse(users=[], total=0, has_more=False)

        criteria = DirectoryQuery(
            roles=roles,
            building_ids=grant.allowed_building_ids if grant.building_restricted else None,
            email=filters.email,
            name=filters.name,
            building_name=filters.building_name,
            registered_from=filters.registration_date_from,
            registered_to=filters.registration_date_to,
            last_login_from=filters.last_login_from,
            last_login_to=filters.last_login_to,
            account_status=filters.account_status,
            exclude_roles=[PRIVILEGED_ROLE.value],
        )

        profiles, total = await self.identity.search_users(
            criteria,
            offset=(page - 1) * page_size,
            limit=page_size,
            now=now,
            inactive_days=self.inactive_account_days,
        )

        restrictions: List[str] = []
        if grant.restricted_actions:
            restrictions.append(f"Restricted actions: {', '.join(grant.restricted_actions)}")
        if grant.building_restricted:
            restrictions.append("Limited to specific buildings")

        users = [
            UserSearchResult(
                id=profile.id,
                email=profile.email,
                name=profile.display_name,
                role=profile.role,
                building_id=profile.building_id,
                building_name=profile.building_name,
                last_login=profile.last_login_at,
                created_at=profile.created_at,
                account_status=derive_account_status(profile, now, self.inactive_account_days),
                can_impersonate=grant.allows_role(profile.role) and profile.role != PRIVILEGED_ROLE.value,
                impersonation_restrictions=list(restrictions),
            )
            for profile in profiles
        ]

        return UserSearchResponse(
            users=users,
            total=total,
            has_more=total > page * page_size,
        )

    async def validate_impersonation_request(
        self,
        request: ImpersonationStartRequest,
        admin_id: str,
    ) -> ValidationResult:
        """
        Run the blocking checks in order, stopping at the first failure.

        Non-blocking warnings are gathered before the blocking checks run,
        so they are reported even when the request is rejected. A store
        failure is reported as an invalid request, never raised.
        """
        try:
            return await self._validate(request, admin_id)
        except SQLAlchemyError:
            logger.exception(
                "impersonation_validation_failed",
                extra={"admin_id": admin_id, "target_user_id": request.target_user_id},
            )
            await self.audit.db.rollback()
            return ValidationResult(
                valid=False,
                errors=[VALIDATION_FAILED],
                error_category=ImpersonationError.category,
            )

    async def _validate(self, request: ImpersonationStartRequest, admin_id: str) -> ValidationResult:
        warnings: List[str] = []
        now = self.clock()

        grant = await self.audit.get_user_permissions(admin_id)
        if grant is None:
            return _rejected(ImpersonationAuthorizationError("No active impersonation permissions"))
        if grant.is_expired(now):
            return _rejected(ImpersonationAuthorizationError("Impersonation permissions have expired"))

        active_sessions = await self.audit.get_active_sessions(admin_id=admin_id)
        sessions_today = await self.audit.count_sessions_started_on(admin_id, now.date())
        abnormal = await self.audit.count_recent_abnormal_endings(admin_id)

        if len(active_sessions) >= grant.max_concurrent_sessions - 1:
            warnings.append("Approaching concurrent session limit")
        if sessions_today >= grant.max_daily_sessions - 2:
            warnings.append("Approaching daily session limit")
        if abnormal >= 3:
            warnings.append("Recent security incidents detected. Proceed with caution.")

        try:
            await self._check_target(request.target_user_id, grant, len(active_sessions), sessions_today, now)
        except ImpersonationError as exc:
            return _rejected(exc, warnings)

        return ValidationResult(valid=True, warnings=warnings)

    async def _check_target(
        self,
        target_user_id: str,
        grant: ImpersonationGrant,
        active_count: int,
        sessions_today: int,
        now: datetime,
    ) -> None:
        """Blocking checks, in order. Raises on the first failure."""
        target = await self.identity.lookup_user_by_id(target_user_id)
        if target is None:
            raise ImpersonationNotFoundError("Target user not found")
        if target.role == PRIVILEGED_ROLE.value:
            raise ImpersonationAuthorizationError("Cannot impersonate super-admin users")
        if not grant.allows_role(target.role):
            raise ImpersonationAuthorizationError(f"Not authorized to impersonate users with role: {target.role}")
        if not grant.allows_building(target.building_id):
            raise ImpersonationAuthorizationError("Not authorized to impersonate users in this building")
        if active_count >= grant.max_concurrent_sessions:
            raise ImpersonationCapacityError(f"Maximum concurrent sessions reached ({grant.max_concurrent_sessions})")
        if sessions_today >= grant.max_daily_sessions:
            raise ImpersonationCapacityError(f"Daily session limit reached ({grant.max_daily_sessions})")
        if await self.audit.get_active_sessions(target_user_id=target.id):
            raise ImpersonationConflictError("Another admin is already impersonating this user")
        if derive_account_status(target, now, self.inactive_account_days) == AccountStatus.SUSPENDED:
            raise ImpersonationAuthorizationError("Target user account is suspended")

    async def start_impersonation(
        self,
        request: ImpersonationStartRequest,
        admin_id: str,
        admin_email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ImpersonationStartResponse:
        """
        Validate and open a session, then switch the effective actor.

        Not idempotent: each successful call opens a new session. Nothing is
        left active when any step fails.
        """
        try:
            if self.security_validator is not None:
                report = await self.security_validator.validate(
                    admin_id,
                    request.target_user_id,
                    is_impersonating=self.state.is_impersonating if self.state else False,
                )
                if not report.is_secure:
                    return ImpersonationStartResponse(
                        success=False,
                        error=f"Security validation failed: {'; '.join(report.critical_issues)}",
                        error_category=report.error_category,
                        warnings=report.warnings,
                    )

            validation = await self.validate_impersonation_request(request, admin_id)
            if not validation.valid:
                return ImpersonationStartResponse(
                    success=False,
                    error="; ".join(validation.errors),
                    error_category=validation.error_category,
                    warnings=validation.warnings,
                )

            target = await self.identity.lookup_user_by_id(request.target_user_id)
            grant = await self.audit.get_user_permissions(admin_id)
            if target is None or grant is None:
                return ImpersonationStartResponse(success=False, error=START_FAILED)

            max_duration = grant.max_session_duration_minutes
            if request.expected_duration_minutes:
                max_duration = min(request.expected_duration_minutes, max_duration)

            try:
                session = await self.audit.start_session(
                    admin_id=admin_id,
                    admin_email=admin_email,
                    target=target,
                    reason=request.reason.value,
                    additional_notes=request.additional_notes,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            except ImpersonationConflictError as exc:
                return ImpersonationStartResponse(success=False, error=exc.message, error_category=exc.category)
        except SQLAlchemyError:
            logger.exception(
                "impersonation_start_failed",
                extra={"admin_id": admin_id, "target_user_id": request.target_user_id},
            )
            await self.audit.db.rollback()
            return ImpersonationStartResponse(success=False, error=START_FAILED)

        try:
            await self.audit.log_action(
                session_id=session.session_id,
                admin_id=admin_id,
                target_user_id=target.id,
                action_type=ActionType.PAGE_VISIT,
                description=f"Impersonation started with reason: {request.reason.value}",
                context=ActionContext(
                    page_context="impersonation_start",
                    component_name="ImpersonationService",
                    ip_address=ip_address,
                    user_agent=user_agent,
                ),
                risk_level=RiskLevel.MEDIUM,
                system_generated=True,
            )
            if self.state is not None:
                real_actor = self.state.get_real_actor() or await self.identity.lookup_user_by_id(admin_id)
                self.state.begin(real_actor, target, session.session_id, request.reason.value, max_duration)
        except (SQLAlchemyError, ImpersonationAuthorizationError):
            logger.exception("impersonation_start_aborted", extra={"session_id": session.session_id})
            await self.audit.db.rollback()
            await self._abort_session(session.session_id)
            return ImpersonationStartResponse(success=False, error=START_FAILED)

        logger.info(
            "impersonation_started",
            extra={
                "session_id": session.session_id,
                "admin_id": admin_id,
                "target_user_id": target.id,
                "reason": request.reason.value,
                "max_duration_minutes": max_duration,
            },
        )

        return ImpersonationStartResponse(
            success=True,
            session_id=session.session_id,
            effective_actor=target,
            max_duration=max_duration,
            warnings=validation.warnings,
        )

    async def _abort_session(self, session_id: str) -> None:
        try:
            await self.audit.end_session(
                session_id, SessionStatus.ENDED_ERROR, "Session start aborted"
            )
        except SQLAlchemyError:
            logger.exception("impersonation_abort_failed", extra={"session_id": session_id})
            await self.audit.db.rollback()

    async def end_impersonation(
        self,
        session_id: str,
        reason: str = "manual",
        additional_notes: Optional[str] = None,
    ) -> ImpersonationEndResponse:
        """Close an active session and revert to the real actor."""
        try:
            session = await self.audit.get_session(session_id)
            if session is None or not session.is_active:
                return ImpersonationEndResponse(
                    success=False, error="No active impersonation session found"
                )

            actions_performed = await self.audit.count_session_actions(session_id)
            ended = await self.audit.end_session(
                session_id, status_for_end_reason(reason), additional_notes
            )
        except SQLAlchemyError:
            logger.exception("impersonation_end_failed", extra={"session_id": session_id})
            await self.audit.db.rollback()
            return ImpersonationEndResponse(success=False, error=END_FAILED)

        if self.state is not None and self.state.session_id == session_id:
            self.state.clear()

        if ended is None:
            return ImpersonationEndResponse(
                success=False, error="No active impersonation session found"
            )

        logger.info(
            "impersonation_ended",
            extra={
                "session_id": session_id,
                "status": ended.status,
                "duration_minutes": ended.duration_minutes,
                "actions_performed": actions_performed,
            },
        )

        return ImpersonationEndResponse(
            success=True,
            duration_minutes=ended.duration_minutes,
            actions_performed=actions_performed,
        )

    async def log_action(
        self,
        session_id: Optional[str],
        admin_id: str,
        target_user_id: str,
        action_type: ActionType,
        description: str,
        context: Optional[ActionContext] = None,
    ) -> None:
        """
        Record an operator action.

        Silently does nothing outside an impersonation session. A failed
        write is queued for retry instead of being raised to the caller.
        """
        if not session_id:
            return
        if self.state is not None and not self.state.is_impersonating:
            return

        try:
            await self.audit.log_action(
                session_id=session_id,
                admin_id=admin_id,
                target_user_id=target_user_id,
                action_type=action_type,
                description=description,
                context=context,
            )
        except SQLAlchemyError:
            logger.exception(
                "impersonation_action_log_failed",
                extra={"session_id": session_id, "action_type": ActionType(action_type).value},
            )
            await self.audit.db.rollback()
            if self.audit_queue is not None:
                self.audit_queue.enqueue(
                    PendingAuditWrite(
                        session_id=session_id,
                        admin_id=admin_id,
                        target_user_id=target_user_id,
                        action_type=ActionType(action_type).value,
                        description=description,
                        performed_at=self.clock(),
                        context=context,
                    )
                )
