"""
Pre-flight security gate run immediately before an impersonation session
is allowed to start. Independent of the orchestrator's request validation.
"""

import logging
import re
from typing import List

from estatedesk.core.errors import (
    ImpersonationAuthorizationError,
    ImpersonationCapacityError,
    ImpersonationConflictError,
    ImpersonationNotFoundError,
)
from estatedesk.core.impersonation import PRIVILEGED_ROLE
from estatedesk.schemas.impersonation import SecurityReport
from estatedesk.services.identity import IdentityProvider
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

# Identifiers are opaque tokens; anything else never reaches the lookup layer
TARGET_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def is_well_formed_user_id(user_id: str) -> bool:
    return bool(user_id) and TARGET_ID_PATTERN.fullmatch(user_id) is not None


class ImpersonationSecurityValidator:
    """Point-in-time checks that must all pass before a session starts."""

    def __init__(
        self,
        audit: ImpersonationAuditService,
        identity: IdentityProvider,
        clock: Clock = utcnow,
    ):
        self.audit = audit
        self.identity = identity
        self.clock = clock

    async def validate(
        self,
        admin_id: str,
        target_user_id: str,
        is_impersonating: bool = False,
    ) -> SecurityReport:
        critical: List[str] = []
        categories: List[str] = []
        warnings: List[str] = []

        def block(issue: str, category: str) -> None:
            critical.append(issue)
            categories.append(category)

        admin = await self.identity.lookup_user_by_id(admin_id)
        if admin is None:
            block("Admin user not found", ImpersonationAuthorizationError.category)
        elif admin.role != PRIVILEGED_ROLE.value:
            block("Only super-admin users can impersonate", ImpersonationAuthorizationError.category)

        if is_impersonating:
            block("Cannot start impersonation while already impersonating", ImpersonationConflictError.category)

        grant = await self.audit.get_user_permissions(admin_id)
        now = self.clock()
        if grant is None or not grant.is_usable(now):
            block("No valid impersonation permissions", ImpersonationAuthorizationError.category)

        if not is_well_formed_user_id(target_user_id):
            block("Invalid target user identifier", ImpersonationNotFoundError.category)
        else:
            target = await self.identity.lookup_user_by_id(target_user_id)
            if target is None:
                block("Target user not found", ImpersonationNotFoundError.category)
            elif target.role == PRIVILEGED_ROLE.value:
                block("Cannot impersonate super-admin users", ImpersonationAuthorizationError.category)

        if grant is not None and grant.is_usable(now):
            active = await self.audit.get_active_sessions(admin_id=admin_id)
            if len(active) >= grant.max_concurrent_sessions:
                block(
                    f"Concurrent session limit exceeded ({grant.max_concurrent_sessions})",
                    ImpersonationCapacityError.category,
                )

            today = await self.audit.count_sessions_started_on(admin_id, now.date())
            if today >= grant.max_daily_sessions:
                block(
                    f"Daily session limit exceeded ({grant.max_daily_sessions})",
                    ImpersonationCapacityError.category,
                )

        abnormal = await self.audit.count_recent_abnormal_endings(admin_id)
        if abnormal >= 3:
            warnings.append("Multiple recent sessions ended abnormally")

        if not await self.audit.is_available():
            warnings.append("System health issues detected. Impersonation may be unstable.")

        if critical:
            logger.warning(
                "impersonation_security_check_failed",
                extra={"admin_id": admin_id, "issues": critical},
            )

        return SecurityReport(
            is_secure=not critical,
            critical_issues=critical,
            warnings=warnings,
            error_category=categories[0] if categories else None,
        )
