"""Exceptions raised inside the impersonation services."""

from typing import Optional


class ImpersonationError(Exception):
    """Base class; ``category`` names the failure class reported to operators."""

    category = "runtime"

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ImpersonationAuthorizationError(ImpersonationError):
    category = "authorization"


class ImpersonationCapacityError(ImpersonationError):
    category = "capacity"


class ImpersonationNotFoundError(ImpersonationError):
    category = "not_found"


class ImpersonationConflictError(ImpersonationError):
    category = "conflict"


class ImpersonationPolicyViolation(ImpersonationError):
    category = "policy_violation"


class AuditRecordImmutableError(ImpersonationError):
    """Raised when something tries to rewrite an audit record."""

    category = "policy_violation"
