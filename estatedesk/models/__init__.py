from estatedesk.models.base import Base
from estatedesk.models.impersonation import (
    ImpersonationAction,
    ImpersonationGrant,
    ImpersonationSecurityAlert,
    ImpersonationSession,
)
from estatedesk.models.user import Building, User

__all__ = [
    "Base",
    "Building",
    "User",
    "ImpersonationGrant",
    "ImpersonationSession",
    "ImpersonationAction",
    "ImpersonationSecurityAlert",
]
