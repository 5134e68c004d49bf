"""
Impersonation Definitions

This module defines the roles, reasons, action types and lookup tables
used by the impersonation subsystem. Risk levels and end statuses are
explicit tables rather than conditionals, so adding a new action type
is a one-line change.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet


class UserRole(str, Enum):
    """
    Platform roles. SUPER_ADMIN is the privileged role: it may impersonate,
    and it can never be impersonated.
    """
    SUPER_ADMIN = "super-admin"
    RTM_DIRECTOR = "rtm-director"
    RMC_DIRECTOR = "rmc-director"
    SOF_DIRECTOR = "sof-director"
    LEASEHOLDER = "leaseholder"
    SHAREHOLDER = "shareholder"
    HOMEOWNER = "homeowner"
    MANAGEMENT_COMPANY = "management-company"


PRIVILEGED_ROLE = UserRole.SUPER_ADMIN


class ImpersonationReason(str, Enum):
    """Reason an operator must give when starting a session."""
    CUSTOMER_SUPPORT = "Customer Support"
    TECHNICAL_ISSUE = "Technical Issue"
    DATA_INVESTIGATION = "Data Investigation"
    ACCOUNT_RECOVERY = "Account Recovery"
    COMPLIANCE_REVIEW = "Compliance Review"
    BUG_INVESTIGATION = "Bug Investigation"
    TRAINING_DEMO = "Training/Demo"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED_MANUALLY = "ended_manually"
    ENDED_TIMEOUT = "ended_timeout"
    ENDED_INACTIVITY = "ended_inactivity"
    ENDED_SECURITY = "ended_security"
    ENDED_ERROR = "ended_error"


class EndReason(str, Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    INACTIVITY = "inactivity"
    SECURITY = "security"
    ERROR = "error"


class ActionType(str, Enum):
    """Interactions recorded while impersonating."""
    PAGE_VISIT = "page_visit"
    DATA_VIEW = "data_view"
    DATA_MODIFICATION = "data_modification"
    DOCUMENT_DOWNLOAD = "document_download"
    DOCUMENT_UPLOAD = "document_upload"
    DOCUMENT_DELETE = "document_delete"
    USER_DATA_CHANGE = "user_data_change"
    FINANCIAL_TRANSACTION = "financial_transaction"
    VOTING_ACTION = "voting_action"
    MEETING_ACTION = "meeting_action"
    COMPLIANCE_ACTION = "compliance_action"
    SETTINGS_CHANGE = "settings_change"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    ROLE_CHANGE = "role_change"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    SESSION_LIMIT_EXCEEDED = "session_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    UNAUTHORIZED_ACTION = "unauthorized_action"
    SESSION_TIMEOUT = "session_timeout"
    CONCURRENT_SESSIONS = "concurrent_sessions"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


ACTION_RISK_LEVELS: Dict[ActionType, RiskLevel] = {
    ActionType.PAGE_VISIT: RiskLevel.LOW,
    ActionType.DATA_VIEW: RiskLevel.LOW,
    ActionType.DOCUMENT_DOWNLOAD: RiskLevel.LOW,
    ActionType.DATA_MODIFICATION: RiskLevel.MEDIUM,
    ActionType.DOCUMENT_UPLOAD: RiskLevel.MEDIUM,
    ActionType.MEETING_ACTION: RiskLevel.MEDIUM,
    ActionType.COMPLIANCE_ACTION: RiskLevel.MEDIUM,
    ActionType.SETTINGS_CHANGE: RiskLevel.MEDIUM,
    ActionType.DOCUMENT_DELETE: RiskLevel.HIGH,
    ActionType.USER_DATA_CHANGE: RiskLevel.HIGH,
    ActionType.VOTING_ACTION: RiskLevel.HIGH,
    ActionType.FINANCIAL_TRANSACTION: RiskLevel.CRITICAL,
    ActionType.PASSWORD_RESET: RiskLevel.CRITICAL,
    ActionType.EMAIL_CHANGE: RiskLevel.CRITICAL,
    ActionType.ROLE_CHANGE: RiskLevel.CRITICAL,
}

END_REASON_STATUS: Dict[EndReason, SessionStatus] = {
    EndReason.MANUAL: SessionStatus.ENDED_MANUALLY,
    EndReason.TIMEOUT: SessionStatus.ENDED_TIMEOUT,
    EndReason.INACTIVITY: SessionStatus.ENDED_INACTIVITY,
    EndReason.SECURITY: SessionStatus.ENDED_SECURITY,
    EndReason.ERROR: SessionStatus.ENDED_ERROR,
}

# Never allowed while impersonating, whatever the grant says
POLICY_FORBIDDEN_ACTIONS: FrozenSet[ActionType] = frozenset(
    {
        ActionType.PASSWORD_RESET,
        ActionType.EMAIL_CHANGE,
        ActionType.ROLE_CHANGE,
    }
)

ABNORMAL_END_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.ENDED_SECURITY, SessionStatus.ENDED_ERROR}
)

ALERTING_RISK_LEVELS: FrozenSet[RiskLevel] = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})


def assess_action_risk(action_type: str) -> RiskLevel:
    return ACTION_RISK_LEVELS[ActionType(action_type)]


def status_for_end_reason(reason: str) -> SessionStatus:
    """Map a termination reason to the session status it produces."""
    try:
        return END_REASON_STATUS[EndReason(reason)]
    except ValueError:
        return SessionStatus.ENDED_ERROR


def session_duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between start and end, rounding halves up."""
    seconds = (ended_at - started_at).total_seconds()
    return int(math.floor(seconds / 60 + 0.5))
