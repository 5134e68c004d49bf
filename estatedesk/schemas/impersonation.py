"""
Impersonation Schemas for API requests/responses and service results.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from estatedesk.core.impersonation import (
    AccountStatus,
    ActionType,
    ImpersonationReason,
    RiskLevel,
    SessionStatus,
)
from estatedesk.schemas.user import UserProfile


class GrantResponse(BaseModel):
    """An admin's impersonation grant."""
    id: str
    admin_id: str
    allowed_target_roles: List[str]
    allowed_building_ids: Optional[List[str]] = None
    max_session_duration_minutes: int
    max_daily_sessions: int
    max_concurrent_sessions: int
    allowed_actions: List[str] = []
    restricted_actions: List[str] = []
    granted_by: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# User search
# ---------------------------------------------------------------------------


class UserSearchFilters(BaseModel):
    """Conjunctive filters for the impersonation user search."""
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    building_name: Optional[str] = None
    registration_date_from: Optional[datetime] = None
    registration_date_to: Optional[datetime] = None
    last_login_from: Optional[datetime] = None
    last_login_to: Optional[datetime] = None
    account_status: Optional[AccountStatus] = None


class UserSearchRequest(BaseModel):
    filters: UserSearchFilters = Field(default_factory=UserSearchFilters)
    page: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)


class UserSearchResult(BaseModel):
    id: str
    email: str
    name: str
    role: str
    building_id: Optional[str] = None
    building_name: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    account_status: AccountStatus
    can_impersonate: bool
    impersonation_restrictions: List[str] = []


class UserSearchResponse(BaseModel):
    users: List[UserSearchResult]
    total: int
    has_more: bool


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class ImpersonationStartRequest(BaseModel):
    target_user_id: str = Field(..., min_length=1, max_length=255)
    reason: ImpersonationReason
    additional_notes: Optional[str] = Field(None, max_length=2000)
    expected_duration_minutes: Optional[int] = Field(None, ge=1)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []
    # authorization, capacity, not_found, conflict, runtime
    error_category: Optional[str] = None


class ImpersonationStartResponse(BaseModel):
    success: bool
    session_id: Optional[str] = None
    effective_actor: Optional[UserProfile] = None
    max_duration: Optional[int] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    warnings: List[str] = []


class ImpersonationEndRequest(BaseModel):
    reason: str = "manual"
    additional_notes: Optional[str] = Field(None, max_length=2000)


class ImpersonationEndResponse(BaseModel):
    success: bool
    duration_minutes: Optional[int] = None
    actions_performed: Optional[int] = None
    error: Optional[str] = None


class SessionValidation(BaseModel):
    valid: bool
    time_remaining_minutes: float = 0
    warnings: List[str] = []


class SecurityReport(BaseModel):
    is_secure: bool
    critical_issues: List[str] = []
    warnings: List[str] = []
    # category of the first critical issue
    error_category: Optional[str] = None


class SessionLimits(BaseModel):
    max_duration_minutes: int
    warning_at_minutes: int
    inactivity_timeout_minutes: int


class ExtendSessionRequest(BaseModel):
    additional_minutes: Optional[int] = Field(None, ge=1)


class ExtendSessionResponse(BaseModel):
    success: bool
    extended_by_minutes: int = 0
    max_duration_minutes: Optional[int] = None
    error: Optional[str] = None


class ActivityRequest(BaseModel):
    event: Literal["pointer", "keyboard", "click", "scroll"] = "pointer"


class VisibilityRequest(BaseModel):
    hidden: bool


class ForceEndRequest(BaseModel):
    reason: str = "Security measure"


class ForceEndResponse(BaseModel):
    sessions_ended: int


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ActionContext(BaseModel):
    """Optional detail attached to a logged action."""
    page_context: Optional[str] = None
    component_name: Optional[str] = None
    affected_data_type: Optional[str] = None
    affected_record_id: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    requires_approval: bool = False


class LogActionRequest(BaseModel):
    action_type: ActionType
    description: str = Field(..., min_length=1, max_length=2000)
    context: ActionContext = Field(default_factory=ActionContext)


class ActionPermissionResponse(BaseModel):
    action_type: ActionType
    allowed: bool


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    session_id: str
    admin_id: str
    admin_email: str
    target_user_id: str
    target_email: str
    target_role: str
    target_building_id: Optional[str] = None
    reason: str
    additional_notes: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    status: SessionStatus

    model_config = {"from_attributes": True}


class ActionRecord(BaseModel):
    id: str
    session_id: str
    admin_id: str
    target_user_id: str
    action_type: ActionType
    description: str
    page_context: Optional[str] = None
    component_name: Optional[str] = None
    affected_data_type: Optional[str] = None
    affected_record_id: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    risk_level: RiskLevel
    requires_approval: bool
    system_generated: bool
    performed_at: datetime

    model_config = {"from_attributes": True}


class SecurityAlertRecord(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    session_id: Optional[str] = None
    admin_id: Optional[str] = None
    target_user_id: Optional[str] = None
    detected_at: datetime
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    model_config = {"from_attributes": True}


class AuditLogFilter(BaseModel):
    """Filter parameters for querying impersonation sessions."""
    session_id: Optional[str] = None
    admin_id: Optional[str] = None
    target_user_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    started_from: Optional[datetime] = None
    started_to: Optional[datetime] = None


class ImpersonatedUserCount(BaseModel):
    target_user_id: str
    target_email: str
    session_count: int


class AuditSummary(BaseModel):
    """Read-side rollup of impersonation activity over a date window."""
    total_sessions: int
    active_sessions: int
    total_duration_minutes: int
    average_session_duration_minutes: float
    action_counts: Dict[str, int]
    risk_level_counts: Dict[str, int]
    most_impersonated_users: List[ImpersonatedUserCount]
    recent_sessions: List[SessionRecord]


class ImpersonationStateResponse(BaseModel):
    """What the current browser session is acting as."""
    is_impersonating: bool
    can_impersonate: bool
    real_actor: Optional[UserProfile] = None
    effective_actor: Optional[UserProfile] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    start_time: Optional[datetime] = None
    max_duration_minutes: Optional[int] = None
    warning_shown: bool = False
    session_status: Optional[SessionValidation] = None
