"""Impersonation grants, sessions, actions and security alerts."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
    text,
)

from estatedesk.core.errors import AuditRecordImmutableError
from estatedesk.core.impersonation import SessionStatus
from estatedesk.models.base import Base
from estatedesk.utils.clock import utcnow


class ImpersonationGrant(Base):
    """Authorization record bounding what an admin may do through impersonation.

    Created and revoked by a separate administrative process; read-only here.
    """

    __tablename__ = "impersonation_grants"

    id = Column(String, primary_key=True)
    admin_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    allowed_target_roles = Column(JSON, nullable=False, default=list)
    # NULL or empty means every building
    allowed_building_ids = Column(JSON, nullable=True)

    max_session_duration_minutes = Column(Integer, nullable=False, default=120)
    max_daily_sessions = Column(Integer, nullable=False, default=10)
    max_concurrent_sessions = Column(Integer, nullable=False, default=1)

    allowed_actions = Column(JSON, nullable=False, default=list)
    restricted_actions = Column(JSON, nullable=False, default=list)

    granted_by = Column(String, nullable=False)
    granted_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_usable(self, now: datetime) -> bool:
        return bool(self.is_active) and not self.is_expired(now)

    @property
    def building_restricted(self) -> bool:
        return bool(self.allowed_building_ids)

    def allows_role(self, role: str) -> bool:
        return role in (self.allowed_target_roles or [])

    def allows_building(self, building_id: Optional[str]) -> bool:
        if not self.building_restricted:
            return True
        return building_id is not None and building_id in self.allowed_building_ids

    def restricts_action(self, action_type: str) -> bool:
        return action_type in (self.restricted_actions or [])


class ImpersonationSession(Base):
    """One bounded period of an admin acting as a specific target user."""

    __tablename__ = "impersonation_sessions"
    __table_args__ = (
        # One active session per (admin, target) pair, enforced by the store
        Index(
            "uq_impersonation_sessions_active_pair",
            "admin_id",
            "target_user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True)
    session_id = Column(String, nullable=False, unique=True, index=True, comment="Opaque session token")

    # Who impersonated
    admin_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    admin_email = Column(String, nullable=False)
    admin_ip_address = Column(String, nullable=True)
    admin_user_agent = Column(Text, nullable=True)

    # Who was impersonated
    target_user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    target_email = Column(String, nullable=False)
    target_role = Column(String, nullable=False)
    target_building_id = Column(String, nullable=True)

    reason = Column(String, nullable=False)
    additional_notes = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default=SessionStatus.ACTIVE.value, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value


class ImpersonationAction(Base):
    """Append-only record of one interaction performed during a session."""

    __tablename__ = "impersonation_actions"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("impersonation_sessions.session_id"), nullable=False, index=True)
    admin_id = Column(String, nullable=False, index=True)
    target_user_id = Column(String, nullable=False, index=True)

    action_type = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    page_context = Column(String, nullable=True)
    component_name = Column(String, nullable=True)
    affected_data_type = Column(String, nullable=True)
    affected_record_id = Column(String, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)

    risk_level = Column(String, nullable=False, index=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    # Lifecycle entries written by the service, not by the operator
    system_generated = Column(Boolean, nullable=False, default=False)

    performed_at = Column(DateTime, nullable=False, index=True)


class ImpersonationSecurityAlert(Base):
    __tablename__ = "impersonation_security_alerts"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False)
    message = Column(Text, nullable=False)

    session_id = Column(String, nullable=True, index=True)
    admin_id = Column(String, nullable=True, index=True)
    target_user_id = Column(String, nullable=True)

    detected_at = Column(DateTime, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)


@event.listens_for(ImpersonationAction, "before_update")
def _reject_action_update(mapper, connection, target):
    raise AuditRecordImmutableError("Impersonation actions are append-only")


@event.listens_for(ImpersonationSession, "before_delete")
def _reject_session_delete(mapper, connection, target):
    raise AuditRecordImmutableError("Impersonation sessions are never deleted")
