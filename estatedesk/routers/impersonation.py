"""
Impersonation Router - API endpoints for super-admin user impersonation.

Provides endpoints for:
- Session lifecycle (validate, start, end, extend)
- Activity and visibility signals for the safety monitor
- Action logging and action permission checks
- Audit log, summary and security alerts
- A WebSocket channel for forced-end and expiry-warning events
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.api import deps
from estatedesk.core.config import get_settings
from estatedesk.core.db import get_db
from estatedesk.core.errors import (
    ImpersonationAuthorizationError,
    ImpersonationError,
    ImpersonationPolicyViolation,
)
from estatedesk.core.impersonation import PRIVILEGED_ROLE, ActionType, SessionStatus
from estatedesk.middleware.security import get_client_ip, limiter
from estatedesk.schemas.impersonation import (
    ActionPermissionResponse,
    ActionRecord,
    ActivityRequest,
    AuditLogFilter,
    AuditSummary,
    ExtendSessionRequest,
    ExtendSessionResponse,
    ForceEndRequest,
    ForceEndResponse,
    GrantResponse,
    ImpersonationEndRequest,
    ImpersonationEndResponse,
    ImpersonationStartRequest,
    ImpersonationStartResponse,
    ImpersonationStateResponse,
    LogActionRequest,
    SecurityAlertRecord,
    SessionRecord,
    UserSearchRequest,
    UserSearchResponse,
    ValidationResult,
    VisibilityRequest,
)
from estatedesk.schemas.user import UserProfile
from estatedesk.services.impersonation_events import event_broker
from estatedesk.services.impersonation_facade import ImpersonationFacade

logger = logging.getLogger(__name__)

router = APIRouter()

_admin_only = [Depends(deps.require_super_admin)]


@router.get("/status", response_model=ImpersonationStateResponse)
async def get_status(
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ImpersonationStateResponse:
    """Who the caller is acting as right now."""
    state = impersonation.state
    session_status = await impersonation.check_session_status() if state.is_impersonating else None
    return ImpersonationStateResponse(
        is_impersonating=state.is_impersonating,
        can_impersonate=impersonation.can_impersonate,
        real_actor=state.real_actor,
        effective_actor=state.effective_actor,
        session_id=state.session_id,
        reason=state.reason,
        start_time=state.start_time,
        max_duration_minutes=state.max_duration_minutes if state.is_impersonating else None,
        warning_shown=state.warning_shown,
        session_status=session_status,
    )


@router.get("/permissions", response_model=Optional[GrantResponse], dependencies=_admin_only)
async def get_permissions(
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> Optional[GrantResponse]:
    grant = await impersonation.get_user_permissions()
    return GrantResponse.model_validate(grant) if grant else None


@router.post("/users/search", response_model=UserSearchResponse, dependencies=_admin_only)
async def search_users(
    payload: UserSearchRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> UserSearchResponse:
    try:
        return await impersonation.search_users(payload.filters, payload.page, payload.page_size)
    except ImpersonationAuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    except ImpersonationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)


@router.post("/validate", response_model=ValidationResult, dependencies=_admin_only)
async def validate_request(
    payload: ImpersonationStartRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ValidationResult:
    return await impersonation.validate_request(payload)


@router.post("/start", response_model=ImpersonationStartResponse, dependencies=_admin_only)
@limiter.limit("10/minute")
async def start_impersonation(
    request: Request,
    payload: ImpersonationStartRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ImpersonationStartResponse:
    return await impersonation.start_impersonation(
        payload,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


@router.post("/end", response_model=ImpersonationEndResponse, dependencies=_admin_only)
async def end_impersonation(
    payload: Optional[ImpersonationEndRequest] = None,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ImpersonationEndResponse:
    payload = payload or ImpersonationEndRequest()
    return await impersonation.end_impersonation(payload.reason, payload.additional_notes)


@router.post("/actions", status_code=status.HTTP_204_NO_CONTENT, dependencies=_admin_only)
async def log_action(
    request: Request,
    payload: LogActionRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> None:
    """Record an action performed while impersonating. No-op otherwise."""
    context = payload.context.model_copy(
        update={
            "ip_address": payload.context.ip_address or get_client_ip(request),
            "user_agent": payload.context.user_agent or request.headers.get("User-Agent"),
        }
    )
    try:
        await impersonation.log_action(payload.model_copy(update={"context": context}))
    except ImpersonationPolicyViolation as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)


@router.get("/actions/allowed/{action_type}", response_model=ActionPermissionResponse)
async def can_perform_action(
    action_type: ActionType,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ActionPermissionResponse:
    return ActionPermissionResponse(
        action_type=action_type,
        allowed=await impersonation.can_perform_action(action_type),
    )


@router.post("/extend", response_model=ExtendSessionResponse, dependencies=_admin_only)
async def extend_session(
    payload: Optional[ExtendSessionRequest] = None,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ExtendSessionResponse:
    payload = payload or ExtendSessionRequest()
    return await impersonation.extend_session(payload.additional_minutes)


@router.post("/activity", status_code=status.HTTP_204_NO_CONTENT, dependencies=_admin_only)
async def record_activity(
    payload: ActivityRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> None:
    impersonation.record_activity()


@router.post("/visibility", status_code=status.HTTP_204_NO_CONTENT, dependencies=_admin_only)
async def set_visibility(
    payload: VisibilityRequest,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> None:
    impersonation.set_visibility(payload.hidden)


@router.get("/audit", response_model=List[SessionRecord], dependencies=_admin_only)
async def get_audit_log(
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
    session_id: Optional[str] = Query(None, description="Filter by session ID"),
    target_user_id: Optional[str] = Query(None, description="Filter by impersonated user"),
    session_status: Optional[SessionStatus] = Query(None, alias="status", description="Filter by status"),
    started_from: Optional[datetime] = Query(None, description="Sessions started at or after"),
    started_to: Optional[datetime] = Query(None, description="Sessions started at or before"),
    limit: int = Query(100, ge=1, le=500),
) -> List[SessionRecord]:
    filters = AuditLogFilter(
        session_id=session_id,
        target_user_id=target_user_id,
        status=session_status,
        started_from=started_from,
        started_to=started_to,
    )
    sessions = await impersonation.get_audit_log(filters, limit)
    return [SessionRecord.model_validate(session) for session in sessions]


@router.get("/audit/summary", response_model=AuditSummary, dependencies=_admin_only)
async def get_audit_summary(
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
) -> AuditSummary:
    return await impersonation.get_audit_summary(
        date_from=date_from,
        date_to=date_to,
        top_n=get_settings().audit_summary_top_n,
    )


@router.get(
    "/audit/sessions/{session_id}/actions",
    response_model=List[ActionRecord],
    dependencies=_admin_only,
)
async def get_session_actions(
    session_id: str,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> List[ActionRecord]:
    session = await impersonation.audit.get_session(session_id)
    if session is None or session.admin_id != impersonation.real_actor.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    actions = await impersonation.audit.get_session_actions(session_id)
    return [ActionRecord.model_validate(action) for action in actions]


@router.get("/alerts", response_model=List[SecurityAlertRecord], dependencies=_admin_only)
async def list_alerts(
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
    resolved: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=500),
) -> List[SecurityAlertRecord]:
    alerts = await impersonation.audit.list_security_alerts(resolved=resolved, limit=limit)
    return [SecurityAlertRecord.model_validate(alert) for alert in alerts]


@router.post("/alerts/{alert_id}/resolve", response_model=SecurityAlertRecord, dependencies=_admin_only)
async def resolve_alert(
    alert_id: str,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> SecurityAlertRecord:
    alert = await impersonation.audit.resolve_security_alert(alert_id, impersonation.real_actor.id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return SecurityAlertRecord.model_validate(alert)


@router.post("/sessions/force-end", response_model=ForceEndResponse, dependencies=_admin_only)
async def force_end_sessions(
    payload: Optional[ForceEndRequest] = None,
    impersonation: ImpersonationFacade = Depends(deps.get_impersonation),
) -> ForceEndResponse:
    """End every active session the caller holds, on any device."""
    payload = payload or ForceEndRequest()
    active = await impersonation.audit.get_active_sessions(admin_id=impersonation.real_actor.id)
    for session in active:
        impersonation.monitor.stop_monitoring(session.session_id)
    count = await impersonation.audit.force_end_all_sessions(impersonation.real_actor.id, payload.reason)
    if impersonation.is_impersonating:
        impersonation.state_holder.clear()
    logger.warning(
        "impersonation_force_end_requested",
        extra={"admin_id": impersonation.real_actor.id, "sessions_ended": count},
    )
    return ForceEndResponse(sessions_ended=count)


@router.websocket("/events")
async def impersonation_events(
    websocket: WebSocket,
    db: AsyncSession = Depends(get_db),
):
    """WebSocket channel for impersonation events.

    Pushes {"type": "impersonation.ended" | "impersonation.warning", ...}.
    Accepts operator signals:
    - {"type": "activity"} - resets the inactivity window
    - {"type": "visibility", "hidden": true|false}
    """
    user: Optional[UserProfile] = await deps.get_current_user_websocket(websocket, db)
    if user is None or user.role != PRIVILEGED_ROLE.value:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    monitor = websocket.app.state.safety_monitor
    await websocket.accept()
    await event_broker.connect(websocket, user.id)
    try:
        while True:
            payload = await websocket.receive_text()
            try:
                data = json.loads(payload)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue

            msg_type = data.get("type")
            for session_id in monitor.sessions_for_admin(user.id):
                if msg_type == "activity":
                    monitor.record_activity(session_id)
                elif msg_type == "visibility":
                    monitor.set_visibility(session_id, bool(data.get("hidden")))
    except WebSocketDisconnect:
        pass
    finally:
        await event_broker.disconnect(websocket, user.id)
