import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from estatedesk.core.config import get_settings
from estatedesk.core.db import get_db
from estatedesk.core.impersonation import PRIVILEGED_ROLE, AccountStatus
from estatedesk.core.security import decode_access_token
from estatedesk.schemas.user import UserProfile
from estatedesk.services.audit_queue import AuditWriteQueue
from estatedesk.services.identity import DatabaseIdentityProvider, derive_account_status
from estatedesk.services.impersonation_facade import ImpersonationFacade
from estatedesk.services.impersonation_safety import SafetyMonitor
from estatedesk.services.impersonation_state import RequestSessionStorage
from estatedesk.utils.clock import utcnow

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ACCESS_TOKEN_COOKIE = "estatedesk_token"


async def get_current_user(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
    db: AsyncSession = Depends(get_db),
) -> UserProfile:
    """The real, authenticated actor. Impersonation never changes this."""
    cookie_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    credentials_token = token or cookie_token
    if not credentials_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing credentials")

    payload = decode_access_token(credentials_token)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    user = await DatabaseIdentityProvider(db, user_id).current_actor()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if derive_account_status(user, utcnow()) == AccountStatus.SUSPENDED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User disabled")
    return user


async def require_super_admin(
    current_user: UserProfile = Depends(get_current_user),
) -> UserProfile:
    if current_user.role != PRIVILEGED_ROLE.value:
        logger.warning(
            "impersonation_access_denied",
            extra={"user_id": current_user.id, "role": current_user.role},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only super-admin users can use impersonation",
        )
    return current_user


async def get_current_user_websocket(websocket: WebSocket, db: AsyncSession) -> Optional[UserProfile]:
    """
    Authenticate WebSocket connections.

    Does not close the websocket on failure; returns None and the caller
    decides how to reject.
    """
    token_header = websocket.headers.get("Authorization")
    if token_header and token_header.startswith("Bearer "):
        token = token_header.split(" ", 1)[1]
    else:
        # Fallback to query parameter for clients that don't support custom headers
        token = websocket.query_params.get("token") or websocket.cookies.get(ACCESS_TOKEN_COOKIE)

    if not token:
        logger.warning("websocket_auth_missing_token")
        return None

    payload = decode_access_token(token)
    if not payload or not payload.get("sub"):
        logger.warning("websocket_auth_invalid_token")
        return None

    return await DatabaseIdentityProvider(db, payload["sub"]).current_actor()


def get_safety_monitor(request: Request) -> SafetyMonitor:
    return request.app.state.safety_monitor


def get_audit_queue(request: Request) -> AuditWriteQueue:
    return request.app.state.audit_queue


async def get_impersonation(
    request: Request,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    monitor: SafetyMonitor = Depends(get_safety_monitor),
    audit_queue: AuditWriteQueue = Depends(get_audit_queue),
) -> ImpersonationFacade:
    """Impersonation facade for this request, with persisted state restored."""
    facade = ImpersonationFacade(
        real_actor=current_user,
        db=db,
        storage=RequestSessionStorage(request.session),
        monitor=monitor,
        audit_queue=audit_queue,
        clock=monitor.clock,
        inactive_account_days=get_settings().inactive_account_days,
    )
    await facade.load()
    return facade
