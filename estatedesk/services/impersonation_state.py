"""
Session State Holder

Tracks who the real actor is and who they are currently acting as. Every
other feature asks ``get_effective_actor()`` for "the current user".

State lives in memory for the duration of a request and is persisted to
browser-session scoped storage (the signed session cookie), never to
long-lived storage. Each request rebuilds the holder and calls
``rehydrate()``; an expired record is discarded rather than restored.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, MutableMapping, Optional, Protocol

from estatedesk.core.errors import ImpersonationAuthorizationError
from estatedesk.core.impersonation import PRIVILEGED_ROLE, EndReason
from estatedesk.schemas.user import UserProfile
from estatedesk.services.identity import IdentityProvider
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

KEY_SESSION_ID = "impersonation.session_id"
KEY_REAL_ACTOR_ID = "impersonation.real_actor_id"
KEY_TARGET_ACTOR_ID = "impersonation.target_actor_id"
KEY_STARTED_AT = "impersonation.started_at"
KEY_MAX_DURATION = "impersonation.max_duration"
KEY_REASON = "impersonation.reason"
KEY_WARNING_SHOWN = "impersonation.warning_shown"

STORAGE_KEYS = (
    KEY_SESSION_ID,
    KEY_REAL_ACTOR_ID,
    KEY_TARGET_ACTOR_ID,
    KEY_STARTED_AT,
    KEY_MAX_DURATION,
    KEY_REASON,
    KEY_WARNING_SHOWN,
)

ExpiryHandler = Callable[[str, str], Awaitable[Any]]


class SessionStorage(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class InMemorySessionStorage:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class RequestSessionStorage:
    """Adapter over Starlette's ``request.session`` mapping."""

    def __init__(self, session: MutableMapping[str, Any]):
        self._session = session

    def get(self, key: str) -> Optional[str]:
        value = self._session.get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        self._session[key] = value

    def remove(self, key: str) -> None:
        self._session.pop(key, None)


@dataclass
class ImpersonationState:
    real_actor: Optional[UserProfile] = None
    effective_actor: Optional[UserProfile] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    start_time: Optional[datetime] = None
    max_duration_minutes: int = 0
    warning_shown: bool = False

    @property
    def is_impersonating(self) -> bool:
        return self.effective_actor is not None


class ImpersonationStateHolder:
    def __init__(
        self,
        storage: SessionStorage,
        identity: IdentityProvider,
        real_actor: Optional[UserProfile] = None,
        clock: Clock = utcnow,
        on_expired: Optional[ExpiryHandler] = None,
    ):
        self.storage = storage
        self.identity = identity
        self.clock = clock
        self.on_expired = on_expired
        self._state = ImpersonationState(real_actor=real_actor)

    @property
    def state(self) -> ImpersonationState:
        return replace(self._state)

    @property
    def is_impersonating(self) -> bool:
        return self._state.is_impersonating

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id

    def get_effective_actor(self) -> Optional[UserProfile]:
        return self._state.effective_actor or self._state.real_actor

    def get_real_actor(self) -> Optional[UserProfile]:
        return self._state.real_actor

    def begin(
        self,
        real_actor: Optional[UserProfile],
        effective_actor: UserProfile,
        session_id: str,
        reason: str,
        max_duration_minutes: int,
        started_at: Optional[datetime] = None,
    ) -> None:
        """Switch the effective actor to ``effective_actor`` and persist the record."""
        if effective_actor.role == PRIVILEGED_ROLE.value:
            raise ImpersonationAuthorizationError("Cannot impersonate super-admin users")

        real_actor = real_actor or self._state.real_actor
        if real_actor is None:
            raise ImpersonationAuthorizationError("No authenticated real actor")

        self._state = ImpersonationState(
            real_actor=real_actor,
            effective_actor=effective_actor,
            session_id=session_id,
            reason=reason,
            start_time=started_at or self.clock(),
            max_duration_minutes=max_duration_minutes,
            warning_shown=False,
        )
        self._persist()

    def clear(self) -> None:
        """Revert to the real actor and drop the persisted record."""
        self._state = ImpersonationState(real_actor=self._state.real_actor)
        for key in STORAGE_KEYS:
            self.storage.remove(key)

    def extend(self, minutes: int) -> None:
        if not self.is_impersonating or minutes <= 0:
            return
        self._state.max_duration_minutes += minutes
        self._state.warning_shown = False
        self._persist()

    def mark_warning_shown(self) -> None:
        if not self.is_impersonating:
            return
        self._state.warning_shown = True
        self.storage.set(KEY_WARNING_SHOWN, "true")

    def elapsed_minutes(self) -> float:
        if self._state.start_time is None:
            return 0.0
        return (self.clock() - self._state.start_time).total_seconds() / 60

    def time_remaining_minutes(self) -> float:
        if not self.is_impersonating:
            return 0.0
        return max(0.0, self._state.max_duration_minutes - self.elapsed_minutes())

    async def rehydrate(self) -> bool:
        """
        Restore state from the persisted record.

        The record is restored only if it belongs to the current real actor,
        is still inside its maximum duration, and the target still resolves
        to a non-privileged user. Otherwise it is discarded.
        """
        session_id = self.storage.get(KEY_SESSION_ID)
        if not session_id:
            return False

        real_actor = self._state.real_actor
        if real_actor is None or self.storage.get(KEY_REAL_ACTOR_ID) != real_actor.id:
            logger.warning("impersonation_state_actor_mismatch", extra={"session_id": session_id})
            self.clear()
            return False

        try:
            started_at = datetime.fromisoformat(self.storage.get(KEY_STARTED_AT) or "")
            max_duration = int(self.storage.get(KEY_MAX_DURATION) or "")
        except ValueError:
            logger.warning("impersonation_state_corrupt", extra={"session_id": session_id})
            self.clear()
            return False

        elapsed = (self.clock() - started_at).total_seconds() / 60
        if elapsed >= max_duration:
            logger.info(
                "impersonation_state_expired",
                extra={"session_id": session_id, "elapsed_minutes": round(elapsed, 2)},
            )
            if self.on_expired is not None:
                await self.on_expired(session_id, EndReason.TIMEOUT.value)
            self.clear()
            return False

        target_id = self.storage.get(KEY_TARGET_ACTOR_ID)
        target = await self.identity.lookup_user_by_id(target_id) if target_id else None
        if target is None or target.role == PRIVILEGED_ROLE.value:
            logger.warning("impersonation_state_target_invalid", extra={"session_id": session_id})
            self.clear()
            return False

        self._state = ImpersonationState(
            real_actor=real_actor,
            effective_actor=target,
            session_id=session_id,
            reason=self.storage.get(KEY_REASON),
            start_time=started_at,
            max_duration_minutes=max_duration,
            warning_shown=self.storage.get(KEY_WARNING_SHOWN) == "true",
        )
        return True

    async def check_expiry(self) -> bool:
        """
        Force the session to end once it has run past its maximum duration.

        Returns:
            True if the session was expired by this call.
        """
        if not self.is_impersonating:
            return False
        if self.elapsed_minutes() < self._state.max_duration_minutes:
            return False

        session_id = self._state.session_id
        logger.warning("impersonation_state_timeout", extra={"session_id": session_id})
        if self.on_expired is not None and session_id:
            await self.on_expired(session_id, EndReason.TIMEOUT.value)
        self.clear()
        return True

    def _persist(self) -> None:
        state = self._state
        self.storage.set(KEY_SESSION_ID, state.session_id or "")
        self.storage.set(KEY_REAL_ACTOR_ID, state.real_actor.id if state.real_actor else "")
        self.storage.set(KEY_TARGET_ACTOR_ID, state.effective_actor.id if state.effective_actor else "")
        self.storage.set(KEY_STARTED_AT, state.start_time.isoformat() if state.start_time else "")
        self.storage.set(KEY_MAX_DURATION, str(state.max_duration_minutes))
        self.storage.set(KEY_REASON, state.reason or "")
        self.storage.set(KEY_WARNING_SHOWN, "true" if state.warning_shown else "false")
