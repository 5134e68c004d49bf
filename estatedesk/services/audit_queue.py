"""
Retry queue for impersonation audit writes.

A failed action write never blocks the operator: the write is queued here
and a background job retries it until it lands or runs out of attempts.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from estatedesk.schemas.impersonation import ActionContext
from estatedesk.services.impersonation_audit import ImpersonationAuditService
from estatedesk.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PendingAuditWrite:
    session_id: str
    admin_id: str
    target_user_id: str
    action_type: str
    description: str
    performed_at: datetime
    context: Optional[ActionContext] = None
    risk_level: Optional[str] = None
    system_generated: bool = False
    attempts: int = 0


class AuditWriteQueue:
    """Bounded in-process FIFO of audit writes waiting to be retried."""

    def __init__(self, maxsize: int = 1000, max_attempts: int = 5):
        self.maxsize = maxsize
        self.max_attempts = max_attempts
        self._items: Deque[PendingAuditWrite] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, item: PendingAuditWrite) -> None:
        if len(self._items) >= self.maxsize:
            dropped = self._items.popleft()
            logger.error(
                "audit_write_dropped",
                extra={
                    "session_id": dropped.session_id,
                    "action_type": dropped.action_type,
                    "cause": "queue_full",
                },
            )
        self._items.append(item)
        logger.warning(
            "audit_write_queued",
            extra={"session_id": item.session_id, "action_type": item.action_type, "pending": len(self._items)},
        )

    async def flush(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> int:
        """
        Retry every queued write once.

        Returns:
            Number of writes that landed.
        """
        async with self._lock:
            if not self._items:
                return 0

            pending = list(self._items)
            self._items.clear()
            written = 0

            async with session_factory() as db:
                audit = ImpersonationAuditService(db, clock)
                for item in pending:
                    try:
                        await audit.log_action(
                            session_id=item.session_id,
                            admin_id=item.admin_id,
                            target_user_id=item.target_user_id,
                            action_type=item.action_type,
                            description=item.description,
                            context=item.context,
                            risk_level=item.risk_level,
                            system_generated=item.system_generated,
                            performed_at=item.performed_at,
                        )
                        written += 1
                    except SQLAlchemyError:
                        await db.rollback()
                        item.attempts += 1
                        if item.attempts >= self.max_attempts:
                            logger.error(
                                "audit_write_dropped",
                                extra={
                                    "session_id": item.session_id,
                                    "action_type": item.action_type,
                                    "cause": "max_attempts",
                                    "attempts": item.attempts,
                                },
                            )
                        else:
                            self._items.append(item)

            if written:
                logger.info("audit_writes_flushed", extra={"written": written, "pending": len(self._items)})
            return written
