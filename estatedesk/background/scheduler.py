from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from estatedesk.core.config import get_settings
from estatedesk.core.db import AsyncSessionFactory
from estatedesk.services.audit_queue import AuditWriteQueue
from estatedesk.services.impersonation_safety import SafetyMonitor

logger = logging.getLogger(__name__)
settings = get_settings()

impersonation_scheduler = AsyncIOScheduler(timezone="UTC")


async def run_expiry_sweep(monitor: SafetyMonitor) -> None:
    """End active sessions that have outlived their grant."""
    try:
        ended = await monitor.sweep_overdue_sessions()
    except SQLAlchemyError:
        logger.exception("impersonation_expiry_sweep_failed")
        return
    if ended:
        logger.info("impersonation_expiry_sweep_completed", extra={"ended": ended})


async def run_audit_retry(queue: AuditWriteQueue) -> None:
    """Retry audit writes that failed on the request path."""
    if not len(queue):
        return
    written = await queue.flush(AsyncSessionFactory)
    logger.info("impersonation_audit_retry", extra={"written": written, "pending": len(queue)})


def start_scheduler(monitor: SafetyMonitor, audit_queue: AuditWriteQueue) -> None:
    if impersonation_scheduler.running:
        return
    impersonation_scheduler.add_job(
        run_expiry_sweep,
        "interval",
        seconds=settings.impersonation_expiry_check_seconds,
        args=[monitor],
        id="impersonation_expiry_sweep",
        max_instances=1,
        coalesce=True,
    )
    impersonation_scheduler.add_job(
        run_audit_retry,
        "interval",
        seconds=settings.audit_retry_interval_seconds,
        args=[audit_queue],
        id="impersonation_audit_retry",
        max_instances=1,
        coalesce=True,
    )
    impersonation_scheduler.start()
    logger.info(
        "impersonation_scheduler_started",
        extra={
            "expiry_check_seconds": settings.impersonation_expiry_check_seconds,
            "audit_retry_interval_seconds": settings.audit_retry_interval_seconds,
        },
    )


def shutdown_scheduler() -> None:
    if impersonation_scheduler.running:
        impersonation_scheduler.shutdown(wait=False)
        logger.info("impersonation_scheduler_stopped")
