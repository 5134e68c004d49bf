from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from estatedesk.api.router import api_router
from estatedesk.background.scheduler import impersonation_scheduler, shutdown_scheduler, start_scheduler
from estatedesk.core.config import get_settings
from estatedesk.core.db import AsyncSessionFactory, init_database
from estatedesk.core.logging_config import configure_logging
from estatedesk.middleware.security import setup_security_middleware
from estatedesk.services.audit_queue import AuditWriteQueue
from estatedesk.services.impersonation_events import event_broker
from estatedesk.services.impersonation_safety import SafetyMonitor

settings = get_settings()
logger = logging.getLogger(__name__)


def build_safety_monitor() -> SafetyMonitor:
    return SafetyMonitor(
        impersonation_scheduler,
        AsyncSessionFactory,
        events=event_broker,
        warning_at_minutes=settings.impersonation_warning_at_minutes,
        inactivity_timeout_minutes=settings.impersonation_inactivity_timeout_minutes,
        hidden_inactivity_minutes=settings.impersonation_hidden_inactivity_minutes,
        extension_minutes=settings.impersonation_extension_minutes,
        exit_redirect=settings.impersonation_exit_redirect,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_starting", extra={"environment": settings.environment})

    await init_database()

    monitor = build_safety_monitor()
    audit_queue = AuditWriteQueue(
        maxsize=settings.audit_retry_queue_size,
        max_attempts=settings.audit_retry_max_attempts,
    )
    app.state.safety_monitor = monitor
    app.state.audit_queue = audit_queue

    start_scheduler(monitor, audit_queue)
    logger.info("application_started")

    yield

    shutdown_scheduler()
    logger.info("application_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.backend_cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
    )
    setup_security_middleware(app)
    # Carries impersonation state; no max_age, so the cookie ends with the browser session
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        session_cookie=settings.session_cookie_name,
        max_age=None,
        same_site="lax",
        https_only=settings.is_production,
    )

    app.include_router(api_router, prefix="/api")

    @app.get("/", tags=["Health"])
    async def root() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()
