from fastapi import APIRouter

from estatedesk.routers import health, impersonation

api_router = APIRouter()

api_router.include_router(health.router, tags=["Health"])
api_router.include_router(impersonation.router, prefix="/impersonation", tags=["Impersonation"])
