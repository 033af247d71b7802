from fastapi import APIRouter

from partage_expiry.api.routes import cron, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(cron.router, prefix="/api/cron", tags=["cron"])
