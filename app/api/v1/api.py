from fastapi import APIRouter

from app.api.v1.routers import job_schedules, shoptet_webhooks, snapshots

# API маршруты
api_router = APIRouter()
api_router.include_router(shoptet_webhooks.router, prefix="/shoptet", tags=["Shoptet Webhooks"])
api_router.include_router(snapshots.router, prefix="/snapshots", tags=["Snapshots"])
api_router.include_router(job_schedules.router, prefix="/schedules", tags=["Job Schedules"])
