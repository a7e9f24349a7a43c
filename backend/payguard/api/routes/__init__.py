from fastapi import APIRouter

from payguard.api.routes import billing, health, security, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
api_router.include_router(security.router, prefix="/security", tags=["security"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
