"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from monzo_connector.api.webhooks import router as webhooks_router
from monzo_connector.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(health_router)
