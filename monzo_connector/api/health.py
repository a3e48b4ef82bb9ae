"""
Health check endpoint - used by load balancers, Docker healthcheck, and monitoring.

- GET /health - basic liveness (always 200 if app running)
"""
import logging

from fastapi import APIRouter, Depends

from monzo_connector.api.deps import get_request_manager
from monzo_connector.services.callbacks import CONNECTOR_ID, CONNECTOR_VERSION
from monzo_connector.services.request_manager import RequestManager
from monzo_connector.utils.integrity import utc_timestamp

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(manager: RequestManager = Depends(get_request_manager)):
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "connector": CONNECTOR_ID,
        "version": CONNECTOR_VERSION,
        "activeRequests": manager.active_count,
        "timestamp": utc_timestamp(),
    }
