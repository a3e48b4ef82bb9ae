"""
Webhook endpoints - extraction requests from the gateway.

Security layers (in order):
1. Bearer token validation (Authorization, X-Auth-Token, or body token)
2. Payload validation
3. Dispatch to the request manager (sync inline, async in background)

Async requests are acknowledged with 202 before any processing side effect:
the job is released by a background task that runs after the response is sent.
"""
import logging

import pydantic
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from monzo_connector.api.deps import get_authenticator, get_callback_client, get_request_manager
from monzo_connector.schemas.api_responses import (
    AcceptedResponse,
    ErrorResponse,
    StatusResponse,
    SyncSuccessResponse,
    TestCallbackResponse,
)
from monzo_connector.schemas.webhook_payloads import ConnectRequest, TestCallbackRequest
from monzo_connector.services.request_manager import Acknowledgment, RequestManager
from monzo_connector.utils.auth import Authenticator, extract_bearer_token
from monzo_connector.utils.errors import AuthenticationError, ValidationError
from monzo_connector.utils.integrity import utc_timestamp
from monzo_connector.utils.url_safety import sanitize_url

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhooks"])


async def _read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON", code="invalid_json")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", code="invalid_json")
    return body


def _require_token(request: Request, body: dict, authenticator: Authenticator) -> dict:
    token = extract_bearer_token(request.headers, body)
    if not token:
        raise AuthenticationError("Authentication token required", code="missing_token")
    claims = authenticator.authenticate(token)
    if claims is None:
        raise AuthenticationError("Invalid or expired token", code="invalid_token")
    return claims


async def _release_job(manager: RequestManager, request_id: str) -> None:
    # Runs on the event loop once the 202 has been sent
    manager.acknowledge(request_id)


@router.post(
    "/connect",
    responses={
        200: {"model": SyncSuccessResponse},
        202: {"model": AcceptedResponse},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
    },
)
async def connect(
    request: Request,
    manager: RequestManager = Depends(get_request_manager),
    authenticator: Authenticator = Depends(get_authenticator),
):
    """
    Extraction trigger.
    Sync: extract + store inline, 200 with the result.
    Async: 202 acknowledgment, job runs in background with callbacks.
    """
    body = await _read_json_body(request)
    claims = _require_token(request, body, authenticator)

    try:
        payload = ConnectRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid request body: {e.errors()[0].get('msg')}")

    logger.info(
        "Connect webhook received async=%s callback=%s subject=%s",
        payload.is_async, bool(payload.callback_url), claims.get("sub"),
    )

    outcome = await manager.accept(
        payload.data,
        callback_url=payload.callback_url,
        is_async=payload.is_async,
        auto_acknowledge=False,
    )

    if isinstance(outcome, Acknowledgment):
        return JSONResponse(
            status_code=202,
            content=outcome.to_response(),
            background=BackgroundTask(_release_job, manager, outcome.request_id),
        )
    return outcome.to_response()


@router.get(
    "/status/{request_id}",
    response_model=StatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def request_status(
    request_id: str,
    manager: RequestManager = Depends(get_request_manager),
):
    """Snapshot of an async request. 404 once evicted."""
    return {
        "status": "success",
        "data": manager.get_status(request_id),
        "timestamp": utc_timestamp(),
    }


@router.post("/test-callback", response_model=TestCallbackResponse)
async def test_callback(
    payload: TestCallbackRequest,
    callback_client=Depends(get_callback_client),
):
    """Send a single test payload to a callback URL."""
    if not payload.url:
        raise ValidationError("Callback URL is required", code="missing_url")

    logger.info("Testing callback URL", extra={"url": sanitize_url(payload.url)})
    result = await callback_client.test_callback(payload.url)
    return {
        "status": "success" if result["success"] else "error",
        "data": result,
        "timestamp": utc_timestamp(),
    }
