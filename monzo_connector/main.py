"""
Monzo Data Connector - webhook-triggered extraction into a Dataswyft wallet.
Main FastAPI application entry point.
"""
import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from monzo_connector.api.router import api_router
from monzo_connector.config import Settings, get_settings
from monzo_connector.integrations.dataswyft import DataswyftWallet
from monzo_connector.integrations.monzo import MonzoExtractor
from monzo_connector.services.callbacks import CONNECTOR_VERSION, CallbackClient
from monzo_connector.services.request_manager import RequestManager
from monzo_connector.utils.auth import build_authenticator
from monzo_connector.utils.errors import ConnectorError
from monzo_connector.utils.integrity import utc_timestamp
from monzo_connector.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("monzo_connector")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def build_request_manager(settings: Settings) -> RequestManager:
    """Wire the extractor, wallet and callback client from settings."""
    extractor = MonzoExtractor(
        access_token=settings.monzo_access_token,
        base_url=settings.monzo_base_url,
        timeout=settings.monzo_timeout_seconds,
        rate_limit_per_second=settings.monzo_rate_limit_per_second,
        transaction_limit=settings.monzo_transaction_limit,
    )
    wallet = DataswyftWallet(
        api_url=settings.dataswyft_api_url,
        username=settings.dataswyft_username,
        password=settings.dataswyft_password,
        application_id=settings.dataswyft_application_id,
        namespace=settings.wallet_namespace,
        data_path=settings.wallet_data_path,
        timeout=settings.wallet_timeout_seconds,
    )
    callbacks = CallbackClient(
        policy=settings.callback_retry_policy(),
        timeout=settings.callback_timeout_seconds,
        user_agent=settings.callback_user_agent,
    )
    return RequestManager(
        extractor=extractor,
        wallet=wallet,
        callback_client=callbacks,
        retry_policy=settings.upstream_retry_policy(),
        retention_seconds=settings.request_retention_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Monzo Data Connector starting up (env=%s)", settings.app_env)

    if not settings.monzo_access_token:
        logger.warning("MONZO_ACCESS_TOKEN not set - extraction requests will fail")
    if not (settings.dataswyft_username and settings.dataswyft_password):
        logger.warning("Dataswyft credentials not set - wallet storage will fail")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    if getattr(app.state, "request_manager", None) is None:
        app.state.request_manager = build_request_manager(settings)
    if getattr(app.state, "authenticator", None) is None:
        app.state.authenticator = build_authenticator(settings)

    yield

    manager = app.state.request_manager
    logger.info("Monzo Data Connector shutting down - %d requests tracked", manager.active_count)
    await manager.shutdown()
    logger.info("Monzo Data Connector shutdown complete")


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    """Render taxonomy errors as the standard error envelope."""
    headers = {}
    if exc.retry_after is not None and math.isfinite(exc.retry_after):
        headers["Retry-After"] = str(int(exc.retry_after))
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message, extra={"error_code": exc.code})
    else:
        logger.info("Request rejected: %s", exc.message, extra={"error_code": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": exc.to_dict(), "timestamp": utc_timestamp()},
        headers=headers,
    )


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Monzo Data Connector",
        description="Webhook-triggered Monzo extraction into a Dataswyft wallet",
        version=CONNECTOR_VERSION,
        lifespan=lifespan,
    )
    application.state.request_manager = None
    application.state.authenticator = None

    application.add_middleware(CorrelationIdMiddleware)
    application.add_exception_handler(ConnectorError, connector_error_handler)
    application.include_router(api_router)

    return application


app = create_app()
