"""
Callback client - best-effort status notifications to caller-supplied URLs.

Delivery rules:
- Empty URL: skipped, not an error (callbacks are optional)
- Local/private hosts, literal or resolved: rejected before any request is sent (SSRF protection)
- 2xx: delivered
- 4xx: permanent, not retried (429 is retried)
- 5xx, timeouts, connection errors: retried with backoff
- Failures are returned in CallbackResult, never raised to the caller
"""
import logging
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from monzo_connector.utils.errors import CallbackDeliveryError, parse_retry_after
from monzo_connector.utils.integrity import utc_timestamp
from monzo_connector.utils.metrics import Timer
from monzo_connector.utils.retry import CALLBACK_RETRY_POLICY, RetryPolicy, with_retry
from monzo_connector.utils.url_safety import sanitize_url, validate_callback_url

logger = logging.getLogger(__name__)

CONNECTOR_ID = "monzo-data-connector"
CONNECTOR_VERSION = "1.0.0"
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = "Monzo-Data-Connector/1.0"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_callback_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=8))
    return f"cb_{int(time.time() * 1000)}_{suffix}"


@dataclass
class CallbackAttempt:
    """State of one in-flight delivery. Lives only for the duration of the call."""
    callback_id: str
    url: str  # sanitized, safe to log
    payload: dict
    attempt: int = 0


@dataclass
class CallbackResult:
    success: bool
    callback_id: Optional[str] = None
    attempts: int = 0
    duration_ms: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "callbackId": self.callback_id,
            "attempts": self.attempts,
            "duration": self.duration_ms,
            "statusCode": self.status_code,
            "error": self.error,
            "skipped": self.skipped,
        }


class CallbackClient:
    """Sends JSON status callbacks with retry, URL validation and redacted logging."""

    def __init__(
        self,
        policy: RetryPolicy = CALLBACK_RETRY_POLICY,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.policy = policy
        self.timeout = timeout
        self.user_agent = user_agent
        self._transport = transport
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        }

    async def send_callback(self, url: Optional[str], payload: dict) -> CallbackResult:
        """Deliver payload to url. Never raises."""
        if not url:
            logger.debug("No callback URL provided, skipping callback")
            return CallbackResult(success=False, skipped=True, error="No callback URL provided")

        callback_id = generate_callback_id()
        safe_url = sanitize_url(url)

        rejection = await validate_callback_url(url)
        if rejection:
            logger.warning(
                "Callback rejected: %s", rejection,
                extra={"callback_id": callback_id, "url": safe_url},
            )
            return CallbackResult(success=False, callback_id=callback_id, error=rejection)

        attempt = CallbackAttempt(callback_id=callback_id, url=safe_url, payload=payload)
        timer = Timer().start()

        logger.info(
            "Sending callback status=%s", payload.get("status"),
            extra={
                "callback_id": callback_id,
                "url": safe_url,
                "request_id": payload.get("requestId"),
            },
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                status_code = await with_retry(
                    lambda: self._post_once(client, url, attempt),
                    self.policy,
                    context={"operation": "callback", "callback_id": callback_id},
                )
        except Exception as e:
            duration = timer.stop()
            logger.error(
                "Callback failed after %d attempt(s): %s", attempt.attempt, str(e),
                extra={"callback_id": callback_id, "url": safe_url, "duration_ms": duration},
            )
            return CallbackResult(
                success=False,
                callback_id=callback_id,
                attempts=attempt.attempt,
                duration_ms=duration,
                status_code=getattr(e, "status_code", None),
                error=str(e),
            )

        duration = timer.stop()
        logger.info(
            "Callback delivered on attempt %d", attempt.attempt,
            extra={"callback_id": callback_id, "duration_ms": duration},
        )
        return CallbackResult(
            success=True,
            callback_id=callback_id,
            attempts=attempt.attempt,
            duration_ms=duration,
            status_code=status_code,
        )

    async def _post_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        attempt: CallbackAttempt,
    ) -> int:
        """One POST. Raises CallbackDeliveryError classified for the retry engine."""
        attempt.attempt += 1
        logger.debug(
            "Callback attempt %d/%d", attempt.attempt, self.policy.max_attempts,
            extra={"callback_id": attempt.callback_id, "attempt": attempt.attempt},
        )

        try:
            response = await client.post(url, json=attempt.payload)
        except httpx.TransportError as e:
            raise CallbackDeliveryError(
                f"Callback transport error: {type(e).__name__}",
                retryable=True,
            ) from e

        status = response.status_code
        if 200 <= status < 300:
            return status

        reason = response.reason_phrase or ("Client error" if status < 500 else "Server error")
        raise CallbackDeliveryError(
            f"HTTP {status}: {reason}",
            status_code=status,
            retryable=status == 429 or status >= 500,
            retry_after=parse_retry_after(response.headers.get("retry-after")) if status == 429 else None,
        )

    async def send_status_callback(self, url: Optional[str], status_data: dict) -> CallbackResult:
        """Stamp connector identity, version and a fresh timestamp, then send."""
        payload = {
            "timestamp": utc_timestamp(),
            "connector": CONNECTOR_ID,
            "version": CONNECTOR_VERSION,
            **status_data,
        }
        return await self.send_callback(url, payload)

    async def send_processing_callback(
        self,
        url: Optional[str],
        request_id: str,
        message: str = "Data extraction in progress",
    ) -> CallbackResult:
        return await self.send_status_callback(url, {
            "requestId": request_id,
            "status": "processing",
            "message": message,
        })

    async def send_success_callback(
        self,
        url: Optional[str],
        request_id: str,
        data: Any,
        wallet: Optional[dict] = None,
        duration_ms: Optional[int] = None,
        message: str = "Data extraction completed successfully",
    ) -> CallbackResult:
        payload = {
            "requestId": request_id,
            "status": "completed",
            "message": message,
            "data": data,
            "duration": duration_ms,
        }
        if wallet is not None:
            payload["wallet"] = wallet
        return await self.send_status_callback(url, payload)

    async def send_failure_callback(
        self,
        url: Optional[str],
        request_id: str,
        error: str,
        duration_ms: Optional[int] = None,
    ) -> CallbackResult:
        return await self.send_status_callback(url, {
            "requestId": request_id,
            "status": "failed",
            "message": f"Data extraction failed: {error}",
            "error": error,
            "duration": duration_ms,
        })

    async def test_callback(self, url: str) -> dict:
        """Connectivity check used by the test-callback endpoint."""
        result = await self.send_callback(url, {
            "test": True,
            "timestamp": utc_timestamp(),
            "connector": CONNECTOR_ID,
            "message": "Connectivity test",
        })
        return {
            "success": result.success,
            "url": sanitize_url(url),
            "duration": result.duration_ms,
            "statusCode": result.status_code,
            "attempts": result.attempts,
            "error": result.error,
        }
