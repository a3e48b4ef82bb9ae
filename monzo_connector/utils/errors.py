"""
Error taxonomy for the connector.

Every failure the core handles is one of these kinds. Each kind carries its
own retry semantics as explicit fields so the retry engine can classify
failures without probing for ad hoc attributes.
"""
import math
from typing import Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""

    code = "api_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ConnectorError):
    """Missing or malformed input. Surfaced to the caller immediately."""
    code = "invalid_data"
    status_code = 400
    retryable = False


class AuthenticationError(ConnectorError):
    """
    Credential or token invalid/expired.
    Retryable only after a refresh, which is the integration's job, not the core's.
    """
    code = "oauth_failure"
    status_code = 401
    retryable = False


class RateLimitError(ConnectorError):
    """Upstream returned 429."""
    code = "rate_limited"
    status_code = 429
    retryable = True


class UpstreamUnavailable(ConnectorError):
    """Upstream 5xx or connectivity failure."""
    code = "upstream_unavailable"
    status_code = 503
    retryable = True


class UpstreamError(ConnectorError):
    """Upstream rejected the request (4xx other than 401/429)."""
    code = "upstream_error"
    status_code = 502
    retryable = False


class StorageError(ConnectorError):
    """Wallet write failed. Never retried by the core."""
    code = "storage_error"
    status_code = 502
    retryable = False


class CallbackDeliveryError(ConnectorError):
    """Callback POST failed. Only ever seen inside the callback client."""
    code = "callback_failed"
    status_code = 502
    retryable = False


class NotFoundError(ConnectorError):
    """Unknown or evicted request ID."""
    code = "request_not_found"
    status_code = 404
    retryable = False


class InvalidTransitionError(ConnectorError):
    """Illegal request status transition."""
    code = "invalid_transition"
    status_code = 500
    retryable = False


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def parse_retry_after(value) -> Optional[float]:
    """Parse a Retry-After header value in seconds. HTTP-date form is not supported."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def error_from_status(
    status_code: int,
    message: str,
    retry_after: Optional[float] = None,
) -> ConnectorError:
    """Map an upstream HTTP status to the matching error kind."""
    if status_code == 401:
        return AuthenticationError(message, status_code=401)
    if status_code == 429:
        return RateLimitError(message, retry_after=retry_after)
    if status_code >= 500:
        return UpstreamUnavailable(
            message,
            status_code=status_code,
            retryable=status_code in RETRYABLE_STATUS_CODES,
            retry_after=retry_after,
        )
    if status_code == 404:
        return UpstreamError(message, code="data_not_found", status_code=404)
    return UpstreamError(message, status_code=status_code)
