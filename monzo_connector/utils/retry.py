"""
Retry policy engine - run a fallible async operation with backoff.

Classification order:
1. An explicit ``retryable`` attribute on the error wins.
2. Otherwise status codes 429/500/502/503/504 are retryable.

Delay order:
1. An explicit ``retry_after`` on the error, or a Retry-After header on an
   attached response, is used verbatim when it is a finite, non-negative number.
2. Otherwise min(base * multiplier^(attempt-1), max), jittered by +/-25%.
"""
import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from monzo_connector.utils.errors import RETRYABLE_STATUS_CODES, parse_retry_after

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


# Upstream API calls: retry 429/5xx, give up on other 4xx
UPSTREAM_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, backoff_multiplier=2.0)

# Callback delivery: 3 attempts, doubling from 1s
CALLBACK_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, backoff_multiplier=2.0)


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failure is worth another attempt."""
    explicit = getattr(error, "retryable", None)
    if isinstance(explicit, bool):
        return explicit
    return _status_of(error) in RETRYABLE_STATUS_CODES


def _explicit_retry_after(error: BaseException) -> Optional[float]:
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and math.isfinite(retry_after) and retry_after >= 0:
        return float(retry_after)

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or getattr(error, "headers", None)
    if headers:
        try:
            return parse_retry_after(headers.get("retry-after"))
        except AttributeError:
            return None
    return None


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    error: Optional[BaseException] = None,
) -> float:
    """Delay in seconds to wait after the given (1-based) failed attempt."""
    if error is not None:
        explicit = _explicit_retry_after(error)
        if explicit is not None:
            return explicit

    delay = min(
        policy.base_delay * (policy.backoff_multiplier ** (attempt - 1)),
        policy.max_delay,
    )
    jitter = delay * JITTER_RATIO * random.uniform(-1.0, 1.0)
    return max(0.0, delay + jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = UPSTREAM_RETRY_POLICY,
    context: Optional[dict] = None,
) -> T:
    """
    Call operation until it succeeds or attempts run out.
    Re-raises the last failure verbatim.
    """
    context = context or {}
    label = context.get("operation", getattr(operation, "__name__", "operation"))

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            retryable = is_retryable(e)
            logger.warning(
                "%s attempt %d/%d failed: %s (retryable=%s)",
                label, attempt, policy.max_attempts, str(e), retryable,
                extra={"attempt": attempt, **context},
            )

            if not retryable:
                raise

            if attempt >= policy.max_attempts:
                logger.error(
                    "%s failed after %d attempts", label, attempt,
                    extra={"attempt": attempt, **context},
                )
                raise

            delay = compute_delay(attempt, policy, e)
            logger.debug("%s retrying in %.2fs", label, delay)
            await asyncio.sleep(delay)

    raise RuntimeError("with_retry exhausted without a result")
