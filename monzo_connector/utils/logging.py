"""
Structured JSON logging for the connector.

Two context variables travel with every log line:
- correlation_id: set per HTTP request by CorrelationIdMiddleware.
- request_id: set for the lifetime of a sync request or async job via
  request_context(), so nothing inside the job has to pass it explicitly.

asyncio tasks copy the context at creation, so a job spawned from a request
keeps the request's correlation id while holding its own request id.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from monzo_connector.utils.errors import ConnectorError

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Copied from the record when passed via extra=
EXTRA_FIELDS = (
    "request_id",
    "callback_id",
    "status",
    "attempt",
    "duration_ms",
    "url",
    "error_code",
    "namespace",
    "record_id",
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


@contextmanager
def request_context(request_id: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with request_id."""
    token = request_id_ctx.set(request_id)
    try:
        yield
    finally:
        request_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per line:
    {"timestamp", "level", "correlation_id", "module", "message", ...extras}

    request_id falls back to the active request_context. error_code falls
    back to the code of a logged ConnectorError.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        if "request_id" not in log_entry:
            request_id = get_request_id()
            if request_id:
                log_entry["request_id"] = request_id

        if record.exc_info and record.exc_info[0] is not None:
            exc = record.exc_info[1]
            if isinstance(exc, ConnectorError):
                log_entry.setdefault("error_code", exc.code)
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger. Call once at startup."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter())
    root_logger.addHandler(stream_handler)

    # httpx logs full request URLs at INFO, which may carry callback tokens
    for noisy in ("uvicorn.access", "httpcore", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
