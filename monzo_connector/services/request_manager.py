"""
Request lifecycle manager - the orchestration core of the connector.

Accepts extraction requests and runs them either inline (sync) or as a
background asyncio task (async). Async requests are tracked as RequestRecords:

    pending -> processing -> completed | failed

Callbacks go out on processing and on the terminal state when the caller
supplied a callback URL. Terminal records stay queryable for a retention
window (5 minutes by default) and are then evicted.

Guarantees:
- The acknowledgment for an async request is returned before the job's first
  side effect. The job waits on a per-record acknowledgment event, which the
  caller sets once the acknowledgment has been delivered (or accept() sets it
  itself when auto_acknowledge is on).
- Extraction is retried per policy; storage is attempted once and its
  failure is recorded as partial success (completed, wallet.stored=false).
- Nothing raised inside a job escapes it: every failure becomes a failed record.
"""
import asyncio
import logging
import random
import string
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from monzo_connector.integrations.base import Extractor, StoreOutcome, StoreResult, WalletStore
from monzo_connector.services.callbacks import CallbackClient
from monzo_connector.utils.errors import (
    ConnectorError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from monzo_connector.utils.integrity import utc_timestamp
from monzo_connector.utils.logging import request_context
from monzo_connector.utils.metrics import Timer
from monzo_connector.utils.retry import UPSTREAM_RETRY_POLICY, RetryPolicy, with_retry
from monzo_connector.utils.url_safety import is_valid_url

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 300
ACK_TIMEOUT_SECONDS = 10.0
REQUEST_ID_PREFIX = "monzo"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING}),
    RequestStatus.PROCESSING: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}


def generate_request_id(prefix: str = REQUEST_ID_PREFIX) -> str:
    """e.g. monzo_1718000000000_k3j9x0a2b"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def mask_identifier(value: str) -> str:
    return value[:10] + "..." if len(value) > 10 else value


@dataclass
class RequestRecord:
    """Lifecycle state of one async request. Mutated only by its own job."""
    request_id: str
    user_identifier: str
    callback_url: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    created_at: str = field(default_factory=utc_timestamp)
    completed_at: Optional[str] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    timer: Timer = field(default_factory=lambda: Timer().start(), repr=False)
    acknowledged: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(
        self,
        new_status: RequestStatus,
        *,
        result: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move {self.request_id} from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status in TERMINAL_STATUSES:
            self.timer.stop()
            self.completed_at = utc_timestamp()
        if new_status == RequestStatus.COMPLETED:
            self.result = result
        elif new_status == RequestStatus.FAILED:
            self.error = error

    def to_status_view(self) -> dict:
        """Read-only projection for status queries."""
        return {
            "requestId": self.request_id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "duration": self.timer.elapsed_ms,
            "hasCallback": bool(self.callback_url),
            "result": self.result if self.status == RequestStatus.COMPLETED else None,
            "error": self.error,
        }


class RequestStore:
    """
    Thread-safe map of request_id -> RequestRecord.
    The lock is never held across an await.
    """

    def __init__(self):
        self._records: dict[str, RequestRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: RequestRecord) -> None:
        with self._lock:
            if record.request_id in self._records:
                raise ValueError(f"Duplicate request id {record.request_id}")
            self._records[record.request_id] = record

    def get(self, request_id: str) -> Optional[RequestRecord]:
        with self._lock:
            return self._records.get(request_id)

    def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._records.pop(request_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._records


@dataclass
class Acknowledgment:
    request_id: str
    callback_url: Optional[str] = None

    def to_response(self) -> dict:
        return {
            "status": "accepted",
            "requestId": self.request_id,
            "message": "Request accepted for asynchronous processing",
            "processing": {
                "status": RequestStatus.PENDING.value,
                "estimatedDuration": "30-60 seconds",
                "callbackUrl": self.callback_url or "none",
            },
            "timestamp": utc_timestamp(),
        }


@dataclass
class SyncResult:
    request_id: str
    data: dict
    wallet: StoreResult

    def to_response(self) -> dict:
        return {
            "status": "success",
            "requestId": self.request_id,
            "message": "Data extraction and wallet storage completed successfully",
            "data": self.data,
            "wallet": self.wallet.to_dict(),
            "timestamp": utc_timestamp(),
        }


def summarize_extraction(data: dict, duration_ms: Optional[int] = None) -> dict:
    """The part of an extraction result reported back to callers."""
    summary = {
        "accounts": data.get("accounts") or [],
        "balances": data.get("balances") or [],
        "extractionTime": data.get("extractionTime") or utc_timestamp(),
        "connectionTest": data.get("connectionTest"),
    }
    if duration_ms is not None:
        summary["duration"] = duration_ms
    return summary


class RequestManager:
    """Owns every request from acceptance to eviction."""

    def __init__(
        self,
        extractor: Extractor,
        wallet: WalletStore,
        callback_client: CallbackClient,
        retry_policy: RetryPolicy = UPSTREAM_RETRY_POLICY,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        ack_timeout: float = ACK_TIMEOUT_SECONDS,
    ):
        self.extractor = extractor
        self.wallet = wallet
        self.callbacks = callback_client
        self.retry_policy = retry_policy
        self.retention_seconds = retention_seconds
        self.ack_timeout = ack_timeout
        self._store = RequestStore()
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._store)

    # -- acceptance -------------------------------------------------------

    async def accept(
        self,
        user_identifier: Optional[str],
        callback_url: Optional[str] = None,
        is_async: bool = False,
        auto_acknowledge: bool = True,
    ):
        """
        Validate and run a request.

        Returns a SyncResult (sync) or an Acknowledgment (async).
        Raises ValidationError for bad input, and for sync requests any
        ConnectorError from extraction.
        """
        if not isinstance(user_identifier, str) or not user_identifier.strip():
            raise ValidationError("Missing user identifier in request body", code="missing_data")
        if callback_url and not is_valid_url(callback_url):
            raise ValidationError("Invalid callback URL format", code="invalid_callback")

        request_id = generate_request_id()
        logger.info(
            "Request validated user=%s async=%s callback=%s",
            mask_identifier(user_identifier), bool(is_async), bool(callback_url),
            extra={"request_id": request_id},
        )

        if not is_async:
            with request_context(request_id):
                return await self._run_sync(request_id, user_identifier)

        record = RequestRecord(
            request_id=request_id,
            user_identifier=user_identifier,
            callback_url=callback_url or None,
        )
        self._store.add(record)
        self._spawn(self.run_job(request_id))
        if auto_acknowledge:
            record.acknowledged.set()

        return Acknowledgment(request_id=request_id, callback_url=record.callback_url)

    def acknowledge(self, request_id: str) -> None:
        """Signal that the acknowledgment has reached the caller; releases the job."""
        record = self._store.get(request_id)
        if record:
            record.acknowledged.set()

    async def _run_sync(self, request_id: str, user_identifier: str) -> SyncResult:
        timer = Timer().start()
        try:
            data = await self._extract(request_id, user_identifier)
        except ConnectorError:
            raise
        except Exception as e:
            logger.error("Sync extraction crashed: %s", str(e), exc_info=True)
            raise UpstreamUnavailable(
                f"Data extraction failed: {e}", code="extraction_failed", retryable=False,
            ) from e

        wallet_result = await self._store_data(data, f"monzo-data-sync-{request_id}")
        duration = timer.stop()
        logger.info(
            "Sync request processed accounts=%d wallet_stored=%s",
            len(data.get("accounts") or []), wallet_result.stored,
            extra={"duration_ms": duration},
        )
        return SyncResult(
            request_id=request_id,
            data=summarize_extraction(data),
            wallet=wallet_result,
        )

    # -- background execution ---------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_job(self, request_id: str) -> None:
        """Background body of an async request."""
        with request_context(request_id):
            await self._run_job(request_id)

    async def _run_job(self, request_id: str) -> None:
        record = self._store.get(request_id)
        if record is None:
            logger.error("Async request not found", extra={"request_id": request_id})
            return

        try:
            await asyncio.wait_for(record.acknowledged.wait(), timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            logger.warning("Acknowledgment not confirmed, starting anyway")

        try:
            await self._execute(record)
        except asyncio.CancelledError:
            if not record.is_terminal:
                self._fail(record, "Request cancelled during shutdown")
            raise
        except Exception as e:
            logger.error("Async request crashed: %s", str(e), exc_info=True)
            if not record.is_terminal:
                self._fail(record, str(e) or type(e).__name__)
                await self._notify_terminal(record)

        self._spawn(self._evict_later(request_id))

    async def _execute(self, record: RequestRecord) -> None:
        request_id = record.request_id
        logger.info("Starting async request processing")
        record.transition(RequestStatus.PROCESSING)

        if record.callback_url:
            await self._notify(self.callbacks.send_processing_callback(record.callback_url, request_id))

        try:
            data = await self._extract(request_id, record.user_identifier)
        except Exception as e:
            message = e.message if isinstance(e, ConnectorError) else (str(e) or type(e).__name__)
            logger.warning("Extraction failed: %s", message)
            self._fail(record, message)
            await self._notify_terminal(record)
            return

        wallet_result = await self._store_data(data, f"monzo-data-{request_id}")

        record.transition(
            RequestStatus.COMPLETED,
            result={
                "data": summarize_extraction(data, record.timer.elapsed_ms),
                "wallet": wallet_result.to_dict(),
            },
        )
        logger.info(
            "Async request completed accounts=%d wallet_stored=%s",
            len(data.get("accounts") or []), wallet_result.stored,
            extra={"duration_ms": record.timer.elapsed_ms, "status": "completed"},
        )
        await self._notify_terminal(record)

    def _fail(self, record: RequestRecord, error: str) -> None:
        record.transition(RequestStatus.FAILED, error=error)
        logger.error(
            "Async request failed: %s", error,
            extra={"duration_ms": record.timer.elapsed_ms, "status": "failed"},
        )

    async def _notify_terminal(self, record: RequestRecord) -> None:
        if not record.callback_url:
            return
        if record.status == RequestStatus.COMPLETED:
            result = record.result or {}
            coro = self.callbacks.send_success_callback(
                record.callback_url,
                record.request_id,
                data=result.get("data"),
                wallet=result.get("wallet"),
                duration_ms=record.timer.elapsed_ms,
                message="Data extraction and wallet storage completed successfully",
            )
        else:
            coro = self.callbacks.send_failure_callback(
                record.callback_url,
                record.request_id,
                record.error or "Unknown error",
                duration_ms=record.timer.elapsed_ms,
            )
        await self._notify(coro)

    async def _notify(self, coro) -> None:
        """Await a callback send. Delivery problems never affect the job."""
        try:
            result = await coro
        except Exception as e:
            logger.error("Callback raised unexpectedly: %s", str(e))
            return
        if not result.success and not result.skipped:
            logger.warning("Callback not delivered: %s", result.error)

    async def _extract(self, request_id: str, user_identifier: str) -> dict:
        return await with_retry(
            lambda: self.extractor.extract(user_identifier),
            self.retry_policy,
            context={"operation": "extraction", "request_id": request_id},
        )

    async def _store_data(self, data: dict, record_name: str) -> StoreResult:
        """Single storage attempt. Failures become a FAILED StoreResult."""
        try:
            result = await self.wallet.store(data, record_name)
        except Exception as e:
            logger.error("Wallet storage error: %s", str(e))
            return StoreResult(outcome=StoreOutcome.FAILED, error=str(e) or type(e).__name__)

        if result.outcome == StoreOutcome.FAILED:
            logger.warning("Wallet storage failed: %s", result.error)
        else:
            logger.info(
                "Wallet storage outcome=%s", result.outcome.value,
                extra={"record_id": result.record_id, "namespace": result.namespace},
            )
        return result

    async def _evict_later(self, request_id: str) -> None:
        await asyncio.sleep(self.retention_seconds)
        if self._store.delete(request_id):
            logger.debug("Async request data cleaned up", extra={"request_id": request_id})

    # -- queries ------------------------------------------------------------

    def get_status(self, request_id: str) -> dict:
        record = self._store.get(request_id)
        if record is None:
            raise NotFoundError("Request ID not found or expired")
        return record.to_status_view()

    def get_record(self, request_id: str) -> Optional[RequestRecord]:
        return self._store.get(request_id)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel in-flight jobs and pending evictions."""
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("Request manager shutting down - cancelling %d tasks", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=timeout)
