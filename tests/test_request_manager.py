"""
Tests for monzo_connector/services/request_manager.py - lifecycle, ack ordering, eviction.
"""
import asyncio
import json
import logging
import re

import httpx
import pytest

from conftest import (
    FAST_POLICY,
    CallbackRecorder,
    FakeExtractor,
    FakeWallet,
    wait_for_status,
)
from monzo_connector.integrations.base import StoreOutcome, StoreResult
from monzo_connector.services.callbacks import CallbackClient
from monzo_connector.services.request_manager import (
    Acknowledgment,
    RequestManager,
    RequestRecord,
    RequestStatus,
    RequestStore,
    SyncResult,
    generate_request_id,
    mask_identifier,
)
from monzo_connector.utils.errors import (
    AuthenticationError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from monzo_connector.utils.logging import StructuredJsonFormatter

REQUEST_ID = re.compile(r"^[a-z]+_\d+_[a-z0-9]+$")
CALLBACK_URL = "https://hooks.example.com/cb"


class _JsonCapture(logging.Handler):
    """Formats at emit time, while the emitting task's context is live."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.setFormatter(StructuredJsonFormatter())
        self.entries: list[dict] = []

    def emit(self, record):
        self.entries.append(json.loads(self.format(record)))


def _manager(extractor=None, wallet=None, recorder=None, **kwargs) -> RequestManager:
    recorder = recorder if recorder is not None else CallbackRecorder()
    return RequestManager(
        extractor=extractor or FakeExtractor(),
        wallet=wallet or FakeWallet(),
        callback_client=CallbackClient(policy=FAST_POLICY, transport=httpx.MockTransport(recorder)),
        retry_policy=FAST_POLICY,
        **kwargs,
    )


class TestHelpers:
    def test_request_id_format(self):
        request_id = generate_request_id()
        assert REQUEST_ID.match(request_id)
        assert request_id.startswith("monzo_")

    def test_request_ids_unique(self):
        assert len({generate_request_id() for _ in range(100)}) == 100

    def test_mask_identifier(self):
        assert mask_identifier("someone@example.com") == "someone@ex..."
        assert mask_identifier("short") == "short"


class TestRequestRecord:
    def test_legal_path(self):
        record = RequestRecord(request_id="monzo_1_a", user_identifier="u")
        record.transition(RequestStatus.PROCESSING)
        record.transition(RequestStatus.COMPLETED, result={"ok": True})
        assert record.is_terminal
        assert record.completed_at is not None
        assert record.result == {"ok": True}

    def test_cannot_skip_processing(self):
        record = RequestRecord(request_id="monzo_1_a", user_identifier="u")
        with pytest.raises(InvalidTransitionError):
            record.transition(RequestStatus.COMPLETED)

    def test_terminal_is_final(self):
        record = RequestRecord(request_id="monzo_1_a", user_identifier="u")
        record.transition(RequestStatus.PROCESSING)
        record.transition(RequestStatus.FAILED, error="boom")
        with pytest.raises(InvalidTransitionError):
            record.transition(RequestStatus.PROCESSING)
        assert record.error == "boom"

    def test_status_view(self):
        record = RequestRecord(request_id="monzo_1_a", user_identifier="u", callback_url=CALLBACK_URL)
        view = record.to_status_view()
        assert view["requestId"] == "monzo_1_a"
        assert view["status"] == "pending"
        assert view["hasCallback"] is True
        assert view["completedAt"] is None
        assert view["result"] is None


class TestRequestStore:
    def test_add_get_delete(self):
        store = RequestStore()
        record = RequestRecord(request_id="monzo_1_a", user_identifier="u")
        store.add(record)
        assert store.get("monzo_1_a") is record
        assert "monzo_1_a" in store
        assert len(store) == 1
        assert store.delete("monzo_1_a") is True
        assert store.get("monzo_1_a") is None
        assert store.delete("monzo_1_a") is False

    def test_duplicate_rejected(self):
        store = RequestStore()
        store.add(RequestRecord(request_id="monzo_1_a", user_identifier="u"))
        with pytest.raises(ValueError):
            store.add(RequestRecord(request_id="monzo_1_a", user_identifier="v"))


class TestAcceptValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", [None, "", "   ", 42])
    async def test_missing_identifier(self, manager, identifier):
        with pytest.raises(ValidationError) as exc_info:
            await manager.accept(identifier)
        assert exc_info.value.code == "missing_data"

    @pytest.mark.asyncio
    async def test_invalid_callback_url(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            await manager.accept("user@example.com", callback_url="not-a-url", is_async=True)
        assert exc_info.value.code == "invalid_callback"
        assert manager.active_count == 0


class TestSyncRequests:
    @pytest.mark.asyncio
    async def test_sync_success(self, manager, extractor, wallet, callback_recorder):
        result = await manager.accept("user@example.com")

        assert isinstance(result, SyncResult)
        assert REQUEST_ID.match(result.request_id)
        assert result.wallet.stored is True
        assert extractor.calls == 1
        assert wallet.calls == [f"monzo-data-sync-{result.request_id}"]
        # Sync requests are not tracked and send no callbacks
        assert manager.active_count == 0
        assert callback_recorder.requests == []

        response = result.to_response()
        assert response["status"] == "success"
        assert response["data"]["accounts"] == extractor.data["accounts"]
        assert response["wallet"]["recordId"] == "rec_1"

    @pytest.mark.asyncio
    async def test_sync_extraction_retried(self):
        extractor = FakeExtractor(errors=[UpstreamUnavailable("down")])
        result = await _manager(extractor=extractor).accept("user@example.com")
        assert extractor.calls == 2
        assert result.wallet.stored is True

    @pytest.mark.asyncio
    async def test_sync_extraction_failure_propagates(self):
        extractor = FakeExtractor(errors=[AuthenticationError("expired")])
        with pytest.raises(AuthenticationError):
            await _manager(extractor=extractor).accept("user@example.com")
        assert extractor.calls == 1

    @pytest.mark.asyncio
    async def test_sync_unexpected_error_wrapped(self):
        extractor = FakeExtractor(errors=[KeyError("accounts")])
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await _manager(extractor=extractor).accept("user@example.com")
        assert exc_info.value.code == "extraction_failed"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_sync_storage_failure_is_partial_success(self):
        wallet = FakeWallet(result=StoreResult(outcome=StoreOutcome.FAILED, error="HTTP 500"))
        result = await _manager(wallet=wallet).accept("user@example.com")
        assert result.wallet.stored is False
        assert result.to_response()["wallet"]["error"] == "HTTP 500"


class TestAsyncRequests:
    @pytest.mark.asyncio
    async def test_returns_acknowledgment(self, manager):
        ack = await manager.accept("user@example.com", callback_url=CALLBACK_URL, is_async=True)
        assert isinstance(ack, Acknowledgment)
        response = ack.to_response()
        assert response["status"] == "accepted"
        assert response["processing"]["status"] == "pending"
        assert response["processing"]["callbackUrl"] == CALLBACK_URL

    @pytest.mark.asyncio
    async def test_no_callback_url_reported_as_none(self, manager):
        ack = await manager.accept("user@example.com", is_async=True)
        assert ack.to_response()["processing"]["callbackUrl"] == "none"

    @pytest.mark.asyncio
    async def test_ack_before_first_side_effect(self, extractor, callback_recorder):
        mgr = _manager(extractor=extractor, recorder=callback_recorder, ack_timeout=5.0)
        ack = await mgr.accept(
            "user@example.com", callback_url=CALLBACK_URL, is_async=True, auto_acknowledge=False,
        )

        # Give the job every chance to run; it must stay parked until acknowledged
        for _ in range(20):
            await asyncio.sleep(0)
        assert mgr.get_status(ack.request_id)["status"] == "pending"
        assert callback_recorder.requests == []
        assert extractor.calls == 0

        mgr.acknowledge(ack.request_id)
        await wait_for_status(mgr, ack.request_id, {"completed"})
        assert [b["status"] for b in callback_recorder.bodies] == ["processing", "completed"]
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_ack_timeout_starts_job_anyway(self, extractor):
        mgr = _manager(extractor=extractor, ack_timeout=0.05)
        ack = await mgr.accept("user@example.com", is_async=True, auto_acknowledge=False)
        await wait_for_status(mgr, ack.request_id, {"completed"})
        assert extractor.calls == 1
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_end_to_end(self, manager, wallet, callback_recorder):
        ack = await manager.accept("user@example.com", callback_url=CALLBACK_URL, is_async=True)
        assert REQUEST_ID.match(ack.request_id)

        view = await wait_for_status(manager, ack.request_id, {"completed"})
        assert view["hasCallback"] is True
        assert view["completedAt"] is not None
        assert view["error"] is None
        assert view["result"]["wallet"]["stored"] is True
        assert view["result"]["data"]["accounts"][0]["id"] == "acc_1"
        assert wallet.calls == [f"monzo-data-{ack.request_id}"]

        bodies = callback_recorder.bodies
        assert [b["status"] for b in bodies] == ["processing", "completed"]
        assert all(b["requestId"] == ack.request_id for b in bodies)
        assert bodies[1]["wallet"]["stored"] is True

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_failed(self, callback_recorder):
        extractor = FakeExtractor(errors=[AuthenticationError("Token expired")])
        mgr = _manager(extractor=extractor, recorder=callback_recorder)
        ack = await mgr.accept("user@example.com", callback_url=CALLBACK_URL, is_async=True)

        view = await wait_for_status(mgr, ack.request_id, {"failed"})
        assert view["error"] == "Token expired"
        assert view["result"] is None
        assert extractor.calls == 1
        assert [b["status"] for b in callback_recorder.bodies] == ["processing", "failed"]
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_extraction_retried_before_failing(self):
        errors = [UpstreamUnavailable("down")] * 3
        extractor = FakeExtractor(errors=errors)
        mgr = _manager(extractor=extractor)
        ack = await mgr.accept("user@example.com", is_async=True)
        await wait_for_status(mgr, ack.request_id, {"failed"})
        assert extractor.calls == 3
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_storage_failure_still_completes(self):
        wallet = FakeWallet(error=RuntimeError("wallet down"))
        mgr = _manager(wallet=wallet)
        ack = await mgr.accept("user@example.com", is_async=True)

        view = await wait_for_status(mgr, ack.request_id, {"completed", "failed"})
        assert view["status"] == "completed"
        assert view["result"]["wallet"]["stored"] is False
        assert view["result"]["wallet"]["error"] == "wallet down"
        assert len(wallet.calls) == 1
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_duplicate_counts_as_stored(self):
        wallet = FakeWallet(result=StoreResult(outcome=StoreOutcome.DUPLICATE, namespace="monzo"))
        mgr = _manager(wallet=wallet)
        ack = await mgr.accept("user@example.com", is_async=True)
        view = await wait_for_status(mgr, ack.request_id, {"completed"})
        assert view["result"]["wallet"]["stored"] is True
        assert view["result"]["wallet"]["outcome"] == "duplicate"
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_affect_job(self):
        recorder = CallbackRecorder(statuses=[404, 404])
        mgr = _manager(recorder=recorder)
        ack = await mgr.accept("user@example.com", callback_url=CALLBACK_URL, is_async=True)
        view = await wait_for_status(mgr, ack.request_id, {"completed"})
        assert view["result"]["wallet"]["stored"] is True
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_local_callback_never_contacted(self):
        # Syntactically valid, so accepted; rejected by the SSRF check at send time
        recorder = CallbackRecorder()
        mgr = _manager(recorder=recorder)
        ack = await mgr.accept("user@example.com", callback_url="http://127.0.0.1:9000/cb", is_async=True)
        await wait_for_status(mgr, ack.request_id, {"completed"})
        assert recorder.requests == []
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_infinite_retry_after_does_not_stall_job(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "inf"})

        mgr = _manager(recorder=handler)
        ack = await mgr.accept("user@example.com", callback_url=CALLBACK_URL, is_async=True)
        view = await wait_for_status(mgr, ack.request_id, {"completed"})
        assert view["result"]["wallet"]["stored"] is True
        # processing and completed notifications, each retried to exhaustion
        assert len(calls) == 2 * FAST_POLICY.max_attempts
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_job_log_lines_carry_request_id(self):
        handler = _JsonCapture()
        app_logger = logging.getLogger("monzo_connector")
        app_logger.addHandler(handler)
        saved_level = app_logger.level
        app_logger.setLevel(logging.DEBUG)
        try:
            mgr = _manager()
            ack = await mgr.accept("user@example.com", is_async=True)
            await wait_for_status(mgr, ack.request_id, {"completed"})
            await mgr.shutdown(timeout=1.0)
        finally:
            app_logger.removeHandler(handler)
            app_logger.setLevel(saved_level)

        job_lines = [e for e in handler.entries if e["message"].startswith("Wallet storage outcome")]
        assert job_lines
        assert all(e["request_id"] == ack.request_id for e in job_lines)


class TestStatusAndEviction:
    @pytest.mark.asyncio
    async def test_unknown_request(self, manager):
        with pytest.raises(NotFoundError) as exc_info:
            manager.get_status("monzo_0_nope")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_pending_view(self):
        mgr = _manager(ack_timeout=5.0)
        ack = await mgr.accept("user@example.com", is_async=True, auto_acknowledge=False)
        view = mgr.get_status(ack.request_id)
        assert view["status"] == "pending"
        assert view["completedAt"] is None
        assert view["result"] is None
        await mgr.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_evicted_after_retention(self):
        mgr = _manager(retention_seconds=0.2)
        ack = await mgr.accept("user@example.com", is_async=True)
        await wait_for_status(mgr, ack.request_id, {"completed"})

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while ack.request_id in mgr._store and loop.time() < deadline:
            await asyncio.sleep(0.01)

        with pytest.raises(NotFoundError):
            mgr.get_status(ack.request_id)
        assert mgr.active_count == 0

    @pytest.mark.asyncio
    async def test_terminal_record_queryable_within_retention(self, manager):
        ack = await manager.accept("user@example.com", is_async=True)
        await wait_for_status(manager, ack.request_id, {"completed"})
        await asyncio.sleep(0.05)
        assert manager.get_status(ack.request_id)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_shutdown_fails_in_flight_jobs(self):
        extractor = FakeExtractor(delay=5.0)
        mgr = _manager(extractor=extractor)
        ack = await mgr.accept("user@example.com", is_async=True)
        await wait_for_status(mgr, ack.request_id, {"processing"})

        await mgr.shutdown(timeout=1.0)
        view = mgr.get_status(ack.request_id)
        assert view["status"] == "failed"
        assert "cancelled" in view["error"]
