"""
Test configuration and fixtures.
All HTTP goes through httpx.MockTransport; no real network calls.
Retry policies use zero delays so retry paths run instantly.
Hostname resolution for callback URLs is patched; see the resolver fixture.
"""
import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from monzo_connector.integrations.base import Extractor, StoreOutcome, StoreResult, WalletStore
from monzo_connector.services.callbacks import CallbackClient
from monzo_connector.services.request_manager import RequestManager
from monzo_connector.utils.retry import RetryPolicy

FAST_POLICY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, backoff_multiplier=1.0)

PUBLIC_ADDRESS = "93.184.216.34"

SAMPLE_EXTRACTION = {
    "accounts": [{"id": "acc_1", "description": "Current account"}],
    "balances": [{"accountId": "acc_1", "balance": 1234, "currency": "GBP"}],
    "transactions": [{"accountId": "acc_1", "transactions": [{"id": "tx_1", "amount": -450}]}],
    "connectionTest": {"success": True, "userId": "user_1"},
    "extractionTime": "2024-01-01T12:00:00.000Z",
}


class FakeExtractor(Extractor):
    """Returns canned data, or raises the queued errors first."""

    def __init__(self, data=None, errors=None, delay: float = 0.0):
        self.data = data if data is not None else dict(SAMPLE_EXTRACTION)
        self.errors = list(errors or [])
        self.delay = delay
        self.calls = 0

    async def extract(self, user_identifier: str) -> dict:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.data


class FakeWallet(WalletStore):
    def __init__(self, result: StoreResult = None, error: Exception = None):
        self.result = result or StoreResult(
            outcome=StoreOutcome.STORED, record_id="rec_1", namespace="monzo", path="complete",
        )
        self.error = error
        self.calls = []

    async def store(self, data: dict, record_name: str) -> StoreResult:
        self.calls.append(record_name)
        if self.error:
            raise self.error
        return self.result


class CallbackRecorder:
    """MockTransport handler that records every callback body."""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 300})

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


async def wait_for_status(manager: RequestManager, request_id: str, statuses, timeout: float = 2.0):
    """Poll until the record reaches one of the given statuses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        view = manager.get_status(request_id)
        if view["status"] in statuses:
            return view
        await asyncio.sleep(0.01)
    raise AssertionError(f"{request_id} never reached {statuses}")


@pytest.fixture(autouse=True)
def resolver():
    """Callback hostnames resolve to a public address unless a test says otherwise."""
    with patch(
        "monzo_connector.utils.url_safety.resolve_host",
        new_callable=AsyncMock,
        return_value=[PUBLIC_ADDRESS],
    ) as mock_resolve:
        yield mock_resolve


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def callback_recorder():
    return CallbackRecorder()


@pytest.fixture
def callback_client(callback_recorder):
    return CallbackClient(policy=FAST_POLICY, transport=httpx.MockTransport(callback_recorder))


@pytest.fixture
async def manager(extractor, wallet, callback_client):
    mgr = RequestManager(
        extractor=extractor,
        wallet=wallet,
        callback_client=callback_client,
        retry_policy=FAST_POLICY,
        retention_seconds=60,
        ack_timeout=1.0,
    )
    yield mgr
    await mgr.shutdown(timeout=1.0)
