"""
Monzo API integration - read-only account extraction.

Auth: Bearer access token (obtained out of band via Monzo OAuth).
Docs: https://docs.monzo.com
HTTP failures are mapped to the connector error taxonomy so the retry
engine can tell rate limits and outages apart from permanent rejections.
"""
import asyncio
import logging
from typing import Optional

import httpx

from monzo_connector.integrations.base import Extractor
from monzo_connector.utils.errors import (
    AuthenticationError,
    ConnectorError,
    UpstreamUnavailable,
    error_from_status,
    parse_retry_after,
)
from monzo_connector.utils.integrity import utc_timestamp

logger = logging.getLogger(__name__)

BASE_URL = "https://api.monzo.com"
TIMEOUT = 30.0
USER_AGENT = "MonzoDataConnector/1.0.0"


class MonzoExtractor(Extractor):
    """Pulls accounts, balances and recent transactions for the token holder."""

    def __init__(
        self,
        access_token: str,
        base_url: str = BASE_URL,
        timeout: float = TIMEOUT,
        rate_limit_per_second: float = 10.0,
        transaction_limit: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.request_spacing = 1.0 / rate_limit_per_second if rate_limit_per_second > 0 else 0.0
        self.transaction_limit = transaction_limit
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )

    async def _get(self, client: httpx.AsyncClient, path: str, params: Optional[dict] = None) -> dict:
        """GET a Monzo endpoint, raising taxonomy errors on failure."""
        try:
            response = await client.get(path, params=params)
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Monzo API unreachable: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.warning("Monzo API %s returned %d", path, response.status_code)
            raise error_from_status(
                response.status_code,
                _describe_failure(response.status_code),
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Monzo API returned invalid JSON for {path}") from e

    async def test_connection(self, client: httpx.AsyncClient) -> dict:
        whoami = await self._get(client, "/ping/whoami")
        if not whoami.get("authenticated", True):
            raise AuthenticationError("Monzo token is not authenticated")
        return {
            "success": True,
            "userId": whoami.get("user_id"),
            "timestamp": utc_timestamp(),
        }

    async def extract(self, user_identifier: str) -> dict:
        """
        Fetch accounts, then balance and transactions per account.
        A failure on one account is logged and skipped; failures on
        whoami or the account list fail the whole extraction.
        """
        if not self.access_token:
            raise AuthenticationError("No Monzo access token available for processing")

        async with self._client() as client:
            connection_test = await self.test_connection(client)
            payload = await self._get(client, "/accounts")
            accounts = payload.get("accounts") or []

            complete = {
                "accounts": [],
                "balances": [],
                "transactions": [],
                "connectionTest": connection_test,
            }

            for account in accounts:
                account_id = account.get("id")
                complete["accounts"].append(account)
                try:
                    balance = await self._get(client, "/balance", {"account_id": account_id})
                    complete["balances"].append({"accountId": account_id, **balance})
                    await asyncio.sleep(self.request_spacing)

                    txns = await self._get(
                        client,
                        "/transactions",
                        {"account_id": account_id, "limit": str(self.transaction_limit)},
                    )
                    complete["transactions"].append({
                        "accountId": account_id,
                        "transactions": txns.get("transactions") or [],
                    })
                    await asyncio.sleep(self.request_spacing)
                except ConnectorError as e:
                    if e.retryable or isinstance(e, AuthenticationError):
                        raise
                    logger.error("Failed to get data for account %s: %s", account_id, e.message)

        complete["extractionTime"] = utc_timestamp()
        logger.info(
            "Monzo extraction complete: %d accounts, %d balances",
            len(complete["accounts"]), len(complete["balances"]),
        )
        return complete


def _describe_failure(status_code: int) -> str:
    if status_code == 401:
        return "Unauthorized - token may be expired or invalid"
    if status_code == 403:
        return "Forbidden - insufficient permissions. Check mobile app approval."
    if status_code == 429:
        return "Rate limit exceeded - too many requests"
    return f"Monzo API request failed: HTTP {status_code}"
