"""
Dataswyft wallet integration - persists extracted data in a HAT wallet.

Auth: username/password -> access token -> application token.
Docs: https://api.hubofallthings.com
Writes go to /api/v2.6/data/<namespace>/<path> wrapped in the checksum
envelope. A 401 triggers one token refresh and a single replay.
"""
import json
import logging
from typing import Optional

import httpx

from monzo_connector.integrations.base import StoreOutcome, StoreResult, WalletStore
from monzo_connector.utils.errors import AuthenticationError
from monzo_connector.utils.integrity import build_checksum_envelope, utc_timestamp

logger = logging.getLogger(__name__)

TIMEOUT = 30.0
API_VERSION = "v2.6"
CONNECTOR_ID = "monzo-data-connector"

DUPLICATE_MARKER = "duplicate data"


class DataswyftWallet(WalletStore):
    """Wallet client holding its own access and application tokens."""

    def __init__(
        self,
        api_url: str,
        username: str,
        password: str,
        application_id: str,
        namespace: str = "monzo",
        data_path: str = "complete",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.username = username
        self.password = password
        self.application_id = application_id
        self.namespace = namespace
        self.data_path = data_path
        self.timeout = timeout
        self._transport = transport
        self._access_token: Optional[str] = None
        self._application_token: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )

    async def _authenticate(self, client: httpx.AsyncClient) -> str:
        if not (self.username and self.password):
            raise AuthenticationError("Dataswyft credentials are not configured")

        response = await client.get(
            "/users/access_token",
            headers={
                "Accept": "application/json",
                "username": self.username,
                "password": self.password,
            },
        )
        if response.status_code >= 400:
            raise AuthenticationError(f"Dataswyft authentication failed: HTTP {response.status_code}")

        token = None
        try:
            body = response.json()
            if isinstance(body, dict):
                token = body.get("accessToken")
            elif isinstance(body, str):
                token = body.strip()
        except ValueError:
            token = response.text.strip()

        if not token:
            raise AuthenticationError("No access token received from authentication")

        self._access_token = token
        logger.info("Dataswyft authentication successful")
        return token

    async def _get_application_token(self, client: httpx.AsyncClient) -> str:
        if not self._access_token:
            await self._authenticate(client)

        response = await client.get(
            f"/api/{API_VERSION}/applications/{self.application_id}/access-token",
            headers={"x-auth-token": self._access_token},
        )
        if response.status_code >= 400:
            raise AuthenticationError(f"Failed to get application token: HTTP {response.status_code}")

        try:
            token = (response.json() or {}).get("accessToken")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise AuthenticationError("No application token received")

        self._application_token = token
        logger.info("Application token obtained", extra={"namespace": self.namespace})
        return token

    async def _refresh_tokens(self, client: httpx.AsyncClient) -> None:
        logger.info("Refreshing Dataswyft tokens")
        self._access_token = None
        self._application_token = None
        await self._get_application_token(client)

    def prepare_wallet_data(self, raw: dict, inbox_message_id: Optional[str] = None) -> dict:
        """Wrap extracted data in the checksum envelope."""
        data = {
            "accounts": raw.get("accounts") or [],
            "balances": raw.get("balances") or [],
            "transactions": raw.get("transactions") or [],
            "extractionMeta": {
                "accountCount": len(raw.get("accounts") or []),
                "balanceCount": len(raw.get("balances") or []),
                "transactionCount": len(raw.get("transactions") or []),
                "extractedAt": raw.get("extractionTime") or utc_timestamp(),
                "connector": CONNECTOR_ID,
            },
        }
        return build_checksum_envelope(data, inbox_message_id)

    async def store(self, data: dict, record_name: str, inbox_message_id: Optional[str] = None) -> StoreResult:
        """Write one record. Never raises for write failures."""
        path = f"/api/{API_VERSION}/data/{self.namespace}/{self.data_path}"
        envelope = self.prepare_wallet_data(data, inbox_message_id)
        body = json.dumps(envelope)

        logger.info(
            "Storing data in wallet record=%s accounts=%d",
            record_name, len(data.get("accounts") or []),
            extra={"namespace": self.namespace},
        )

        try:
            async with self._client() as client:
                if not self._application_token:
                    await self._get_application_token(client)

                response = await self._post(client, path, body)
                if response.status_code == 401:
                    await self._refresh_tokens(client)
                    response = await self._post(client, path, body)
        except AuthenticationError as e:
            logger.error("Failed to store data in wallet: %s", e.message, extra={"namespace": self.namespace})
            return self._result(StoreOutcome.FAILED, error=e.message)
        except httpx.HTTPError as e:
            logger.error("Wallet unreachable: %s", type(e).__name__, extra={"namespace": self.namespace})
            return self._result(StoreOutcome.FAILED, error=f"Wallet unreachable: {type(e).__name__}")

        return self._interpret(response, len(body))

    async def _post(self, client: httpx.AsyncClient, path: str, body: str) -> httpx.Response:
        return await client.post(
            path,
            content=body,
            headers={"x-auth-token": self._application_token or ""},
        )

    def _interpret(self, response: httpx.Response, data_size: int) -> StoreResult:
        if response.status_code < 300:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            record_id = (payload.get("recordId") or payload.get("id")) if isinstance(payload, dict) else None
            logger.info(
                "Data stored in wallet",
                extra={"namespace": self.namespace, "record_id": record_id},
            )
            return self._result(StoreOutcome.STORED, record_id=record_id, data_size=data_size)

        if _is_duplicate(response):
            logger.info("Wallet already holds identical data", extra={"namespace": self.namespace})
            return self._result(StoreOutcome.DUPLICATE, data_size=data_size)

        error = f"Wallet write failed: HTTP {response.status_code}"
        logger.error(error, extra={"namespace": self.namespace})
        return self._result(StoreOutcome.FAILED, error=error)

    def _result(self, outcome: StoreOutcome, **kwargs) -> StoreResult:
        return StoreResult(
            outcome=outcome,
            namespace=self.namespace,
            path=self.data_path,
            **kwargs,
        )


def _is_duplicate(response: httpx.Response) -> bool:
    if response.status_code != 400:
        return False
    try:
        payload = response.json()
    except ValueError:
        return DUPLICATE_MARKER in response.text.lower()
    if not isinstance(payload, dict):
        return False
    text = " ".join(str(payload.get(k, "")) for k in ("cause", "message", "error"))
    return DUPLICATE_MARKER in text.lower()
