from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from txflow.errors import GatewayUnavailable
from txflow.models import LedgerCall, SignedTransaction

logger = logging.getLogger(__name__)

DEFAULT_WALLET_TIMEOUT_SECONDS = 10.0


class SignerHandle(Protocol):
    address: str

    async def sign(self, call: LedgerCall) -> SignedTransaction: ...


class WalletCollaborator(Protocol):
    async def get_signer(self, user_id: str) -> Optional[SignerHandle]: ...


@dataclass
class WalletInfo:
    user_id: str
    address: str
    created: bool


def _reply_object(response: httpx.Response, *required: str) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        logger.warning("[WALLET] non-JSON reply: %s", response.text[:200])
        raise GatewayUnavailable("Wallet service returned a malformed reply.") from e
    if not isinstance(data, dict) or any(not data.get(key) for key in required):
        logger.warning("[WALLET] reply missing %s: %s", ", ".join(required), str(data)[:200])
        raise GatewayUnavailable("Wallet service returned a malformed reply.")
    return data


class RemoteSigner:
    """Signs through the wallet service; key material never leaves that service."""

    def __init__(self, client: "HttpWalletClient", user_id: str, address: str) -> None:
        self._client = client
        self.user_id = user_id
        self.address = address

    async def sign(self, call: LedgerCall) -> SignedTransaction:
        return await self._client.sign(self.user_id, call)


class HttpWalletClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = DEFAULT_WALLET_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout_s, headers=headers)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_signer(self, user_id: str) -> Optional[RemoteSigner]:
        try:
            response = await self._client.get(f"/wallet/{user_id}")
        except httpx.RequestError as e:
            logger.warning("[WALLET] lookup failed user=%s: %s", user_id, e)
            raise GatewayUnavailable(f"Wallet service unreachable: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning("[WALLET] lookup status=%s user=%s", response.status_code, user_id)
            raise GatewayUnavailable(f"Wallet service error (status {response.status_code}).")
        address = _reply_object(response).get("address")
        if not address:
            return None
        return RemoteSigner(self, user_id, address)

    async def sign(self, user_id: str, call: LedgerCall) -> SignedTransaction:
        try:
            response = await self._client.post(f"/wallet/{user_id}/sign", json={"call": call.to_dict()})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailable(f"Signing failed (status {e.response.status_code}).") from e
        except httpx.RequestError as e:
            raise GatewayUnavailable(f"Wallet service unreachable: {e}") from e
        data = _reply_object(response, "payload")
        return SignedTransaction(payload=data["payload"], tx_hash=data.get("hash"))

    async def ensure_wallet(self, user_id: str) -> WalletInfo:
        """Create the user's wallet if it does not exist yet."""
        try:
            response = await self._client.post("/wallet/ensure", json={"user_id": user_id})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailable(f"Wallet creation failed (status {e.response.status_code}).") from e
        except httpx.RequestError as e:
            raise GatewayUnavailable(f"Wallet service unreachable: {e}") from e
        data = _reply_object(response, "address")
        return WalletInfo(user_id=user_id, address=data["address"], created=bool(data.get("created")))
