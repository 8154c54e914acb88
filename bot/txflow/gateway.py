from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from txflow.config import (
    DEFAULT_LEDGER_MAX_RETRIES,
    DEFAULT_LEDGER_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_LEDGER_TIMEOUT_SECONDS,
)
from txflow.errors import GatewayUnavailable
from txflow.models import (
    FinalityEvent,
    FinalityStatus,
    InclusionStatus,
    LedgerCall,
    SignedTransaction,
    SubmitReceipt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_MAX_DELAY_SECONDS = 8.0
RETRY_JITTER_FACTOR = 0.15


class LedgerGateway(Protocol):
    async def query_balance(self, address: str, asset_id: int) -> int: ...

    async def estimate_fee(self, call: LedgerCall, signer_address: str) -> int: ...

    async def submit(self, signed: SignedTransaction) -> SubmitReceipt: ...

    def subscribe_finality(self, transaction_id: str) -> AsyncContextManager[AsyncIterator[FinalityEvent]]: ...


class BalanceReply(BaseModel):
    balance: int


class FeeReply(BaseModel):
    partial_fee: int


class SubmitReply(BaseModel):
    transaction_id: str
    status: InclusionStatus
    block_hash: Optional[str] = None
    dispatch_error: Any = None


class FinalityReply(BaseModel):
    transaction_id: str
    status: FinalityStatus
    block_hash: Optional[str] = None


def _backoff_delay(attempt: int, base_delay: float) -> float:
    delay = min(RETRY_MAX_DELAY_SECONDS, base_delay * (2**attempt))
    jitter = delay * RETRY_JITTER_FACTOR
    return max(0.0, delay + random.uniform(-jitter, jitter))


class HttpLedgerGateway:
    """
    Ledger gateway speaking JSON over HTTP to the ledger bridge service.

    Reads (balance, fee) are retried with exponential backoff on transport
    errors and 5xx replies. Submission is sent once: a retried submit could
    land the same transfer twice.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = DEFAULT_LEDGER_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_LEDGER_MAX_RETRIES,
        retry_base_delay_s: float = DEFAULT_LEDGER_RETRY_BASE_DELAY_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay_s = retry_base_delay_s
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s, headers=headers)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_json(self, path: str, body: dict) -> Any:
        response = await self._client.post(path, json=body)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            logger.warning("[LEDGER] non-JSON reply from %s: %s", path, response.text[:200])
            raise GatewayUnavailable(f"Ledger returned a malformed reply to {path}.") from e

    async def _with_retry(self, label: str, request: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await request()
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code < 500 or attempt >= self.max_retries:
                    logger.warning("[LEDGER] %s failed: status=%s", label, status_code)
                    raise GatewayUnavailable(f"Ledger {label} failed (status {status_code}).") from e
                reason = f"status={status_code}"
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    logger.warning("[LEDGER] %s failed after %d attempt(s): %s", label, attempt + 1, e)
                    raise GatewayUnavailable(f"Ledger {label} unreachable: {e}") from e
                reason = f"{type(e).__name__}: {e}"
            delay = _backoff_delay(attempt, self.retry_base_delay_s)
            attempt += 1
            logger.info("[LEDGER] retrying %s in %.2fs (attempt %d, %s)", label, delay, attempt + 1, reason)
            await asyncio.sleep(delay)

    async def query_balance(self, address: str, asset_id: int) -> int:
        payload = await self._with_retry(
            "balance query",
            lambda: self._post_json("/balance", {"address": address, "asset_id": str(asset_id)}),
        )
        try:
            return BalanceReply.model_validate(payload).balance
        except ValidationError as e:
            raise GatewayUnavailable("Ledger returned a malformed balance reply.") from e

    async def estimate_fee(self, call: LedgerCall, signer_address: str) -> int:
        payload = await self._with_retry(
            "fee estimate",
            lambda: self._post_json("/fee", {"call": call.to_dict(), "signer": signer_address}),
        )
        try:
            return FeeReply.model_validate(payload).partial_fee
        except ValidationError as e:
            raise GatewayUnavailable("Ledger returned a malformed fee reply.") from e

    async def submit(self, signed: SignedTransaction) -> SubmitReceipt:
        body = {"payload": signed.payload, "hash": signed.tx_hash}
        try:
            payload = await self._post_json("/submit", body)
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailable(f"Ledger submit failed (status {e.response.status_code}).") from e
        except httpx.RequestError as e:
            raise GatewayUnavailable(f"Ledger submit unreachable: {e}") from e
        try:
            reply = SubmitReply.model_validate(payload)
        except ValidationError as e:
            raise GatewayUnavailable("Ledger returned a malformed submit reply.") from e
        return SubmitReceipt(
            transaction_id=reply.transaction_id,
            status=reply.status,
            block_hash=reply.block_hash,
            dispatch_error=reply.dispatch_error,
        )

    @asynccontextmanager
    async def subscribe_finality(self, transaction_id: str):
        """
        Open a finality stream for one transaction.

        Leaving the context closes this stream only; the shared client and
        other subscriptions stay open.
        """
        timeout = httpx.Timeout(self.timeout_s, read=None)
        try:
            async with self._client.stream(
                "POST",
                "/finality",
                json={"transaction_id": transaction_id},
                timeout=timeout,
            ) as response:
                response.raise_for_status()
                yield _finality_events(response)
        except httpx.HTTPStatusError as e:
            raise GatewayUnavailable(f"Finality subscription rejected (status {e.response.status_code}).") from e
        except httpx.RequestError as e:
            raise GatewayUnavailable(f"Finality subscription failed: {e}") from e


async def _finality_events(response: httpx.Response) -> AsyncIterator[FinalityEvent]:
    async for line in response.aiter_lines():
        if not line.strip():
            continue
        try:
            reply = FinalityReply.model_validate(json.loads(line))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("[LEDGER] skipping malformed finality line: %s", line[:200])
            continue
        event = FinalityEvent(
            transaction_id=reply.transaction_id,
            status=reply.status,
            block_hash=reply.block_hash,
        )
        yield event
        if event.status == FinalityStatus.FINALIZED:
            return
