from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from txflow.config import DEFAULT_FINALITY_TIMEOUT_SECONDS
from txflow.gateway import LedgerGateway
from txflow.models import (
    DispatchFailure,
    ExecutionReport,
    FinalityEvent,
    InclusionStatus,
    PendingTransaction,
)
from txflow.wallets import SignerHandle

logger = logging.getLogger(__name__)

FinalityCallback = Callable[[Optional[str], FinalityEvent], Awaitable[None]]


def decode_dispatch_error(detail: Any, status: InclusionStatus | None = None) -> DispatchFailure:
    """
    Turn the ledger's dispatch error into a module/method/reason triple.

    Understands the decoded module-error shape ({"section", "name", "docs"}),
    the same nested under "module", and a flat {"module", "method", "reason"}
    form. Anything else is kept verbatim in `raw`.
    """
    if isinstance(detail, dict):
        meta = detail.get("module") if isinstance(detail.get("module"), dict) else detail
        module = meta.get("section") or meta.get("pallet") or (meta.get("module") if isinstance(meta.get("module"), str) else None)
        method = meta.get("name") or meta.get("method") or meta.get("error")
        docs = meta.get("docs") or meta.get("reason")
        if isinstance(docs, (list, tuple)):
            docs = " ".join(str(d) for d in docs if d)
        if module and method and isinstance(method, str):
            return DispatchFailure(module=str(module), method=method, reason=str(docs) if docs else None)
        return DispatchFailure(raw=str(detail))
    if detail:
        return DispatchFailure(raw=str(detail))
    if status is not None:
        return DispatchFailure(raw=f"transaction {status.value}")
    return DispatchFailure(raw="unknown ledger error")


class ExecutionTracker:
    """
    Submits confirmed transactions and watches them until finality.

    `execute` returns once the ledger reports inclusion. Finality is watched
    by a separate background task per transaction with a bounded lifetime;
    it reports at most one terminal event and never resubmits.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        on_finality: FinalityCallback | None = None,
        journal=None,
        finality_timeout_s: float = DEFAULT_FINALITY_TIMEOUT_SECONDS,
    ) -> None:
        self.gateway = gateway
        self.on_finality = on_finality
        self.journal = journal
        self.finality_timeout_s = finality_timeout_s
        self._tasks: Dict[str, asyncio.Task] = {}
        self._journal_tasks: Set[asyncio.Task] = set()

    @property
    def active_subscriptions(self) -> int:
        return len(self._tasks)

    async def execute(self, pending: PendingTransaction, signer: SignerHandle) -> ExecutionReport:
        signed = await signer.sign(pending.call)
        receipt = await self.gateway.submit(signed)

        failure = None
        if receipt.status != InclusionStatus.INCLUDED:
            failure = decode_dispatch_error(receipt.dispatch_error, receipt.status)
            logger.warning(
                "[TRACKER] %s rejected user=%s tx=%s status=%s detail=%s",
                pending.flow_kind.value,
                pending.user_id,
                receipt.transaction_id,
                receipt.status.value,
                failure.describe(),
            )
        else:
            logger.info(
                "[TRACKER] %s included user=%s tx=%s block=%s",
                pending.flow_kind.value,
                pending.user_id,
                receipt.transaction_id,
                receipt.block_hash,
            )

        report = ExecutionReport(
            transaction_id=receipt.transaction_id,
            status=receipt.status,
            block_hash=receipt.block_hash,
            failure=failure,
        )
        if self.journal is not None:
            self._record(self.journal.record_submission(pending, report))
        return report

    def _record(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._journal_tasks.add(task)
        task.add_done_callback(self._journal_tasks.discard)

    def track_finality(
        self,
        transaction_id: str,
        user_id: str | None = None,
        timeout: float | None = None,
    ) -> asyncio.Task:
        existing = self._tasks.get(transaction_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(
            self._watch(transaction_id, user_id, self.finality_timeout_s if timeout is None else timeout)
        )
        self._tasks[transaction_id] = task
        return task

    async def _first_terminal(self, transaction_id: str) -> Optional[FinalityEvent]:
        async with self.gateway.subscribe_finality(transaction_id) as events:
            async for event in events:
                if event.terminal:
                    return event
        return None

    async def _watch(self, transaction_id: str, user_id: str | None, timeout: float) -> Optional[FinalityEvent]:
        try:
            event = await asyncio.wait_for(self._first_terminal(transaction_id), timeout)
        except asyncio.TimeoutError:
            logger.info("[TRACKER] finality window of %.0fs elapsed for tx=%s", timeout, transaction_id)
            return None
        except Exception as e:
            logger.warning("[TRACKER] finality subscription failed for tx=%s: %s", transaction_id, e)
            return None
        finally:
            if self._tasks.get(transaction_id) is asyncio.current_task():
                self._tasks.pop(transaction_id, None)

        if event is None:
            logger.info("[TRACKER] finality stream closed without a terminal event tx=%s", transaction_id)
            return None

        logger.info("[TRACKER] tx=%s %s block=%s", transaction_id, event.status.value, event.block_hash)
        if self.journal is not None:
            self._record(self.journal.record_finality(event))
        if self.on_finality is not None:
            try:
                await self.on_finality(user_id, event)
            except Exception as e:
                logger.error("[TRACKER] finality notification failed for tx=%s: %s", transaction_id, e)
        return event

    def cancel(self, transaction_id: str) -> bool:
        task = self._tasks.pop(transaction_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Let pending journal writes land.
        writes = list(self._journal_tasks)
        if writes:
            await asyncio.gather(*writes, return_exceptions=True)
