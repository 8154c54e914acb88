from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Union

from txflow.config import FlowSettings
from txflow.errors import ExecutionFailed, FlowError, NoWalletFound, SessionExpired
from txflow.flows import FlowMachine
from txflow.models import FlowResult, PendingTransaction, Prompt, ResultStatus, Session
from txflow.prompts import (
    CANCELLED_TEXT,
    NO_WALLET_TEXT,
    NOTHING_TO_CANCEL_TEXT,
    SESSION_EXPIRED_TEXT,
    error_text,
    executed_text,
    failed_text,
    reprompt,
    step_prompt,
)
from txflow.sessions import SessionStore
from txflow.state_machine import FlowKind, FlowStep
from txflow.tracker import ExecutionTracker
from txflow.wallets import WalletCollaborator

logger = logging.getLogger(__name__)

PromptOrResult = Union[Prompt, FlowResult]


class FlowService:
    """
    Thin orchestration layer between the chat transport and the flow core.

    Every inbound event yields exactly one Prompt (stay in the flow) or one
    FlowResult (the flow is over and its session is gone).
    """

    def __init__(
        self,
        store: SessionStore,
        machine: FlowMachine,
        wallets: WalletCollaborator,
        tracker: ExecutionTracker,
        settings: FlowSettings,
    ) -> None:
        self.store = store
        self.machine = machine
        self.wallets = wallets
        self.tracker = tracker
        self.settings = settings

    async def route_event(
        self,
        user_id,
        flow_hint: FlowKind | str | None = None,
        raw_text: str = "",
        session_token: int | None = None,
    ) -> PromptOrResult:
        user_id = str(user_id)
        if flow_hint:
            return await self._start(user_id, FlowKind(flow_hint))
        return await self._advance(user_id, raw_text, session_token)

    async def has_session(self, user_id) -> bool:
        return await self.store.get(str(user_id)) is not None

    async def cancel(self, user_id, session_token: int | None = None) -> FlowResult:
        try:
            ended = await self.store.end(str(user_id), expected_token=session_token)
        except SessionExpired as e:
            return FlowResult(ResultStatus.FAILED, SESSION_EXPIRED_TEXT, error=e)
        if ended is None:
            return FlowResult(ResultStatus.CANCELLED, NOTHING_TO_CANCEL_TEXT)
        logger.info("[FLOW] cancelled user=%s flow=%s step=%s", user_id, ended.flow_kind.value, ended.step.value)
        return FlowResult(ResultStatus.CANCELLED, CANCELLED_TEXT, ended.flow_kind)

    def expire_idle(self, now: datetime | None = None) -> list[str]:
        return self.store.expire(now)

    async def _start(self, user_id: str, kind: FlowKind) -> PromptOrResult:
        try:
            signer = await self.wallets.get_signer(user_id)
        except FlowError as e:
            return self._failed(kind, e)
        if signer is None:
            logger.info("[FLOW] %s refused: no wallet for user=%s", kind.value, user_id)
            return FlowResult(ResultStatus.FAILED, NO_WALLET_TEXT, kind, error=NoWalletFound())
        session = await self.store.start(user_id, kind, signer.address)
        logger.info("[FLOW] started user=%s flow=%s token=%s", user_id, kind.value, session.token)
        return Prompt(
            text=step_prompt(session, self.settings.native_asset_id),
            flow_kind=kind,
            step=session.step,
            session_token=session.token,
        )

    async def _advance(self, user_id: str, raw_text: str, session_token: int | None) -> PromptOrResult:
        confirmed: dict[str, Optional[PendingTransaction]] = {}
        before: dict[str, Session] = {}

        async def mutate(draft):
            before["session"] = draft.snapshot()
            confirmed["pending"] = await self.machine.handle(draft, raw_text)

        try:
            session = await self.store.advance(user_id, mutate, expected_token=session_token)
        except SessionExpired as e:
            return FlowResult(ResultStatus.FAILED, SESSION_EXPIRED_TEXT, error=e)
        except FlowError as e:
            # The store has already kept or dropped the session under its lock.
            current = before.get("session")
            if e.recoverable and current is not None:
                logger.info("[FLOW] re-prompt user=%s step=%s error=%s", user_id, current.step.value, e.code)
                return Prompt(
                    text=reprompt(e, current, self.settings.native_asset_id),
                    flow_kind=current.flow_kind,
                    step=current.step,
                    session_token=current.token,
                    error=e,
                )
            return self._failed(current.flow_kind if current else None, e)

        if session.step == FlowStep.CANCELLED:
            return FlowResult(ResultStatus.CANCELLED, CANCELLED_TEXT, session.flow_kind)
        if session.step == FlowStep.EXECUTED:
            return await self._execute(confirmed["pending"])
        return Prompt(
            text=step_prompt(session, self.settings.native_asset_id),
            flow_kind=session.flow_kind,
            step=session.step,
            session_token=session.token,
        )

    async def _execute(self, pending: PendingTransaction) -> FlowResult:
        # The session is already gone; a second "confirm" now reads as expired.
        try:
            signer = await self.wallets.get_signer(pending.user_id)
            if signer is None or signer.address != pending.signer_address:
                raise NoWalletFound("Wallet is no longer available for this flow.")
            report = await self.tracker.execute(pending, signer)
        except FlowError as e:
            return self._failed(pending.flow_kind, e)

        if not report.included:
            return FlowResult(
                ResultStatus.FAILED,
                failed_text(report.failure),
                pending.flow_kind,
                transaction_id=report.transaction_id,
                block_hash=report.block_hash,
                error=ExecutionFailed(report.failure),
            )

        self.tracker.track_finality(report.transaction_id, user_id=pending.user_id)
        return FlowResult(
            ResultStatus.EXECUTED,
            executed_text(pending.flow_kind, report.transaction_id, report.block_hash),
            pending.flow_kind,
            transaction_id=report.transaction_id,
            block_hash=report.block_hash,
        )

    def _failed(self, kind: FlowKind | None, error: FlowError) -> FlowResult:
        logger.warning("[FLOW] failed flow=%s error=%s: %s", kind.value if kind else None, error.code, error.message)
        text = NO_WALLET_TEXT if isinstance(error, NoWalletFound) else error_text(error)
        return FlowResult(ResultStatus.FAILED, text, kind, error=error)
