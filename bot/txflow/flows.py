"""
Send, Stake and Swap as one state-machine template.

Every flow walks the steps listed for it in `state_machine.STEP_SEQUENCES`;
the only per-flow differences live in `FlowSpec`: which assets may be picked
and how the ledger call is shaped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from txflow.addresses import is_valid
from txflow.amounts import to_base_units
from txflow.assets import get_asset, resolve_asset
from txflow.config import FlowSettings
from txflow.errors import (
    FeeEstimationFailed,
    GatewayUnavailable,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidAsset,
    UnexpectedInput,
)
from txflow.gateway import LedgerGateway
from txflow.models import LedgerCall, PendingTransaction, Session
from txflow.prompts import CANCEL_TOKEN, CONFIRM_TOKEN, MAX_TOKEN
from txflow.state_machine import FlowKind, FlowStep, can_transition, next_step

logger = logging.getLogger(__name__)

STAKE_PAYEE = "Staked"


def min_amount_out(amount: int, slippage_bps: int) -> int:
    return amount * (10_000 - slippage_bps) // 10_000


def build_transfer_call(session: Session, settings: FlowSettings, now: datetime) -> LedgerCall:
    fields = session.fields
    if fields.asset_id == settings.native_asset_id:
        return LedgerCall("balances", "transfer", {"dest": fields.recipient, "value": fields.amount})
    return LedgerCall(
        "assets",
        "transfer",
        {"asset_id": fields.asset_id, "target": fields.recipient, "amount": fields.amount},
    )


def build_bond_call(session: Session, settings: FlowSettings, now: datetime) -> LedgerCall:
    # Self-bonded: the signer is its own controller.
    return LedgerCall(
        "staking",
        "bond",
        {"controller": session.signer_address, "value": session.fields.amount, "payee": STAKE_PAYEE},
    )


def build_swap_call(session: Session, settings: FlowSettings, now: datetime) -> LedgerCall:
    fields = session.fields
    return LedgerCall(
        "dex",
        "swapWithExactSupply",
        {
            "amount_in": fields.amount,
            "min_amount_out": min_amount_out(fields.amount, settings.swap_slippage_bps),
            "path": [fields.asset_id, fields.counter_asset_id],
            "to": session.signer_address,
            "deadline": int(now.timestamp()) + settings.swap_deadline_seconds,
        },
    )


@dataclass(frozen=True)
class FlowSpec:
    kind: FlowKind
    build_call: Callable[[Session, FlowSettings, datetime], LedgerCall]
    stakeable_only: bool = False
    allows_max: bool = False
    # Step after which the call is complete enough to price.
    fee_step: FlowStep = FlowStep.ENTER_AMOUNT


FLOW_SPECS: dict[FlowKind, FlowSpec] = {
    FlowKind.SEND: FlowSpec(FlowKind.SEND, build_transfer_call, allows_max=True),
    FlowKind.STAKE: FlowSpec(FlowKind.STAKE, build_bond_call, stakeable_only=True),
    FlowKind.SWAP: FlowSpec(FlowKind.SWAP, build_swap_call, fee_step=FlowStep.SELECT_COUNTER_ASSET),
}


def check_sufficient_balance(
    *,
    asset_id: int,
    amount: int,
    fee: int,
    balance: int,
    native_balance: int,
    native_asset_id: int,
) -> None:
    """Raise InsufficientBalance with the exact shortfall when the spend is not covered."""
    if asset_id == native_asset_id:
        needed = amount + fee
        if needed > balance:
            raise InsufficientBalance(shortfall=needed - balance, asset_id=asset_id)
        return
    # Fee is paid in the native asset; only that side is checked here.
    if fee > native_balance:
        raise InsufficientBalance(shortfall=fee - native_balance, asset_id=native_asset_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowMachine:
    def __init__(
        self,
        gateway: LedgerGateway,
        settings: FlowSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self._clock = clock or _utcnow

    async def handle(self, session: Session, text: str) -> Optional[PendingTransaction]:
        """
        Apply one user input to a session draft.

        Raises a FlowError when the input is rejected; the caller discards the
        draft in that case. Returns the pending transaction when the input
        confirmed the flow.
        """
        spec = FLOW_SPECS[session.flow_kind]
        raw = (text or "").strip()
        step = session.step
        if step == FlowStep.SELECT_ASSET:
            await self._select_asset(spec, session, raw)
        elif step == FlowStep.SELECT_COUNTER_ASSET:
            await self._select_counter_asset(spec, session, raw)
        elif step == FlowStep.ENTER_RECIPIENT:
            self._enter_recipient(session, raw)
        elif step == FlowStep.ENTER_AMOUNT:
            await self._enter_amount(spec, session, raw)
        elif step == FlowStep.CONFIRM:
            return self._confirm(spec, session, raw)
        else:
            raise UnexpectedInput(f"Flow already {step.value}.")
        return None

    def _move(self, session: Session, target: FlowStep) -> None:
        if not can_transition(session.flow_kind, session.step, target):
            raise ValueError(f"illegal transition {session.step.value} -> {target.value}")
        logger.debug("[FLOW] user=%s %s: %s -> %s", session.user_id, session.flow_kind.value, session.step.value, target.value)
        session.step = target

    def _advance(self, session: Session) -> None:
        self._move(session, next_step(session.flow_kind, session.step))

    async def _cache_balances(self, session: Session, asset_id: int) -> None:
        fields = session.fields
        fields.balance = await self.gateway.query_balance(session.signer_address, asset_id)
        if asset_id == self.settings.native_asset_id:
            fields.native_balance = fields.balance
        else:
            fields.native_balance = await self.gateway.query_balance(
                session.signer_address, self.settings.native_asset_id
            )

    async def _select_asset(self, spec: FlowSpec, session: Session, raw: str) -> None:
        asset = resolve_asset(raw)
        if spec.stakeable_only and not asset.stakeable:
            raise InvalidAsset(f"{asset.symbol} cannot be staked.")
        session.fields.asset_id = asset.asset_id
        await self._cache_balances(session, asset.asset_id)
        self._advance(session)

    async def _select_counter_asset(self, spec: FlowSpec, session: Session, raw: str) -> None:
        asset = resolve_asset(raw)
        if asset.asset_id == session.fields.asset_id:
            raise InvalidAsset("Choose a different token to receive.")
        session.fields.counter_asset_id = asset.asset_id
        session.fields.counter_balance = await self.gateway.query_balance(session.signer_address, asset.asset_id)
        if spec.fee_step == FlowStep.SELECT_COUNTER_ASSET:
            await self._settle_fee(spec, session)
        self._advance(session)

    def _enter_recipient(self, session: Session, raw: str) -> None:
        if not is_valid(raw):
            raise InvalidAddress("Invalid address. Must be a 0x... address with 40 hex characters.")
        session.fields.recipient = raw
        self._advance(session)

    async def _estimate_fee(self, spec: FlowSpec, session: Session) -> int:
        call = spec.build_call(session, self.settings, self._clock())
        try:
            return await self.gateway.estimate_fee(call, session.signer_address)
        except GatewayUnavailable as e:
            logger.warning("[FLOW] fee estimate failed user=%s: %s", session.user_id, e)
            raise FeeEstimationFailed(str(e)) from e

    async def _enter_amount(self, spec: FlowSpec, session: Session, raw: str) -> None:
        fields = session.fields
        asset = get_asset(fields.asset_id)
        balance = fields.balance or 0
        native_asset_id = self.settings.native_asset_id

        if spec.allows_max and raw.lower() == MAX_TOKEN:
            if balance <= 0:
                raise InvalidAmount(f"Your {asset.symbol} balance is empty.")
            fields.amount = balance
            fee = await self._estimate_fee(spec, session)
            if asset.asset_id == native_asset_id:
                fields.amount = balance - fee
                if fields.amount <= 0:
                    raise InsufficientBalance(shortfall=fee - balance + 1, asset_id=asset.asset_id)
        else:
            fields.amount = to_base_units(raw, asset.precision)
            if spec.fee_step != FlowStep.ENTER_AMOUNT:
                # Priced later; apply the balance rule without the fee for now.
                self._check_balance(session, fee=0)
                self._advance(session)
                return
            fee = await self._estimate_fee(spec, session)

        self._check_balance(session, fee)
        fields.fee = fee
        self._advance(session)

    async def _settle_fee(self, spec: FlowSpec, session: Session) -> None:
        fee = await self._estimate_fee(spec, session)
        self._check_balance(session, fee)
        session.fields.fee = fee

    def _check_balance(self, session: Session, fee: int) -> None:
        fields = session.fields
        check_sufficient_balance(
            asset_id=fields.asset_id,
            amount=fields.amount,
            fee=fee,
            balance=fields.balance or 0,
            native_balance=fields.native_balance or 0,
            native_asset_id=self.settings.native_asset_id,
        )

    def _confirm(self, spec: FlowSpec, session: Session, raw: str) -> Optional[PendingTransaction]:
        answer = raw.lower()
        if answer == CANCEL_TOKEN:
            self._move(session, FlowStep.CANCELLED)
            return None
        if answer != CONFIRM_TOKEN:
            raise UnexpectedInput(f'Please reply "{CONFIRM_TOKEN}" or "{CANCEL_TOKEN}".')
        pending = self.build_pending(spec, session)
        self._move(session, FlowStep.EXECUTED)
        return pending

    def build_pending(self, spec: FlowSpec, session: Session) -> PendingTransaction:
        fields = session.fields
        return PendingTransaction(
            flow_kind=session.flow_kind,
            user_id=session.user_id,
            session_token=session.token,
            signer_address=session.signer_address,
            asset_id=fields.asset_id,
            amount=fields.amount,
            fee=fields.fee or 0,
            call=spec.build_call(session, self.settings, self._clock()),
            recipient=fields.recipient,
            counter_asset_id=fields.counter_asset_id,
        )
