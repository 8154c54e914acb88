from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from txflow.state_machine import FlowKind, FlowStep


@dataclass
class SessionFields:
    asset_id: int | None = None
    counter_asset_id: int | None = None
    recipient: str | None = None
    amount: int | None = None
    balance: int | None = None
    native_balance: int | None = None
    counter_balance: int | None = None
    fee: int | None = None


@dataclass
class Session:
    user_id: str
    flow_kind: FlowKind
    step: FlowStep
    signer_address: str
    token: int
    created_at: datetime
    last_activity_at: datetime
    fields: SessionFields = field(default_factory=SessionFields)

    def snapshot(self) -> "Session":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class LedgerCall:
    """Unsigned call payload, e.g. balances.transfer or dex.swapWithExactSupply."""

    module: str
    method: str
    params: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "method": self.method,
            "params": {k: _wire_value(v) for k, v in self.params.items()},
        }


def _wire_value(value: Any) -> Any:
    # Integers travel as strings so u128 balances survive JSON decoders.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_wire_value(v) for v in value]
    return value


@dataclass(frozen=True)
class PendingTransaction:
    flow_kind: FlowKind
    user_id: str
    session_token: int
    signer_address: str
    asset_id: int
    amount: int
    fee: int
    call: LedgerCall
    recipient: str | None = None
    counter_asset_id: int | None = None


@dataclass(frozen=True)
class SignedTransaction:
    payload: str
    tx_hash: str | None = None


class InclusionStatus(str, Enum):
    INCLUDED = "included"
    INVALID = "invalid"
    DROPPED = "dropped"
    DISPATCH_ERROR = "dispatch_error"


@dataclass(frozen=True)
class DispatchFailure:
    module: str | None = None
    method: str | None = None
    reason: str | None = None
    raw: str | None = None

    def describe(self) -> str:
        if self.module and self.method:
            text = f"{self.module}.{self.method}"
            if self.reason:
                text = f"{text}: {self.reason}"
            return text
        return self.raw or self.reason or "unknown ledger error"


@dataclass(frozen=True)
class SubmitReceipt:
    transaction_id: str
    status: InclusionStatus
    block_hash: str | None = None
    dispatch_error: Any = None


class FinalityStatus(str, Enum):
    INCLUDED = "included"
    FINALIZED = "finalized"
    INVALID = "invalid"
    DROPPED = "dropped"


TERMINAL_FINALITY = frozenset({FinalityStatus.FINALIZED, FinalityStatus.INVALID, FinalityStatus.DROPPED})


@dataclass(frozen=True)
class FinalityEvent:
    transaction_id: str
    status: FinalityStatus
    block_hash: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_FINALITY


@dataclass(frozen=True)
class ExecutionReport:
    transaction_id: str
    status: InclusionStatus
    block_hash: str | None = None
    failure: DispatchFailure | None = None

    @property
    def included(self) -> bool:
        return self.status == InclusionStatus.INCLUDED


class ResultStatus(str, Enum):
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class Prompt:
    """Stay in the flow: ask the user for input for `step`."""

    text: str
    flow_kind: FlowKind
    step: FlowStep
    session_token: int
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "prompt",
            "text": self.text,
            "flow": self.flow_kind.value,
            "step": self.step.value,
            "session_token": self.session_token,
            "error": getattr(self.error, "code", None),
        }


@dataclass
class FlowResult:
    """Terminal outcome of a flow."""

    status: ResultStatus
    text: str
    flow_kind: FlowKind | None = None
    transaction_id: str | None = None
    block_hash: str | None = None
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "result",
            "status": self.status.value,
            "text": self.text,
            "flow": self.flow_kind.value if self.flow_kind else None,
            "transaction_id": self.transaction_id,
            "block_hash": self.block_hash,
            "error": getattr(self.error, "code", None),
        }
