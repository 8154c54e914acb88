from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from txflow.models import DispatchFailure


class FlowError(Exception):
    """Base class for every failure a flow reports to the user."""

    code = "flow_error"
    # Recoverable errors keep the session at the step they were raised in.
    recoverable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidAsset(FlowError):
    code = "invalid_asset"
    recoverable = True


class InvalidAddress(FlowError):
    code = "invalid_address"
    recoverable = True


class InvalidAmount(FlowError):
    code = "invalid_amount"
    recoverable = True


class UnexpectedInput(FlowError):
    code = "unexpected_input"
    recoverable = True


class InsufficientBalance(FlowError):
    code = "insufficient_balance"
    recoverable = True

    def __init__(self, shortfall: int, asset_id: int, message: str | None = None) -> None:
        super().__init__(message)
        self.shortfall = shortfall
        self.asset_id = asset_id


class FeeEstimationFailed(FlowError):
    code = "fee_estimation_failed"
    recoverable = True


class NoWalletFound(FlowError):
    code = "wallet_not_found"


class GatewayUnavailable(FlowError):
    code = "gateway_unavailable"


class SessionExpired(FlowError):
    code = "session_expired"


class ExecutionFailed(FlowError):
    code = "execution_failed"

    def __init__(self, failure: DispatchFailure | None = None, message: str | None = None) -> None:
        super().__init__(message or (failure.describe() if failure else None))
        self.failure = failure
