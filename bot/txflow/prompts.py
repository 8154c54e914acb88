from __future__ import annotations

from txflow.addresses import EXAMPLE_ADDRESS
from txflow.amounts import format_amount
from txflow.assets import get_asset, list_assets
from txflow.errors import FeeEstimationFailed, FlowError, InsufficientBalance
from txflow.models import DispatchFailure, FinalityEvent, FinalityStatus, Session
from txflow.state_machine import FlowKind, FlowStep

FLOW_TITLES = {
    FlowKind.SEND: "💸 Send Tokens",
    FlowKind.STAKE: "🪙 Stake ROOT",
    FlowKind.SWAP: "💱 Swap Tokens",
}

CONFIRM_TOKEN = "confirm"
CANCEL_TOKEN = "cancel"
MAX_TOKEN = "max"

NO_WALLET_TEXT = "❌ No wallet found. Use /start first."
SESSION_EXPIRED_TEXT = "⚠️ No active flow found. Start again with /send, /stake or /swap."
CANCELLED_TEXT = "❌ Cancelled. Nothing was sent."
NOTHING_TO_CANCEL_TEXT = "Nothing to cancel."


def asset_list_text(stakeable_only: bool = False) -> str:
    return "\n".join(f"{asset.symbol} - {asset.asset_id}" for asset in list_assets(stakeable_only))


def step_prompt(session: Session, native_asset_id: int) -> str:
    fields = session.fields
    step = session.step
    if step == FlowStep.SELECT_ASSET:
        if session.flow_kind == FlowKind.STAKE:
            return f"{FLOW_TITLES[session.flow_kind]}\n\nChoose the token to stake:\n\n{asset_list_text(True)}"
        if session.flow_kind == FlowKind.SWAP:
            return f"{FLOW_TITLES[session.flow_kind]}\n\nChoose the token to swap from:\n\n{asset_list_text()}"
        return f"{FLOW_TITLES[session.flow_kind]}\n\nChoose a token:\n\n{asset_list_text()}"
    if step == FlowStep.SELECT_COUNTER_ASSET:
        asset = get_asset(fields.asset_id)
        return f"🔢 Swapping {format_amount(fields.amount, asset)}\n\nChoose the token to receive:\n\n{asset_list_text()}"
    if step == FlowStep.ENTER_RECIPIENT:
        asset = get_asset(fields.asset_id)
        return (
            f"📤 Send {asset.symbol}\n\nEnter recipient address:\n\n"
            f"💡 Example: {EXAMPLE_ADDRESS}\n⚠️ Double-check the address before confirming."
        )
    if step == FlowStep.ENTER_AMOUNT:
        asset = get_asset(fields.asset_id)
        lines = []
        if fields.recipient:
            lines.append(f"✅ Recipient set to {fields.recipient}")
        lines.append(f"💰 Your balance: {format_amount(fields.balance or 0, asset)}")
        if fields.asset_id != native_asset_id and fields.native_balance is not None:
            native = get_asset(native_asset_id)
            lines.append(f"⛽ Fee balance: {format_amount(fields.native_balance, native)}")
        hint = ' (or "max")' if session.flow_kind == FlowKind.SEND else ""
        lines.append(f"\nEnter the amount of {asset.symbol}{hint}:")
        return "\n".join(lines)
    if step == FlowStep.CONFIRM:
        return confirm_summary(session, native_asset_id)
    raise ValueError(f"no prompt for step {step.value}")


def confirm_summary(session: Session, native_asset_id: int) -> str:
    fields = session.fields
    asset = get_asset(fields.asset_id)
    native = get_asset(native_asset_id)
    lines = ["🔍 Transaction Summary", ""]
    if session.flow_kind == FlowKind.SEND:
        lines.append(f"📬 To: {fields.recipient}")
        lines.append(f"💸 Amount: {format_amount(fields.amount, asset)}")
    elif session.flow_kind == FlowKind.STAKE:
        lines.append(f"🪙 Stake: {format_amount(fields.amount, asset)}")
    else:
        counter = get_asset(fields.counter_asset_id)
        lines.append(f"🔁 Swap: {format_amount(fields.amount, asset)} → {counter.symbol}")
    lines.append(f"⛽ Est. Fee: ~{format_amount(fields.fee or 0, native)}")
    if fields.asset_id == native_asset_id:
        lines.append(f"💰 Total Cost: ~{format_amount(fields.amount + (fields.fee or 0), asset)}")
    lines.append("")
    lines.append(f'Type "{CONFIRM_TOKEN}" to proceed or "{CANCEL_TOKEN}" to abort.')
    return "\n".join(lines)


def error_text(error: FlowError) -> str:
    if isinstance(error, InsufficientBalance):
        asset = get_asset(error.asset_id)
        return f"❌ Insufficient balance. You are short by {format_amount(error.shortfall, asset)} including fees."
    if isinstance(error, FeeEstimationFailed):
        return "❌ Could not estimate the network fee. Please send the amount again in a moment."
    return f"❌ {error.message}"


def reprompt(error: FlowError, session: Session, native_asset_id: int) -> str:
    return f"{error_text(error)}\n\n{step_prompt(session, native_asset_id)}"


def executed_text(kind: FlowKind, transaction_id: str, block_hash: str | None) -> str:
    verb = {FlowKind.SEND: "Transaction", FlowKind.STAKE: "Stake", FlowKind.SWAP: "Swap"}[kind]
    return f"✅ {verb} included in block: {block_hash or 'pending'}\n🔗 Tx Hash: {transaction_id}"


def failed_text(failure: DispatchFailure | None, fallback: str | None = None) -> str:
    detail = failure.describe() if failure else (fallback or "unknown error")
    return f"❌ Transaction failed: {detail}"


def finality_text(event: FinalityEvent) -> str:
    if event.status == FinalityStatus.FINALIZED:
        return f"🏁 Transaction {event.transaction_id} finalized in block {event.block_hash or 'unknown'}."
    return f"⚠️ Transaction {event.transaction_id} was {event.status.value} before finalization."
