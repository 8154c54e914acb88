import asyncio

from txflow.errors import (
    ExecutionFailed,
    FeeEstimationFailed,
    GatewayUnavailable,
    InsufficientBalance,
    InvalidAddress,
    InvalidAsset,
    NoWalletFound,
    SessionExpired,
)
from txflow.flows import min_amount_out
from txflow.models import FlowResult, InclusionStatus, LedgerCall, Prompt, ResultStatus, SubmitReceipt
from txflow.state_machine import FlowKind, FlowStep

from conftest import RECIPIENT_ADDRESS, ROOT, SIGNER_ADDRESS, USER_ID, XRP


async def _send_to_confirm(service, asset="1", amount="10"):
    await service.route_event(USER_ID, "send")
    await service.route_event(USER_ID, None, asset)
    await service.route_event(USER_ID, None, RECIPIENT_ADDRESS)
    return await service.route_event(USER_ID, None, amount)


def test_send_happy_path(make_service, gateway, wallets):
    service = make_service()

    async def scenario():
        replies = [await service.route_event(USER_ID, "send")]
        replies.append(await service.route_event(USER_ID, None, "1"))
        replies.append(await service.route_event(USER_ID, None, RECIPIENT_ADDRESS))
        replies.append(await service.route_event(USER_ID, None, "10"))
        replies.append(await service.route_event(USER_ID, None, "confirm"))
        return replies, await service.has_session(USER_ID)

    replies, has_session = asyncio.run(scenario())
    assert [r.step for r in replies[:4]] == [
        FlowStep.SELECT_ASSET,
        FlowStep.ENTER_RECIPIENT,
        FlowStep.ENTER_AMOUNT,
        FlowStep.CONFIRM,
    ]
    assert "10.000000 ROOT" in replies[3].text
    assert "0.010000 ROOT" in replies[3].text

    result = replies[4]
    assert isinstance(result, FlowResult)
    assert result.status == ResultStatus.EXECUTED
    assert result.transaction_id == "0xtx1"
    assert result.block_hash == "0xblock"
    assert has_session is False

    assert len(gateway.submitted) == 1
    assert wallets.signers[USER_ID].signed == [
        LedgerCall("balances", "transfer", {"dest": RECIPIENT_ADDRESS, "value": 10_000_000})
    ]


def test_send_non_native_asset_uses_assets_transfer(make_service, wallets):
    service = make_service()

    async def scenario():
        await _send_to_confirm(service, asset="XRP", amount="2.5")
        return await service.route_event(USER_ID, None, "confirm")

    result = asyncio.run(scenario())
    assert result.status == ResultStatus.EXECUTED
    assert wallets.signers[USER_ID].signed[0] == LedgerCall(
        "assets", "transfer", {"asset_id": XRP, "target": RECIPIENT_ADDRESS, "amount": 2_500_000}
    )


def test_send_rejects_amount_plus_fee_above_balance(make_service, gateway):
    service = make_service()

    reply = asyncio.run(_send_to_confirm(service, amount="50"))
    assert isinstance(reply, Prompt)
    assert reply.step == FlowStep.ENTER_AMOUNT
    assert isinstance(reply.error, InsufficientBalance)
    # 50 + 0.01 fee against a balance of 50.
    assert reply.error.shortfall == 10_000
    assert reply.error.asset_id == ROOT
    assert "0.010000 ROOT" in reply.text
    assert gateway.submitted == []


def test_non_native_send_checks_fee_against_native_balance(make_service, gateway):
    gateway.balances[(SIGNER_ADDRESS, ROOT)] = 4_000
    service = make_service()

    reply = asyncio.run(_send_to_confirm(service, asset="2", amount="1"))
    assert isinstance(reply.error, InsufficientBalance)
    assert reply.error.asset_id == ROOT
    assert reply.error.shortfall == 6_000


def test_send_max_leaves_room_for_fee(make_service, gateway, wallets):
    service = make_service()

    async def scenario():
        await _send_to_confirm(service, amount="max")
        return await service.route_event(USER_ID, None, "confirm")

    result = asyncio.run(scenario())
    assert result.status == ResultStatus.EXECUTED
    assert gateway.fee_calls[-1].params["value"] == 50_000_000
    assert wallets.signers[USER_ID].signed[0].params["value"] == 49_990_000


def test_invalid_inputs_reprompt_same_step(make_service):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "send")
        bad_asset = await service.route_event(USER_ID, None, "DOGE")
        await service.route_event(USER_ID, None, "1")
        bad_address = await service.route_event(USER_ID, None, "0x1234")
        return bad_asset, bad_address

    bad_asset, bad_address = asyncio.run(scenario())
    assert bad_asset.step == FlowStep.SELECT_ASSET
    assert isinstance(bad_asset.error, InvalidAsset)
    assert bad_address.step == FlowStep.ENTER_RECIPIENT
    assert isinstance(bad_address.error, InvalidAddress)
    assert bad_address.text.startswith("❌ Invalid address")


def test_non_ascii_digit_asset_reprompts(make_service):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "send")
        reply = await service.route_event(USER_ID, None, "²")
        return reply, await service.has_session(USER_ID)

    reply, has_session = asyncio.run(scenario())
    assert isinstance(reply, Prompt)
    assert reply.step == FlowStep.SELECT_ASSET
    assert isinstance(reply.error, InvalidAsset)
    assert has_session is True


def test_unknown_confirm_answer_keeps_confirm_step(make_service, gateway):
    service = make_service()

    async def scenario():
        await _send_to_confirm(service)
        return await service.route_event(USER_ID, None, "yes please")

    reply = asyncio.run(scenario())
    assert reply.step == FlowStep.CONFIRM
    assert gateway.submitted == []


def test_cancel_at_confirm_submits_nothing(make_service, gateway):
    service = make_service()

    async def scenario():
        await _send_to_confirm(service)
        result = await service.route_event(USER_ID, None, "cancel")
        return result, await service.has_session(USER_ID)

    result, has_session = asyncio.run(scenario())
    assert result.status == ResultStatus.CANCELLED
    assert has_session is False
    assert gateway.submitted == []


def test_cancel_command_mid_flow(make_service):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "stake")
        first = await service.cancel(USER_ID)
        second = await service.cancel(USER_ID)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.status == ResultStatus.CANCELLED
    assert first.flow_kind == FlowKind.STAKE
    assert second.text == "Nothing to cancel."


def test_double_confirm_submits_once(make_service, gateway):
    service = make_service()

    async def scenario():
        confirm = await _send_to_confirm(service)
        return await asyncio.gather(
            service.route_event(USER_ID, None, "confirm", session_token=confirm.session_token),
            service.route_event(USER_ID, None, "confirm", session_token=confirm.session_token),
        )

    results = asyncio.run(scenario())
    statuses = sorted(r.status.value for r in results)
    assert statuses == ["executed", "failed"]
    failed = next(r for r in results if r.status == ResultStatus.FAILED)
    assert isinstance(failed.error, SessionExpired)
    assert len(gateway.submitted) == 1


def test_swap_builds_slippage_bound_and_deadline(make_service, gateway, wallets, clock):
    gateway.balances[(SIGNER_ADDRESS, ROOT)] = 200_000_000
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "swap")
        await service.route_event(USER_ID, None, "1")
        counter = await service.route_event(USER_ID, None, "100")
        same = await service.route_event(USER_ID, None, "1")
        confirm = await service.route_event(USER_ID, None, "2")
        result = await service.route_event(USER_ID, None, "confirm")
        return counter, same, confirm, result

    counter, same, confirm, result = asyncio.run(scenario())
    assert counter.step == FlowStep.SELECT_COUNTER_ASSET
    assert "100.000000 ROOT" in counter.text
    assert same.step == FlowStep.SELECT_COUNTER_ASSET
    assert isinstance(same.error, InvalidAsset)
    assert confirm.step == FlowStep.CONFIRM
    assert gateway.fee_calls[-1].params["path"] == [ROOT, XRP]
    assert "→ XRP" in confirm.text
    assert result.status == ResultStatus.EXECUTED

    call = wallets.signers[USER_ID].signed[0]
    assert call.module == "dex"
    assert call.method == "swapWithExactSupply"
    assert call.params["amount_in"] == 100_000_000
    assert call.params["min_amount_out"] == 95_000_000
    assert call.params["path"] == [ROOT, XRP]
    assert call.params["to"] == SIGNER_ADDRESS
    assert call.params["deadline"] == int(clock.now.timestamp()) + 600


def test_swap_checks_balance_before_and_after_pricing(make_service, gateway):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "swap")
        await service.route_event(USER_ID, None, "1")
        too_much = await service.route_event(USER_ID, None, "60")
        await service.route_event(USER_ID, None, "50")
        no_fee_room = await service.route_event(USER_ID, None, "2")
        return too_much, no_fee_room

    too_much, no_fee_room = asyncio.run(scenario())
    assert too_much.step == FlowStep.ENTER_AMOUNT
    assert isinstance(too_much.error, InsufficientBalance)
    assert too_much.error.shortfall == 10_000_000
    # 50 ROOT passes the amount step; the fee priced with the full path does not fit.
    assert no_fee_room.step == FlowStep.SELECT_COUNTER_ASSET
    assert isinstance(no_fee_room.error, InsufficientBalance)
    assert no_fee_room.error.shortfall == 10_000
    assert gateway.submitted == []


def test_min_amount_out_floors():
    assert min_amount_out(100_000_000, 500) == 95_000_000
    assert min_amount_out(3, 500) == 2
    assert min_amount_out(10, 0) == 10


def test_stake_only_accepts_stakeable_asset(make_service, wallets):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "stake")
        rejected = await service.route_event(USER_ID, None, "2")
        await service.route_event(USER_ID, None, "1")
        await service.route_event(USER_ID, None, "5")
        result = await service.route_event(USER_ID, None, "confirm")
        return rejected, result

    rejected, result = asyncio.run(scenario())
    assert rejected.step == FlowStep.SELECT_ASSET
    assert isinstance(rejected.error, InvalidAsset)
    assert result.status == ResultStatus.EXECUTED
    assert wallets.signers[USER_ID].signed[0] == LedgerCall(
        "staking", "bond", {"controller": SIGNER_ADDRESS, "value": 5_000_000, "payee": "Staked"}
    )


def test_start_without_wallet_fails_and_creates_no_session(make_service):
    service = make_service()

    async def scenario():
        result = await service.route_event("nobody", "send")
        return result, await service.has_session("nobody")

    result, has_session = asyncio.run(scenario())
    assert result.status == ResultStatus.FAILED
    assert isinstance(result.error, NoWalletFound)
    assert has_session is False


def test_text_without_session_reports_expired(make_service):
    result = asyncio.run(make_service().route_event(USER_ID, None, "1"))
    assert result.status == ResultStatus.FAILED
    assert isinstance(result.error, SessionExpired)


def test_idle_session_expires(make_service, clock):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "send")
        clock.advance(901)
        return await service.route_event(USER_ID, None, "1")

    result = asyncio.run(scenario())
    assert isinstance(result.error, SessionExpired)


def test_new_flow_replaces_active_one(make_service):
    service = make_service()

    async def scenario():
        await service.route_event(USER_ID, "send")
        await service.route_event(USER_ID, None, "1")
        swap = await service.route_event(USER_ID, "swap")
        session = await service.store.get(USER_ID)
        return swap, session

    swap, session = asyncio.run(scenario())
    assert swap.step == FlowStep.SELECT_ASSET
    assert session.flow_kind == FlowKind.SWAP
    assert session.fields.asset_id is None


def test_fee_estimation_failure_keeps_amount_step(make_service, gateway):
    gateway.fee_error = GatewayUnavailable("ledger down")
    service = make_service()

    reply = asyncio.run(_send_to_confirm(service))
    assert reply.step == FlowStep.ENTER_AMOUNT
    assert isinstance(reply.error, FeeEstimationFailed)


def test_dispatch_error_is_reported_and_session_closed(make_service, gateway):
    gateway.receipt = SubmitReceipt(
        transaction_id="0xdead",
        status=InclusionStatus.DISPATCH_ERROR,
        block_hash="0xblock",
        dispatch_error={"section": "balances", "name": "InsufficientBalance", "docs": ["Balance too low"]},
    )
    service = make_service()

    async def scenario():
        await _send_to_confirm(service)
        result = await service.route_event(USER_ID, None, "confirm")
        return result, await service.has_session(USER_ID)

    result, has_session = asyncio.run(scenario())
    assert result.status == ResultStatus.FAILED
    assert isinstance(result.error, ExecutionFailed)
    assert result.error.failure.module == "balances"
    assert result.error.failure.method == "InsufficientBalance"
    assert "balances.InsufficientBalance" in result.text
    assert has_session is False
    assert service.tracker.active_subscriptions == 0


def test_wallet_outage_on_start_is_reported(make_service, wallets):
    wallets.error = GatewayUnavailable("wallet service down")
    result = asyncio.run(make_service().route_event(USER_ID, "send"))
    assert result.status == ResultStatus.FAILED
    assert isinstance(result.error, GatewayUnavailable)


def test_balance_query_outage_ends_flow(make_service, gateway):
    service = make_service()

    async def failing_balance(address, asset_id):
        raise GatewayUnavailable("ledger down")

    gateway.query_balance = failing_balance

    async def scenario():
        await service.route_event(USER_ID, "send")
        result = await service.route_event(USER_ID, None, "1")
        return result, await service.has_session(USER_ID)

    result, has_session = asyncio.run(scenario())
    assert result.status == ResultStatus.FAILED
    assert isinstance(result.error, GatewayUnavailable)
    assert result.flow_kind == FlowKind.SEND
    assert has_session is False


def test_failed_step_does_not_remove_a_newer_flow(make_service, gateway):
    service = make_service()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def stalled_balance(address, asset_id):
        entered.set()
        await release.wait()
        raise GatewayUnavailable("ledger down")

    gateway.query_balance = stalled_balance

    async def scenario():
        await service.route_event(USER_ID, "send")
        failing = asyncio.create_task(service.route_event(USER_ID, None, "1"))
        await entered.wait()
        restarted = asyncio.create_task(service.route_event(USER_ID, "swap"))
        await asyncio.sleep(0)
        release.set()
        failed, prompt = await asyncio.gather(failing, restarted)
        return failed, prompt, await service.store.get(USER_ID)

    failed, prompt, current = asyncio.run(scenario())
    assert failed.status == ResultStatus.FAILED
    assert failed.flow_kind == FlowKind.SEND
    assert isinstance(failed.error, GatewayUnavailable)
    assert isinstance(prompt, Prompt)
    assert prompt.step == FlowStep.SELECT_ASSET
    assert current is not None
    assert current.flow_kind == FlowKind.SWAP
    assert current.token == prompt.session_token
