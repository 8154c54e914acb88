import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from txflow.config import FlowSettings
from txflow.flows import FlowMachine
from txflow.models import FinalityEvent, InclusionStatus, SignedTransaction, SubmitReceipt
from txflow.service import FlowService
from txflow.sessions import SessionStore
from txflow.tracker import ExecutionTracker

USER_ID = "42"
SIGNER_ADDRESS = "0x" + "ab" * 20
RECIPIENT_ADDRESS = "0x" + "cd" * 20
ROOT = 1
XRP = 2


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway:
    """In-memory ledger: balances per (address, asset), a flat fee and scripted receipts."""

    def __init__(self):
        self.balances = {}
        self.fee = 10_000
        self.fee_error = None
        self.receipt = None
        self.finality_events = []
        self.finality_error = None
        self.finality_hangs = False
        self.fee_calls = []
        self.submitted = []
        self.subscriptions = []

    async def query_balance(self, address, asset_id):
        return self.balances.get((address, asset_id), 0)

    async def estimate_fee(self, call, signer_address):
        self.fee_calls.append(call)
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee

    async def submit(self, signed):
        # Yield once so concurrent confirms really interleave.
        await asyncio.sleep(0)
        self.submitted.append(signed)
        if self.receipt is not None:
            return self.receipt
        return SubmitReceipt(
            transaction_id=f"0xtx{len(self.submitted)}",
            status=InclusionStatus.INCLUDED,
            block_hash="0xblock",
        )

    @asynccontextmanager
    async def subscribe_finality(self, transaction_id):
        self.subscriptions.append(transaction_id)
        if self.finality_error is not None:
            raise self.finality_error
        yield self._events(transaction_id)

    async def _events(self, transaction_id):
        if self.finality_hangs:
            await asyncio.Event().wait()
        for status, block_hash in self.finality_events:
            yield FinalityEvent(transaction_id=transaction_id, status=status, block_hash=block_hash)


class FakeSigner:
    def __init__(self, address):
        self.address = address
        self.signed = []

    async def sign(self, call):
        self.signed.append(call)
        return SignedTransaction(payload=f"0xsigned{len(self.signed)}", tx_hash=None)


class FakeWallets:
    def __init__(self):
        self.signers = {USER_ID: FakeSigner(SIGNER_ADDRESS)}
        self.error = None

    async def get_signer(self, user_id):
        if self.error is not None:
            raise self.error
        return self.signers.get(user_id)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.balances[(SIGNER_ADDRESS, ROOT)] = 50_000_000
    gw.balances[(SIGNER_ADDRESS, XRP)] = 20_000_000
    return gw


@pytest.fixture
def wallets():
    return FakeWallets()


@pytest.fixture
def settings():
    return FlowSettings()


@pytest.fixture
def make_service(gateway, wallets, clock, settings):
    def _make(on_finality=None, finality_timeout_s=5.0):
        tracker = ExecutionTracker(gateway, on_finality=on_finality, finality_timeout_s=finality_timeout_s)
        return FlowService(
            store=SessionStore(idle_timeout_seconds=settings.idle_timeout_seconds, clock=clock),
            machine=FlowMachine(gateway, settings, clock=clock),
            wallets=wallets,
            tracker=tracker,
            settings=settings,
        )

    return _make
