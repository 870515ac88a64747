"""
Shared fakes for the indexer tests: an in-memory block source and log sink,
plus builders for blocks/transactions. No network, no real sleeps.
"""

import asyncio
from collections import defaultdict

import pytest

from indexer.log_sink import EventLog, LogSink
from indexer.models import Block, RawInstruction, SlotInfo, TokenBalance, Transaction
from indexer.rpc_client import BlockSource, SlotSubscription

RAYDIUM = "CPMDWBwJDtYax9qW7AyRuVC19Cc4L4Vcy4n2BHAbHkCW"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
OTHER_PROGRAM = "11111111111111111111111111111111"
USER = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
POOL = "7JuwJuNU88gurFnyWeiyGKbFmExMWcmRZntn9imEzdny"
WSOL = "So11111111111111111111111111111111111111112"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

SWAP_DATA = bytes.fromhex("8fbe5adac41e33de") + (1_000_000).to_bytes(8, "little") + (0).to_bytes(8, "little")
CREATE_POOL_DATA = bytes.fromhex("0b05a0b39c3cd8ea") + b"\x01" * 8


def bal(mint, amount, decimals, account_index=0, owner=USER):
    return TokenBalance(account_index=account_index, mint=mint, amount=amount, decimals=decimals, owner=owner,
                        ui_amount_string=str(amount / 10 ** decimals))


def make_tx(signature="sig1", data=SWAP_DATA, success=True, pre=None, post=None, extra_ix=(), logs=None):
    keys = [USER, POOL, RAYDIUM, TOKEN_PROGRAM, OTHER_PROGRAM]
    ixs = [RawInstruction(program_id_index=2, account_indexes=(0, 1, 3), data=data)]
    ixs.extend(extra_ix)
    return Transaction(
        signature=signature,
        success=success,
        account_keys=keys,
        instructions=ixs,
        logs=logs if logs is not None else ["Program log: Instruction: SwapBaseInput", "Program log: TransferChecked"],
        pre_token_balances=pre,
        post_token_balances=post,
    )


def sol_usdc_swap_tx(signature="sig1"):
    return make_tx(
        signature=signature,
        pre=[bal(WSOL, 1_000_000_000_000, 9)],
        post=[bal(WSOL, 937_431_300_000, 9), bal(USDC, 789_570_864, 6, account_index=1)],
    )


class MemorySink(LogSink):
    def __init__(self):
        self.records = defaultdict(list)
        self.closed = False

    async def append(self, category, record):
        self.records[category].append(record)

    async def close(self):
        self.closed = True


class FakeSubscription(SlotSubscription):
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakeSource(BlockSource):
    """
    blocks: slot -> Block | None | Exception | list of those (consumed one per call).
    Missing slots return None.
    """

    def __init__(self, blocks=None, latest=0, slot_error=None, version=None):
        self.blocks = dict(blocks or {})
        self.latest = latest
        self.slot_error = slot_error
        self.version = version or {"solana-core": "1.18.0"}
        self.fetches = []
        self.slot_calls = 0
        self.callback = None
        self.subscription = None
        self.push_on_subscribe = []
        self.closed = False

    async def current_slot(self):
        self.slot_calls += 1
        if self.slot_error is not None:
            raise self.slot_error
        return self.latest

    async def get_version(self):
        return self.version

    async def fetch_block(self, slot):
        self.fetches.append(slot)
        await asyncio.sleep(0)
        outcome = self.blocks.get(slot)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def subscribe_slots(self, callback):
        self.callback = callback
        self.subscription = FakeSubscription()
        for s in self.push_on_subscribe:
            callback(SlotInfo(slot=s))
        return self.subscription

    def push(self, slot):
        self.callback(SlotInfo(slot=slot, parent=slot - 1))

    async def close(self):
        self.closed = True


class Sleeper:
    """Records requested delays and yields once instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def block(slot, *txs, block_time=1_700_000_000):
    return Block(slot=slot, block_time=block_time, transactions=list(txs))


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def events(sink):
    return EventLog(sink, debug=True, token_symbols={WSOL: "SOL", USDC: "USDC"})


@pytest.fixture
def sleeper():
    return Sleeper()
