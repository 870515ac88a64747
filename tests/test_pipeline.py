"""
Transaction filter and the per-slot processing path.
"""

import pytest

from indexer.fetcher import ResilientFetcher
from indexer.log_sink import BALANCE_CHANGE, DEBUG, INSTRUCTION, SWAP, TRANSACTION
from indexer.models import RawInstruction, Transaction
from indexer.pipeline import SlotProcessor, block_time_iso
from indexer.rpc_client import BlockUnavailableError, SourceError
from indexer.tx_filter import filter_transaction, invoked_programs, match_transaction

from conftest import (
    CREATE_POOL_DATA, OTHER_PROGRAM, RAYDIUM, TOKEN_PROGRAM, FakeSource, Sleeper, USDC, WSOL,
    bal, block, make_tx, sol_usdc_swap_tx,
)


class TestWatchSet:

    def test_invoked_programs_are_distinct(self):
        tx = make_tx(extra_ix=(
            RawInstruction(program_id_index=3, account_indexes=(), data=b""),
            RawInstruction(program_id_index=2, account_indexes=(), data=b""),
            RawInstruction(program_id_index=77, account_indexes=(), data=b""),
        ))
        assert invoked_programs(tx) == [RAYDIUM, TOKEN_PROGRAM]

    def test_empty_watch_set_matches_everything(self):
        matched, relevant = filter_transaction(make_tx(), frozenset())
        assert matched
        assert relevant == [RAYDIUM]

    def test_intersection_required(self):
        assert filter_transaction(make_tx(), frozenset({OTHER_PROGRAM})) == (False, [])
        assert filter_transaction(make_tx(), frozenset({OTHER_PROGRAM, RAYDIUM})) == (True, [RAYDIUM])

    def test_failed_transactions_are_never_matched(self):
        assert match_transaction(make_tx(success=False), frozenset(), RAYDIUM) is None

    def test_structurally_incomplete_transactions_are_skipped(self):
        no_keys = Transaction(signature="x", success=True, account_keys=[], instructions=make_tx().instructions)
        no_ix = Transaction(signature="y", success=True, account_keys=make_tx().account_keys, instructions=[])
        assert match_transaction(no_keys, frozenset(), RAYDIUM) is None
        assert match_transaction(no_ix, frozenset(), RAYDIUM) is None

    def test_match_decodes_instructions(self):
        m = match_transaction(make_tx(), frozenset({RAYDIUM}), RAYDIUM)
        assert m.programs == [RAYDIUM]
        assert [ix.type for ix in m.instructions] == ["swap"]
        assert len(m.swaps) == 1


def _processor(source, events, watch=frozenset({RAYDIUM})):
    return SlotProcessor(ResilientFetcher(source, sleep=Sleeper()), events, watch, RAYDIUM)


class TestSlotProcessor:

    @pytest.mark.asyncio
    async def test_swap_transaction_emits_all_records(self, sink, events):
        source = FakeSource({10: block(10, sol_usdc_swap_tx())})
        res = await _processor(source, events).process_slot(10)

        assert (res.found, res.transactions, res.matched, res.swaps) == (True, 1, 1, 1)
        [tx_rec] = sink.records[TRANSACTION]
        assert tx_rec["signature"] == "sig1"
        assert tx_rec["slot"] == 10
        assert tx_rec["blockTime"] == "2023-11-14T22:13:20Z"
        assert tx_rec["instructions"][0]["type"] == "swap"
        assert tx_rec["accounts"][2]["description"] == "Raydium Program"

        assert sink.records[INSTRUCTION] == [
            {"programId": RAYDIUM, "type": "swap", "discriminator": "8fbe5adac41e33de"},
        ]
        assert sink.records[SWAP] == [{
            "type": "swap",
            "input": {"token": "SOL", "amount": 62.5687, "decimals": 9},
            "output": {"token": "USDC", "amount": 789.5709, "decimals": 6},
            "timestamp": "2023-11-14T22:13:20Z",
        }]
        [bal_rec] = sink.records[BALANCE_CHANGE]
        assert [b["mint"] for b in bal_rec["post"]] == [WSOL, USDC]
        assert len(bal_rec["relevantLogs"]) == 2

    @pytest.mark.asyncio
    async def test_non_swap_instruction_logs_transaction_only(self, sink, events):
        tx = make_tx(data=CREATE_POOL_DATA, pre=[bal(WSOL, 1, 9)], post=[bal(WSOL, 2, 9)])
        source = FakeSource({10: block(10, tx)})
        res = await _processor(source, events).process_slot(10)
        assert res.swaps == 0
        assert len(sink.records[TRANSACTION]) == 1
        assert sink.records[INSTRUCTION] == []
        assert sink.records[SWAP] == []
        assert len(sink.records[BALANCE_CHANGE]) == 1

    @pytest.mark.asyncio
    async def test_unresolvable_swap_goes_to_debug(self, sink, events):
        source = FakeSource({10: block(10, make_tx())})
        await _processor(source, events).process_slot(10)
        assert sink.records[SWAP] == []
        assert any(r["type"] == "swap_unresolved" for r in sink.records[DEBUG])

    @pytest.mark.asyncio
    async def test_failed_and_unwatched_transactions_are_ignored(self, sink, events):
        failed = sol_usdc_swap_tx("bad")
        failed.success = False
        unwatched = make_tx(signature="other")
        unwatched.instructions = [RawInstruction(program_id_index=4, account_indexes=(), data=b"")]
        source = FakeSource({10: block(10, failed, unwatched, sol_usdc_swap_tx("good"))})
        res = await _processor(source, events).process_slot(10)
        assert (res.transactions, res.matched, res.swaps) == (3, 1, 1)
        assert [r["signature"] for r in sink.records[TRANSACTION]] == ["good"]

    @pytest.mark.asyncio
    async def test_skipped_slot_produces_nothing(self, sink, events):
        source = FakeSource({10: BlockUnavailableError("Block not available for slot 10", -32004)})
        res = await _processor(source, events).process_slot(10)
        assert not res.found
        assert dict(sink.records) == {}

    @pytest.mark.asyncio
    async def test_empty_slot_produces_nothing(self, sink, events):
        res = await _processor(FakeSource({}), events).process_slot(11)
        assert not res.found
        assert dict(sink.records) == {}

    @pytest.mark.asyncio
    async def test_hard_failure_propagates(self, events):
        source = FakeSource({10: SourceError("boom", -32000)})
        with pytest.raises(SourceError):
            await _processor(source, events).process_slot(10)

    @pytest.mark.asyncio
    async def test_one_bad_transaction_does_not_stop_the_block(self, sink, events, monkeypatch):
        import indexer.pipeline as pipeline

        real = pipeline.infer_swap

        def flaky(pre, post, ts=None):
            if pre and pre[0].amount == 13:
                raise ValueError("corrupt balances")
            return real(pre, post, ts)

        monkeypatch.setattr(pipeline, "infer_swap", flaky)
        bad = make_tx(signature="bad", pre=[bal(WSOL, 13, 9)], post=[bal(USDC, 1, 6)])
        source = FakeSource({10: block(10, bad, sol_usdc_swap_tx("good"))})
        res = await _processor(source, events).process_slot(10)
        assert res.swaps == 1
        assert any(r["type"] == "transaction_error" and r["signature"] == "bad" for r in sink.records[DEBUG])


def test_block_time_iso():
    assert block_time_iso(None) is None
    assert block_time_iso(0) is None
    assert block_time_iso(1_700_000_000) == "2023-11-14T22:13:20Z"
