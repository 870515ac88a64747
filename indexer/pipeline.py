# indexer/pipeline.py
# One slot end to end: fetch -> filter -> decode -> balance diff -> records.
# Shared by backfill and the live tail. A bad transaction is skipped; the rest of the block continues.

import logging
from datetime import datetime, timezone
from typing import AbstractSet, Optional

from indexer import discriminators
from indexer.fetcher import ResilientFetcher
from indexer.log_sink import EventLog
from indexer.models import SlotResult
from indexer.parser_swap import infer_swap
from indexer.tx_filter import MatchedTransaction, match_transaction

log = logging.getLogger(__name__)


def block_time_iso(block_time: Optional[int]) -> Optional[str]:
    if not block_time:
        return None
    return datetime.fromtimestamp(block_time, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class SlotProcessor:
    def __init__(self, fetcher: ResilientFetcher, events: EventLog,
                 watch_set: AbstractSet[str], primary_program: Optional[str]):
        self.fetcher = fetcher
        self.events = events
        self.watch_set = frozenset(watch_set)
        self.primary_program = primary_program

    async def process_slot(self, slot: int) -> SlotResult:
        result = SlotResult(slot=slot)
        block = await self.fetcher.fetch_block(slot)
        if block is None:
            return result

        result.found = True
        ts = block_time_iso(block.block_time)
        for tx in block.transactions:
            result.transactions += 1
            try:
                m = match_transaction(tx, self.watch_set, self.primary_program)
                if m is None:
                    continue
                result.matched += 1
                result.swaps += await self._emit(m, slot, ts)
            except Exception as e:
                log.debug("transaction %s in slot %d failed: %s", tx.signature or "?", slot, e)
                await self.events.log_debug({
                    "type": "transaction_error",
                    "slot": slot,
                    "signature": tx.signature,
                    "error": str(e),
                })
        return result

    async def _emit(self, m: MatchedTransaction, slot: int, ts: Optional[str]) -> int:
        tx = m.tx
        log.debug("matched tx %s slot=%d programs=%s", tx.signature, slot, m.programs)
        await self.events.log_transaction(tx, slot, ts, m.programs, m.instructions)

        swaps = 0
        for ix in m.instructions:
            await self.events.log_instruction(ix)
            if ix.type != discriminators.SWAP:
                continue
            await self.events.log_debug({
                "type": "swap_instruction",
                "discriminator": ix.discriminator,
                "accounts": list(ix.accounts),
                "data": ix.data,
            })
            swap = infer_swap(tx.pre_token_balances, tx.post_token_balances, ts)
            if swap is None:
                await self.events.log_debug({
                    "type": "swap_unresolved",
                    "signature": tx.signature,
                    "hasPreBalances": tx.pre_token_balances is not None,
                    "hasPostBalances": tx.post_token_balances is not None,
                    "preBalancesLength": len(tx.pre_token_balances or []),
                    "postBalancesLength": len(tx.post_token_balances or []),
                })
                continue
            await self.events.log_swap(swap)
            swaps += 1

        if tx.pre_token_balances is not None or tx.post_token_balances is not None:
            await self.events.log_token_balances(tx)
        return swaps
