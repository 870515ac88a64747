# indexer/backfill.py
# Paced historical walk over [from, to]: fixed-size batches fetched concurrently,
# each batch fully awaited, then a fixed pause. Every slot is attempted exactly once.

import asyncio, logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List

from indexer.models import SlotResult
from indexer.pipeline import SlotProcessor

log = logging.getLogger(__name__)


@dataclass
class ProgressCursor:
    start: int
    end: int
    next_slot: int

    @property
    def total(self) -> int:
        return max(self.end - self.start + 1, 0)

    @property
    def done(self) -> int:
        return min(self.next_slot, self.end + 1) - self.start

    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.done / self.total * 100.0


@dataclass
class BackfillStats:
    attempted: int = 0
    found: int = 0
    failed: int = 0
    matched: int = 0
    swaps: int = 0


class BackfillScheduler:
    def __init__(self, processor: SlotProcessor, batch_size: int = 5, batch_delay: float = 3.0,
                 progress_every: int = 100,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.processor = processor
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.progress_every = max(1, progress_every)
        self._sleep = sleep
        self.cursor = None

    async def _run_slot(self, slot: int):
        try:
            return await self.processor.process_slot(slot)
        except Exception as e:
            log.error("slot %d failed: %s", slot, e)
            try:
                await self.processor.events.log_debug({"type": "slot_error", "slot": slot, "error": str(e)})
            except Exception as sink_err:
                log.warning("could not record slot %d failure: %s", slot, sink_err)
            return e

    async def backfill(self, from_slot: int, to_slot: int) -> BackfillStats:
        stats = BackfillStats()
        self.cursor = cur = ProgressCursor(start=from_slot, end=to_slot, next_slot=from_slot)
        if from_slot > to_slot:
            log.info("backfill: nothing to do (%d > %d)", from_slot, to_slot)
            return stats

        log.info("backfill: slots %d..%d (%d total, batch %d, delay %.1fs)",
                 from_slot, to_slot, cur.total, self.batch_size, self.batch_delay)

        while cur.next_slot <= to_slot:
            batch_start = cur.next_slot
            batch_end = min(batch_start + self.batch_size - 1, to_slot)
            log.debug("backfill batch %d..%d", batch_start, batch_end)

            results: List = await asyncio.gather(
                *(self._run_slot(s) for s in range(batch_start, batch_end + 1))
            )
            for r in results:
                stats.attempted += 1
                if isinstance(r, SlotResult):
                    stats.found += int(r.found)
                    stats.matched += r.matched
                    stats.swaps += r.swaps
                else:
                    stats.failed += 1

            prev_done = cur.done
            cur.next_slot = batch_end + 1
            if cur.done // self.progress_every > prev_done // self.progress_every or cur.next_slot > to_slot:
                log.info("backfill progress: %.2f%% (slot %d/%d)", cur.percent(), batch_end, to_slot)

            await self._sleep(self.batch_delay)

        log.info("backfill complete: attempted=%d found=%d failed=%d matched=%d swaps=%d",
                 stats.attempted, stats.found, stats.failed, stats.matched, stats.swaps)
        return stats
