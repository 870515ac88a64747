# indexer/live_tail.py
# Live phase: every slot notification runs the same per-slot path as backfill,
# each in its own task, plus a periodic getSlot probe.
#
# While backfill is still draining history the subscriber only remembers the highest
# notified slot; release(last_backfilled) hands off every slot after the backfill range
# up to that one. Afterwards each notification also covers any slots skipped since the
# last hand-off (late subscribe, reconnects), so the slot sequence has no holes.
# Slots complete out of order under load; nothing here re-sorts them.

import asyncio, contextlib, logging
from typing import Awaitable, Callable, Optional, Set

from indexer.models import SlotInfo
from indexer.pipeline import SlotProcessor
from indexer.rpc_client import BlockSource, SlotSubscription

log = logging.getLogger(__name__)


class LiveTailSubscriber:
    def __init__(self, source: BlockSource, processor: SlotProcessor, health_interval: float = 30.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.source = source
        self.processor = processor
        self.health_interval = health_interval
        self._sleep = sleep
        self._subscription: Optional[SlotSubscription] = None
        self._probe: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._pending_high: Optional[int] = None
        self._last_slot: Optional[int] = None
        self._buffering = False
        self._closing = False
        self.healthy = True

    @property
    def started(self) -> bool:
        return self._subscription is not None

    async def start(self, buffering: bool = False):
        self._buffering = buffering
        self._subscription = await self.source.subscribe_slots(self.on_new_slot)
        self._probe = asyncio.create_task(self._probe_loop(), name="liveness-probe")
        log.info("live tail subscribed%s", " (buffering until backfill completes)" if buffering else "")

    def on_new_slot(self, info: SlotInfo):
        if self._closing:
            return
        log.debug("slot update: slot=%s parent=%s root=%s", info.slot, info.parent, info.root)
        if self._buffering:
            if self._pending_high is None or info.slot > self._pending_high:
                self._pending_high = info.slot
            return
        if self._last_slot is None:
            self._last_slot = info.slot - 1
        self._advance_to(info.slot)

    def release(self, after_slot: int) -> int:
        """Stop buffering; hand off every slot in (after_slot, highest notified] in ascending order."""
        self._buffering = False
        self._last_slot = after_slot
        high, self._pending_high = self._pending_high, None
        count = self._advance_to(high) if high is not None else 0
        log.info("live tail released at slot %d, %d slots replayed", after_slot, count)
        return count

    def _advance_to(self, slot: int) -> int:
        # slots at or below the last hand-off were already dispatched
        if slot <= self._last_slot:
            return 0
        first = self._last_slot + 1
        if slot - first > 0:
            log.info("filling slots %d..%d missed by the subscription", first, slot - 1)
        for s in range(first, slot + 1):
            self._spawn(s)
        self._last_slot = slot
        return slot - first + 1

    def _spawn(self, slot: int):
        task = asyncio.create_task(self._handle(slot), name=f"slot-{slot}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _handle(self, slot: int):
        try:
            await self.processor.process_slot(slot)
        except Exception as e:
            log.error("processing slot %d failed: %s", slot, e)
            try:
                await self.processor.events.log_debug({"type": "slot_error", "slot": slot, "error": str(e)})
            except Exception as sink_err:
                log.warning("could not record slot %d failure: %s", slot, sink_err)

    async def _probe_loop(self):
        while True:
            await self._sleep(self.health_interval)
            try:
                slot = await self.source.current_slot()
                self.healthy = True
                log.debug("connection ok, current slot %d", slot)
            except Exception as e:
                self.healthy = False
                log.error("connection check failed: %s", e)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def close(self):
        # stop intake first, then the probe, then let in-flight slots finish
        self._closing = True
        if self._subscription is not None:
            try:
                await self._subscription.close()
            finally:
                self._subscription = None
        if self._probe is not None:
            self._probe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._probe
            self._probe = None
        if self._inflight:
            log.info("waiting for %d in-flight slots", len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        log.info("live tail closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()
