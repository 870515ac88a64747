# indexer/fetcher.py
# getBlock with retry: 429 -> exponential backoff, "not available" -> no block,
# anything else -> the caller's problem for that slot.

import asyncio, logging
from typing import Awaitable, Callable, Optional

from indexer.models import Block
from indexer.rpc_client import BlockSource, BlockUnavailableError, RateLimitedError

log = logging.getLogger(__name__)


class ResilientFetcher:
    def __init__(self, source: BlockSource, max_retries: int = 3, base_delay: float = 1.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.source = source
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def fetch_block(self, slot: int) -> Optional[Block]:
        attempt = 0
        while True:
            try:
                return await self.source.fetch_block(slot)
            except BlockUnavailableError:
                # skipped or not yet produced; not an error
                log.debug("block %d not available", slot)
                return None
            except RateLimitedError:
                if attempt >= self.max_retries:
                    raise
                delay = self.base_delay * (2 ** attempt)
                log.info("rate limited on slot %d, retrying in %.1fs", slot, delay)
                await self._sleep(delay)
                attempt += 1
