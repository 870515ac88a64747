# indexer/log_sink.py
# Append-only record sinks plus the per-category record formatting.
# Files: one orjson line per record under LOG_DIR. Postgres: index_log rows via asyncpg.

import asyncio, logging, os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

import asyncpg
import orjson

from indexer import discriminators
from indexer.models import Instruction, SwapRecord, TokenBalance, Transaction

log = logging.getLogger(__name__)

TRANSACTION    = "transaction"
INSTRUCTION    = "instruction"
SWAP           = "swap"
BALANCE_CHANGE = "balance_change"
DEBUG          = "debug"

CATEGORY_FILES = {
    TRANSACTION:    "transactions.log",
    INSTRUCTION:    "instructions.log",
    SWAP:           "swaps.log",
    BALANCE_CHANGE: "token_balances.log",
    DEBUG:          "debug.log",
}

ACCOUNT_LABELS = {
    "CPMDWBwJDtYax9qW7AyRuVC19Cc4L4Vcy4n2BHAbHkCW": "Raydium Program",
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA":  "Token Program",
    "So11111111111111111111111111111111111111112":  "Wrapped SOL",
    "4QGCZU9vto49NwohfTLQd8JA6B49dacpMyNhfFB1W9We": "USDC Mint",
}

RELEVANT_LOG_MARKERS = ("TransferChecked", "SwapBaseInput")


def now_utc():
    return datetime.now(timezone.utc)


def _default(obj):
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError


class LogSink(ABC):
    @abstractmethod
    async def append(self, category: str, record: dict) -> None:
        ...

    async def close(self) -> None:
        pass


class JsonlFileSink(LogSink):
    def __init__(self, log_dir: str = "logs"):
        self.log_dir = log_dir
        self._lock = asyncio.Lock()

    def _path(self, category: str) -> str:
        return os.path.join(self.log_dir, CATEGORY_FILES.get(category, f"{category}.log"))

    async def append(self, category: str, record: dict) -> None:
        entry = {"timestamp": now_utc().isoformat(), "type": category, "data": record}
        line = orjson.dumps(entry, default=_default, option=orjson.OPT_APPEND_NEWLINE)
        async with self._lock:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(self._path(category), "ab") as f:
                f.write(line)


SQL_CREATE_LOG = """
CREATE TABLE IF NOT EXISTS index_log(
  id bigserial primary key,
  ts timestamptz not null,
  category text not null,
  record jsonb not null
);
"""

SQL_INSERT_LOG = "INSERT INTO index_log(ts, category, record) VALUES($1, $2, $3::jsonb);"


class PgLogSink(LogSink):
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def create(cls, db_url: str) -> "PgLogSink":
        pool = await asyncpg.create_pool(dsn=db_url, min_size=1, max_size=4)
        async with pool.acquire() as conn:
            await conn.execute(SQL_CREATE_LOG)
        return cls(pool)

    async def append(self, category: str, record: dict) -> None:
        payload = orjson.dumps(record, default=_default).decode()
        async with self.pool.acquire() as conn:
            await conn.execute(SQL_INSERT_LOG, now_utc(), category, payload)

    async def close(self) -> None:
        await self.pool.close()


class FanoutSink(LogSink):
    def __init__(self, sinks: Iterable[LogSink]):
        self.sinks = list(sinks)

    async def append(self, category: str, record: dict) -> None:
        for s in self.sinks:
            await s.append(category, record)

    async def close(self) -> None:
        for s in self.sinks:
            await s.close()


###############################################################################
# Record formatting
###############################################################################

class EventLog:
    def __init__(self, sink: LogSink, debug: bool = False,
                 token_symbols: Optional[Mapping[str, str]] = None,
                 account_labels: Optional[Mapping[str, str]] = None):
        self.sink = sink
        self.debug = debug
        self.token_symbols = token_symbols or {}
        self.account_labels = ACCOUNT_LABELS if account_labels is None else account_labels

    async def log_transaction(self, tx: Transaction, slot: int, block_time: Optional[str],
                              programs: List[str], instructions: List[Instruction]) -> None:
        await self.sink.append(TRANSACTION, {
            "signature": tx.signature,
            "slot": slot,
            "blockTime": block_time,
            "programs": programs,
            "accounts": [
                {"index": i, "address": a, "description": self.account_labels.get(a)}
                for i, a in enumerate(tx.account_keys) if a
            ],
            "instructions": [
                {
                    "programId": ix.program_id,
                    "type": ix.type or discriminators.UNKNOWN,
                    "discriminator": ix.discriminator,
                    "accounts": list(ix.accounts),
                    "data": ix.data,
                }
                for ix in instructions
            ],
            "logs": tx.logs or [],
        })

    async def log_instruction(self, ix: Instruction) -> None:
        # only swap instructions are worth a line of their own
        if ix.type != discriminators.SWAP:
            return
        await self.sink.append(INSTRUCTION, {
            "programId": ix.program_id,
            "type": ix.type,
            "discriminator": ix.discriminator,
        })

    async def log_swap(self, swap: SwapRecord) -> None:
        await self.sink.append(SWAP, swap.to_record(self.token_symbols))

    async def log_token_balances(self, tx: Transaction) -> None:
        def simplify(bals: Optional[List[TokenBalance]]):
            return [{"mint": b.mint, "owner": b.owner, "amount": b.ui_amount_string} for b in bals or []]

        await self.sink.append(BALANCE_CHANGE, {
            "pre": simplify(tx.pre_token_balances),
            "post": simplify(tx.post_token_balances),
            "relevantLogs": [l for l in tx.logs or [] if any(m in l for m in RELEVANT_LOG_MARKERS)],
        })

    async def log_debug(self, data: Dict) -> None:
        if not self.debug:
            return
        await self.sink.append(DEBUG, data)
