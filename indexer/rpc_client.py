# indexer/rpc_client.py
# Block source boundary. The core only sees BlockSource; SolanaRpcSource adapts
# Solana JSON-RPC (aiohttp) and PubSub (websockets) behind it.

import asyncio, contextlib, logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import base58
import orjson
import websockets

from indexer.models import Block, RawInstruction, SlotInfo, TokenBalance, Transaction

log = logging.getLogger(__name__)

HEADERS = {"Content-Type": "application/json"}

# JSON-RPC server errors that mean "this slot has no block for us (yet)"
UNAVAILABLE_CODES = {
    -32004,   # block not available for slot
    -32007,   # slot skipped or missing due to ledger jump
    -32009,   # slot skipped or missing in long-term storage
    -32014,   # block status not yet available
}


class SourceError(Exception):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class RateLimitedError(SourceError):
    pass


class BlockUnavailableError(SourceError):
    pass


def classify_rpc_error(err: Any) -> SourceError:
    if not isinstance(err, dict):
        err = {"message": str(err)}
    code = err.get("code")
    message = str(err.get("message") or err)
    if code == 429 or "too many requests" in message.lower():
        return RateLimitedError(message, code)
    if code in UNAVAILABLE_CODES or "block not available" in message.lower():
        return BlockUnavailableError(message, code)
    return SourceError(message, code)


class SlotSubscription(ABC):
    @abstractmethod
    async def close(self) -> None:
        ...


class BlockSource(ABC):
    @abstractmethod
    async def current_slot(self) -> int:
        ...

    @abstractmethod
    async def get_version(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def fetch_block(self, slot: int) -> Optional[Block]:
        """None when the slot has no block. Raises SourceError subclasses."""

    @abstractmethod
    async def subscribe_slots(self, callback: Callable[[SlotInfo], None]) -> SlotSubscription:
        ...

    async def close(self) -> None:
        pass


###############################################################################
# getBlock payload -> core types
###############################################################################

def _key(k) -> Optional[str]:
    if isinstance(k, str):
        return k
    if isinstance(k, dict) and isinstance(k.get("pubkey"), str):
        return k["pubkey"]
    return None


def _account_table(message: dict, meta: dict) -> List[str]:
    keys = [_key(k) or "" for k in (message.get("accountKeys") or [])]
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


def _token_balances(raw) -> Optional[List[TokenBalance]]:
    if raw is None:
        return None
    out = []
    for b in raw:
        ui = b.get("uiTokenAmount") or {}
        try:
            amount = int(ui.get("amount") or 0)
        except (TypeError, ValueError):
            continue
        out.append(TokenBalance(
            account_index=int(b.get("accountIndex", -1)),
            mint=b.get("mint") or "",
            amount=amount,
            decimals=int(ui.get("decimals") or 0),
            owner=b.get("owner"),
            ui_amount_string=ui.get("uiAmountString"),
        ))
    return out


def _raw_instruction(ix: dict) -> Optional[RawInstruction]:
    data = ix.get("data")
    try:
        payload = base58.b58decode(data) if data else b""
    except ValueError:
        log.debug("undecodable instruction data %r", data)
        return None
    return RawInstruction(
        program_id_index=ix.get("programIdIndex"),
        account_indexes=tuple(ix.get("accounts") or ()),
        data=payload,
    )


def parse_transaction(entry: dict) -> Transaction:
    meta = entry.get("meta") or {}
    tx = entry.get("transaction") or {}
    message = tx.get("message") or {}
    sigs = tx.get("signatures") or [""]
    raws = []
    for ix in message.get("instructions") or []:
        raw = _raw_instruction(ix)
        if raw is not None:
            raws.append(raw)
    return Transaction(
        signature=sigs[0],
        success=bool(entry.get("meta")) and meta.get("err") is None,
        account_keys=_account_table(message, meta),
        instructions=raws,
        logs=meta.get("logMessages"),
        pre_token_balances=_token_balances(meta.get("preTokenBalances")),
        post_token_balances=_token_balances(meta.get("postTokenBalances")),
    )


def parse_block(slot: int, result: dict) -> Block:
    txs = []
    for entry in result.get("transactions") or []:
        try:
            txs.append(parse_transaction(entry))
        except Exception as e:
            # keep the slot going; an empty shell is skipped by the filter
            log.debug("malformed transaction in slot %d: %s", slot, e)
            txs.append(Transaction(signature="", success=False, account_keys=[], instructions=[]))
    return Block(slot=slot, block_time=result.get("blockTime"), transactions=txs)


###############################################################################
# Solana JSON-RPC + PubSub
###############################################################################

class _WsSlotSubscription(SlotSubscription):
    def __init__(self, task: asyncio.Task):
        self._task = task

    async def close(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class SolanaRpcSource(BlockSource):
    def __init__(self, rpc_http: str, rpc_ws: str = "", commitment: str = "confirmed",
                 timeout: float = 30.0, session: Optional[aiohttp.ClientSession] = None):
        self.rpc_http = rpc_http
        self.rpc_ws = rpc_ws
        self.commitment = commitment
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._own_session = session is None
        self._req_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._own_session = True
        return self._session

    async def _call(self, method: str, params: Optional[list] = None):
        self._req_id += 1
        payload = {"jsonrpc": "2.0", "id": self._req_id, "method": method, "params": params or []}
        session = await self._get_session()
        try:
            async with session.post(self.rpc_http, headers=HEADERS, json=payload) as r:
                if r.status == 429:
                    raise RateLimitedError(f"{method}: HTTP 429 Too Many Requests", 429)
                if r.status >= 400:
                    raise SourceError(f"{method}: HTTP {r.status} {r.reason}", r.status)
                body = orjson.loads(await r.read())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceError(f"{method}: {e!r}") from e
        except orjson.JSONDecodeError as e:
            raise SourceError(f"{method}: bad response body: {e}") from e
        if body.get("error"):
            raise classify_rpc_error(body["error"])
        return body.get("result")

    async def current_slot(self) -> int:
        return int(await self._call("getSlot", [{"commitment": self.commitment}]))

    async def get_version(self) -> Dict[str, Any]:
        return await self._call("getVersion") or {}

    async def fetch_block(self, slot: int) -> Optional[Block]:
        result = await self._call("getBlock", [slot, {
            "encoding": "json",
            "maxSupportedTransactionVersion": 0,
            "commitment": self.commitment,
            "transactionDetails": "full",
            "rewards": False,
        }])
        if not result:
            return None
        return parse_block(slot, result)

    async def subscribe_slots(self, callback: Callable[[SlotInfo], None]) -> SlotSubscription:
        if not self.rpc_ws:
            raise SourceError("no websocket endpoint configured")
        task = asyncio.create_task(self._slot_loop(callback), name="slot-subscription")
        return _WsSlotSubscription(task)

    async def _slot_loop(self, callback: Callable[[SlotInfo], None],
                         restart_backoff: float = 2.0, max_backoff: float = 60.0):
        failures = 0
        while True:
            try:
                async with websockets.connect(self.rpc_ws, max_size=20_000_000) as ws:
                    await ws.send(orjson.dumps({"jsonrpc": "2.0", "id": 1, "method": "slotSubscribe"}))
                    sub_id = None
                    try:
                        async for raw in ws:
                            try:
                                msg = orjson.loads(raw)
                            except orjson.JSONDecodeError:
                                continue
                            if msg.get("id") == 1 and "result" in msg:
                                sub_id = msg["result"]
                                failures = 0
                                log.info("slot subscription %s open", sub_id)
                                continue
                            if msg.get("method") != "slotNotification":
                                continue
                            res = (msg.get("params") or {}).get("result") or {}
                            if "slot" not in res:
                                continue
                            callback(SlotInfo(slot=int(res["slot"]), parent=res.get("parent"), root=res.get("root")))
                    finally:
                        if sub_id is not None:
                            with contextlib.suppress(Exception):
                                await ws.send(orjson.dumps({
                                    "jsonrpc": "2.0", "id": 2,
                                    "method": "slotUnsubscribe", "params": [sub_id],
                                }))
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                failures += 1
                delay = min(restart_backoff * (2 ** (failures - 1)), max_backoff)
                log.warning("slot subscription error: %s; reconnecting in %.0fs", e, delay)
                await asyncio.sleep(delay)
                continue
            # server closed cleanly; reconnect
            await asyncio.sleep(restart_backoff)

    async def close(self) -> None:
        if self._own_session and self._session is not None and not self._session.closed:
            await self._session.close()
