# indexer/models.py
# Core value types shared by the source adapter, decoder, diff engine and sink.
# Everything here is built once per slot and dropped after the records are emitted.

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SlotInfo:
    slot: int
    parent: Optional[int] = None
    root: Optional[int] = None


@dataclass(frozen=True)
class TokenBalance:
    account_index: int
    mint: str
    amount: int          # raw integer units
    decimals: int
    owner: Optional[str] = None
    ui_amount_string: Optional[str] = None


@dataclass(frozen=True)
class RawInstruction:
    """Compiled instruction as it sits in the message: indexes into the account table."""
    program_id_index: Optional[int]
    account_indexes: Tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: Tuple[str, ...]
    data: str                           # payload as lowercase hex
    type: Optional[str] = None
    discriminator: Optional[str] = None


@dataclass
class Transaction:
    signature: str
    success: bool
    account_keys: List[str]
    instructions: List[RawInstruction]
    logs: Optional[List[str]] = None
    pre_token_balances: Optional[List[TokenBalance]] = None
    post_token_balances: Optional[List[TokenBalance]] = None


@dataclass
class Block:
    slot: int
    block_time: Optional[int]           # unix seconds
    transactions: List[Transaction] = field(default_factory=list)


@dataclass
class BalanceChange:
    mint: str
    decimals: int
    change: int


@dataclass(frozen=True)
class SwapLeg:
    token: str
    amount: Decimal
    decimals: int

    def to_record(self, symbols: Optional[Dict[str, str]] = None) -> dict:
        token = (symbols or {}).get(self.token, self.token)
        return {"token": token, "amount": float(self.amount), "decimals": self.decimals}


@dataclass(frozen=True)
class SwapRecord:
    input: SwapLeg
    output: SwapLeg
    timestamp: Optional[str] = None
    type: str = "swap"

    def to_record(self, symbols: Optional[Dict[str, str]] = None) -> dict:
        return {
            "type": self.type,
            "input": self.input.to_record(symbols),
            "output": self.output.to_record(symbols),
            "timestamp": self.timestamp,
        }


@dataclass
class SlotResult:
    slot: int
    found: bool = False
    transactions: int = 0
    matched: int = 0
    swaps: int = 0
