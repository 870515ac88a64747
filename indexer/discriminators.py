# indexer/discriminators.py
# Raydium instruction discriminators: first 8 bytes of the payload, lowercase hex.
# New operation codes only need a row here.

import logging
from types import MappingProxyType

log = logging.getLogger(__name__)

SWAP               = "swap"
ADD_LIQUIDITY      = "addLiquidity"
REMOVE_LIQUIDITY   = "removeLiquidity"
CREATE_POOL        = "createPool"
OPEN_POSITION      = "openPosition"
CLOSE_POSITION     = "closePosition"
INCREASE_LIQUIDITY = "increaseLiquidity"
DECREASE_LIQUIDITY = "decreaseLiquidity"
UNKNOWN            = "unknown"

OPERATION_TYPES = frozenset({
    SWAP, ADD_LIQUIDITY, REMOVE_LIQUIDITY, CREATE_POOL, OPEN_POSITION,
    CLOSE_POSITION, INCREASE_LIQUIDITY, DECREASE_LIQUIDITY, UNKNOWN,
})

DISCRIMINATOR_LEN = 8

RAYDIUM_INSTRUCTION_TYPES = MappingProxyType({
    # swaps
    "8fbe5adac41e33de": SWAP,                 # SwapBaseInput
    "45373366584850":   SWAP,                 # SwapBaseInput, older 7-byte key; never matches a full 8-byte prefix
    "e9337f012d70c0f0": SWAP,                 # SwapBaseOutput
    # liquidity
    "f4c069a1b5f233bc": ADD_LIQUIDITY,
    "4a1c3df8fa781539": REMOVE_LIQUIDITY,
    # pool / position lifecycle
    "0b05a0b39c3cd8ea": CREATE_POOL,
    "d4c69119d8ea3088": CLOSE_POSITION,
    "b4c76604d72c58c2": OPEN_POSITION,
    "cd35e4f35f45a845": INCREASE_LIQUIDITY,
    "b119a7e3d6c6c2e3": DECREASE_LIQUIDITY,
})


def resolve(discriminator: str) -> str:
    op = RAYDIUM_INSTRUCTION_TYPES.get((discriminator or "").lower())
    if op:
        log.debug("raydium %s instruction, discriminator=%s", op, discriminator)
        return op
    return UNKNOWN
