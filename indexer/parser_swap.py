# indexer/parser_swap.py
# Swap parser: derive the two legs of a swap from pre/post token balances.
# Raw integer amounts are summed per mint; nothing is rounded until the final scaling step.
# If we can't infer a swap, we return None.

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from indexer.models import BalanceChange, SwapLeg, SwapRecord, TokenBalance

log = logging.getLogger(__name__)

AMOUNT_QUANT = Decimal("0.0001")


def format_token_amount(raw: int, decimals: int) -> Decimal:
    # 4 fractional digits, half-up
    scaled = Decimal(int(raw)).scaleb(-int(decimals))
    return scaled.quantize(AMOUNT_QUANT, rounding=ROUND_HALF_UP)


def balance_changes(pre: Optional[Sequence[TokenBalance]],
                    post: Optional[Sequence[TokenBalance]]) -> List[BalanceChange]:
    """Per-mint net change (post - pre), zero entries included, in first-seen order."""
    out: Dict[str, BalanceChange] = {}
    for b in pre or []:
        cur = out.get(b.mint)
        if cur is None:
            out[b.mint] = BalanceChange(mint=b.mint, decimals=b.decimals, change=-int(b.amount))
        else:
            cur.change -= int(b.amount)
    for b in post or []:
        cur = out.get(b.mint)
        if cur is None:
            out[b.mint] = BalanceChange(mint=b.mint, decimals=b.decimals, change=int(b.amount))
        else:
            cur.change += int(b.amount)
    return list(out.values())


def infer_swap(pre: Optional[Sequence[TokenBalance]],
               post: Optional[Sequence[TokenBalance]],
               timestamp: Optional[str] = None) -> Optional[SwapRecord]:
    if pre is None or post is None:
        return None

    changes = [c for c in balance_changes(pre, post) if c.change != 0]
    if len(changes) < 2:
        return None

    # most negative first: what was spent; last: what was received
    changes.sort(key=lambda c: c.change)
    spent, received = changes[0], changes[-1]
    log.debug("balance changes: %s", [(c.mint, c.change) for c in changes])

    return SwapRecord(
        input=SwapLeg(spent.mint, format_token_amount(abs(spent.change), spent.decimals), spent.decimals),
        output=SwapLeg(received.mint, format_token_amount(received.change, received.decimals), received.decimals),
        timestamp=timestamp,
    )
