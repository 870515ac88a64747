# indexer/tx_filter.py
# Watch-list matching for one transaction, then instruction decoding for the matches.

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, List, Optional, Tuple

from indexer import discriminators
from indexer.decoder import decode_instructions
from indexer.models import Instruction, Transaction

log = logging.getLogger(__name__)


@dataclass
class MatchedTransaction:
    tx: Transaction
    programs: List[str]
    instructions: List[Instruction] = field(default_factory=list)

    @property
    def swaps(self) -> List[Instruction]:
        return [ix for ix in self.instructions if ix.type == discriminators.SWAP]


def invoked_programs(tx: Transaction) -> List[str]:
    seen = []
    keys = tx.account_keys
    for ix in tx.instructions:
        idx = ix.program_id_index
        if idx is None or not (0 <= idx < len(keys)):
            continue
        pid = keys[idx]
        if pid and pid not in seen:
            seen.append(pid)
    return seen


def filter_transaction(tx: Transaction, watch_set: AbstractSet[str]) -> Tuple[bool, List[str]]:
    programs = invoked_programs(tx)
    if not watch_set:
        relevant = programs
    else:
        relevant = [p for p in programs if p in watch_set]
    return bool(relevant), relevant


def match_transaction(tx: Transaction, watch_set: AbstractSet[str],
                      primary_program: Optional[str]) -> Optional[MatchedTransaction]:
    """
    None means "not for us": failed, structurally incomplete, or outside the watch-list.
    """
    if not tx.success:
        return None
    if not tx.account_keys or not tx.instructions:
        log.debug("skipping incomplete transaction %s", tx.signature or "?")
        return None

    matched, relevant = filter_transaction(tx, watch_set)
    if not matched:
        return None

    instructions = decode_instructions(tx.instructions, tx.account_keys, primary_program)
    if not instructions:
        return None
    return MatchedTransaction(tx=tx, programs=relevant, instructions=instructions)
