# indexer/decoder.py
# Compiled instruction -> Instruction. Unresolvable account indexes are dropped,
# short payloads stay unclassified, and one bad instruction never sinks its siblings.

import logging
from typing import List, Optional, Sequence

from indexer import discriminators
from indexer.models import Instruction, RawInstruction

log = logging.getLogger(__name__)


def _lookup(account_keys: Sequence[str], idx) -> Optional[str]:
    if not isinstance(idx, int) or idx < 0 or idx >= len(account_keys):
        return None
    return account_keys[idx] or None


def decode_instruction(raw: RawInstruction, account_keys: Sequence[str],
                       primary_program: Optional[str]) -> Optional[Instruction]:
    """
    Returns None when the program itself cannot be resolved; such an instruction
    has nothing to classify and is left out of the decoded list.
    """
    program_id = _lookup(account_keys, raw.program_id_index)
    if program_id is None:
        return None

    accounts = tuple(a for a in (_lookup(account_keys, i) for i in raw.account_indexes) if a)
    data = bytes(raw.data or b"")

    op_type = None
    disc = None
    if primary_program and program_id == primary_program and len(data) >= discriminators.DISCRIMINATOR_LEN:
        disc = data[:discriminators.DISCRIMINATOR_LEN].hex()
        op_type = discriminators.resolve(disc)

    return Instruction(
        program_id=program_id,
        accounts=accounts,
        data=data.hex(),
        type=op_type,
        discriminator=disc,
    )


def decode_instructions(raws: Sequence[RawInstruction], account_keys: Sequence[str],
                        primary_program: Optional[str]) -> List[Instruction]:
    out = []
    for raw in raws:
        try:
            ix = decode_instruction(raw, account_keys, primary_program)
        except Exception as e:
            log.debug("instruction decode failed: %s", e)
            continue
        if ix is not None:
            out.append(ix)
    return out
