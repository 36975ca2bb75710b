"""
ZIP-243 transparent signature hashing.

All hashes are BLAKE2b-256 with a 16-byte personalization. The final digest
is personalized with ``b"ZcashSigHash" || consensus_branch_id`` so a
signature is only valid on the network upgrade it was made for.
"""

from __future__ import annotations

import hashlib
import struct

from zinscribe.constants import (
    OUTPUTS_PERSONALIZATION,
    PREVOUTS_PERSONALIZATION,
    SEQUENCE_PERSONALIZATION,
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_PERSONALIZATION_PREFIX,
    SIGHASH_SINGLE,
)
from zinscribe.errors import SighashError
from zinscribe.transaction import ZcashTransaction, serialize_outpoint, varint

ZERO_HASH = bytes(32)


def blake2b_256(data: bytes, person: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32, person=person).digest()


def sighash_personalization(branch_id: int) -> bytes:
    return SIGHASH_PERSONALIZATION_PREFIX + struct.pack("<I", branch_id)


def hash_prevouts(tx: ZcashTransaction) -> bytes:
    return blake2b_256(
        b"".join(serialize_outpoint(inp.txid, inp.vout) for inp in tx.inputs),
        PREVOUTS_PERSONALIZATION,
    )


def hash_sequence(tx: ZcashTransaction) -> bytes:
    return blake2b_256(
        b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs),
        SEQUENCE_PERSONALIZATION,
    )


def hash_outputs(tx: ZcashTransaction) -> bytes:
    return blake2b_256(b"".join(out.serialize() for out in tx.outputs), OUTPUTS_PERSONALIZATION)


def signature_preimage(
    tx: ZcashTransaction,
    input_index: int,
    script_code: bytes,
    value: int,
    hash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    Build the ZIP-243 preimage for one transparent input.

    Args:
        tx: Transaction being signed
        input_index: Index of the input to sign
        script_code: Script the input is spending (redeem script for P2SH)
        value: Value of the spent output in zatoshis
        hash_type: Sighash type, combination of ALL/NONE/SINGLE and ANYONECANPAY

    Raises:
        SighashError: If ``input_index`` does not name an input
    """
    if not 0 <= input_index < len(tx.inputs):
        raise SighashError(f"Input index {input_index} out of range for {len(tx.inputs)} inputs")

    base_type = hash_type & 0x1F
    anyone_can_pay = bool(hash_type & SIGHASH_ANYONECANPAY)

    prevouts = ZERO_HASH if anyone_can_pay else hash_prevouts(tx)
    if anyone_can_pay or base_type in (SIGHASH_SINGLE, SIGHASH_NONE):
        sequences = ZERO_HASH
    else:
        sequences = hash_sequence(tx)

    if base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
        outputs = hash_outputs(tx)
    elif base_type == SIGHASH_SINGLE and input_index < len(tx.outputs):
        outputs = blake2b_256(tx.outputs[input_index].serialize(), OUTPUTS_PERSONALIZATION)
    else:
        outputs = ZERO_HASH

    target = tx.inputs[input_index]
    return (
        struct.pack("<I", tx.header)
        + struct.pack("<I", tx.version_group_id)
        + prevouts
        + sequences
        + outputs
        # hashJoinSplits, hashShieldedSpends, hashShieldedOutputs
        + ZERO_HASH * 3
        + struct.pack("<I", tx.lock_time)
        + struct.pack("<I", tx.expiry_height)
        + struct.pack("<q", 0)
        + struct.pack("<I", hash_type)
        + serialize_outpoint(target.txid, target.vout)
        + varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target.sequence)
    )


def signature_hash(
    tx: ZcashTransaction,
    input_index: int,
    script_code: bytes,
    value: int,
    branch_id: int,
    hash_type: int = SIGHASH_ALL,
) -> bytes:
    """Return the 32-byte digest the input's owner must sign."""
    preimage = signature_preimage(tx, input_index, script_code, value, hash_type)
    return blake2b_256(preimage, sighash_personalization(branch_id))


def input_digests(
    tx: ZcashTransaction, branch_id: int, hash_type: int = SIGHASH_ALL
) -> list[bytes]:
    """
    Digest for every input, using each input's ``prev_script`` and ``value``.
    """
    return [
        signature_hash(tx, i, inp.prev_script, inp.value, branch_id, hash_type)
        for i, inp in enumerate(tx.inputs)
    ]
