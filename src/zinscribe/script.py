"""
Script primitives and the inscription envelope codec.

The envelope is a push-only sequence carried in the reveal input's unlocking
script::

    "ord" OP_1 <content type> OP_0 <body chunk> [<body chunk> ...]

The reveal (redeem) script commits to the revealer's key and drops one stack
item per envelope chunk, so the envelope is consumed before ``OP_TRUE``::

    <pubkey> OP_CHECKSIGVERIFY OP_DROP * n OP_TRUE

The commit output pays to ``P2SH(reveal script)``.
"""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Iterator
from dataclasses import dataclass, field

from zinscribe.constants import (
    ENVELOPE_PROTOCOL_TAG,
    MAX_OPS_PER_SCRIPT,
    MAX_SCRIPT_ELEMENT_SIZE,
    MAX_STANDARD_TX_SIZE,
)
from zinscribe.errors import ContentTooLarge, InvalidContent

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_TRUE = OP_1
OP_16 = 0x60
OP_DUP = 0x76
OP_DROP = 0x75
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD

# 33-byte compressed key stand-in used before the revealer key is known
PLACEHOLDER_PUBKEY = bytes(33)

# Largest DER signature (72 bytes) plus the hash type byte
MAX_SIGNATURE_PUSH = 73


def push_data(data: bytes) -> bytes:
    """Encode ``data`` as a minimal script push."""
    length = len(data)
    if length <= 75:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", length) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", length) + data


def iter_script(script: bytes) -> Iterator[tuple[int, bytes | None]]:
    """
    Walk a script yielding ``(opcode, pushed_data)``.

    ``pushed_data`` is None for non-push opcodes.

    Raises:
        ValueError: If a push runs past the end of the script
    """
    for _, opcode, data in _iter_with_offsets(script):
        yield opcode, data


def _iter_with_offsets(script: bytes) -> Iterator[tuple[int, int, bytes | None]]:
    pos = 0
    while pos < len(script):
        start = pos
        opcode = script[pos]
        pos += 1
        width = {OP_PUSHDATA1: 1, OP_PUSHDATA2: 2, OP_PUSHDATA4: 4}.get(opcode, 0)
        if pos + width > len(script):
            raise ValueError(f"Truncated push length at offset {start}")
        if opcode <= 75:
            size = opcode
        elif opcode == OP_PUSHDATA1:
            size = script[pos]
            pos += 1
        elif opcode == OP_PUSHDATA2:
            (size,) = struct.unpack_from("<H", script, pos)
            pos += 2
        elif opcode == OP_PUSHDATA4:
            (size,) = struct.unpack_from("<I", script, pos)
            pos += 4
        else:
            yield start, opcode, None
            continue
        if pos + size > len(script):
            raise ValueError(f"Push of {size} bytes overruns script at offset {pos}")
        yield start, opcode, script[pos : pos + size]
        pos += size


def split_reveal_script_sig(script_sig: bytes) -> tuple[bytes, bytes, bytes]:
    """
    Split a reveal unlocking script into ``(envelope, signature, redeem_script)``.

    Raises:
        ValueError: If the script has fewer than three items or does not end
            in two pushes
    """
    items = list(_iter_with_offsets(script_sig))
    if len(items) < 3:
        raise ValueError("Reveal unlocking script needs an envelope, signature and redeem script")
    (sig_start, _, signature), (_, _, redeem) = items[-2], items[-1]
    if signature is None or redeem is None:
        raise ValueError("Reveal unlocking script must end with two pushes")
    return script_sig[:sig_start], signature, redeem


def count_ops(script: bytes) -> int:
    """Count non-push opcodes, the quantity bounded by MAX_OPS_PER_SCRIPT."""
    return sum(1 for opcode, data in iter_script(script) if data is None and opcode > OP_16)


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    if len(pubkey_hash) != 20:
        raise ValueError(f"pubkey hash must be 20 bytes, got {len(pubkey_hash)}")
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    if len(script_hash) != 20:
        raise ValueError(f"script hash must be 20 bytes, got {len(script_hash)}")
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def envelope_chunks(content_type: str, payload: bytes) -> list[bytes]:
    """
    Split content into encoded envelope items.

    Each returned item leaves exactly one element on the stack. A zero-length
    payload yields a single empty push.
    """
    body = [
        payload[i : i + MAX_SCRIPT_ELEMENT_SIZE]
        for i in range(0, len(payload), MAX_SCRIPT_ELEMENT_SIZE)
    ] or [b""]
    mime = content_type.encode("utf-8")
    if len(mime) > MAX_SCRIPT_ELEMENT_SIZE:
        raise ContentTooLarge(len(mime), MAX_SCRIPT_ELEMENT_SIZE, "content type")
    return [
        push_data(ENVELOPE_PROTOCOL_TAG),
        bytes([OP_1]),
        push_data(mime),
        bytes([OP_0]),
        *(push_data(piece) for piece in body),
    ]


def encode_envelope(chunks: list[bytes]) -> bytes:
    return b"".join(chunks)


def parse_envelope(script: bytes) -> tuple[str, bytes]:
    """
    Decode an envelope back into ``(content_type, payload)``.

    Raises:
        InvalidContent: If the script is not a well-formed envelope
    """
    try:
        items = list(iter_script(script))
    except (ValueError, struct.error, IndexError) as e:
        raise InvalidContent(f"Malformed envelope script: {e}") from e

    if len(items) < 5:
        raise InvalidContent(f"Envelope has {len(items)} items, need at least 5")
    tag, version, mime, separator = items[:4]
    if tag[1] != ENVELOPE_PROTOCOL_TAG:
        raise InvalidContent("Envelope does not start with the protocol tag")
    if version[0] != OP_1 or separator[0] != OP_0:
        raise InvalidContent("Envelope field markers are missing")
    if mime[1] is None:
        raise InvalidContent("Envelope content type is not a push")

    body = b""
    for opcode, data in items[4:]:
        if data is None:
            raise InvalidContent(f"Non-push opcode 0x{opcode:02x} in envelope body")
        body += data
    return mime[1].decode("utf-8"), body


def reveal_script(pubkey: bytes, drop_count: int) -> bytes:
    return (
        push_data(pubkey)
        + bytes([OP_CHECKSIGVERIFY])
        + bytes([OP_DROP]) * drop_count
        + bytes([OP_TRUE])
    )


def estimate_reveal_size(envelope: bytes, redeem: bytes) -> int:
    """Upper bound for the serialized size of a one-in/one-out reveal."""
    script_sig = len(envelope) + 1 + MAX_SIGNATURE_PUSH + len(push_data(redeem))
    # header, group id, counts, outpoint, sequence, one P2PKH output, trailer
    fixed = 4 + 4 + 1 + 36 + 4 + 1 + (8 + 1 + 25) + 4 + 4 + 8 + 3
    return fixed + _varint_size(script_sig) + script_sig


def _varint_size(n: int) -> int:
    if n < 0xFD:
        return 1
    if n <= 0xFFFF:
        return 3
    if n <= 0xFFFFFFFF:
        return 5
    return 9


@dataclass
class FinalizedInscription:
    content_type: str
    payload: bytes
    chunks: list[bytes]
    envelope_script: bytes
    reveal_script: bytes
    funding_script: bytes
    public_key: bytes


@dataclass
class ProvisionalInscription:
    """Inscription scripts built before the revealer key is known."""

    content_type: str
    payload: bytes
    chunks: list[bytes]
    envelope_script: bytes
    reveal_script: bytes
    funding_script: bytes
    estimated_reveal_size: int = field(default=0)

    def finalize(self, pubkey: bytes) -> FinalizedInscription:
        if len(pubkey) != 33 or pubkey[0] not in (0x02, 0x03):
            raise ValueError("Revealer key must be a 33-byte compressed public key")
        redeem = reveal_script(pubkey, len(self.chunks))
        return FinalizedInscription(
            content_type=self.content_type,
            payload=self.payload,
            chunks=self.chunks,
            envelope_script=self.envelope_script,
            reveal_script=redeem,
            funding_script=p2sh_script(hash160(redeem)),
            public_key=pubkey,
        )


class InscriptionBuilder:
    """
    Two-stage builder for the commit/reveal script pair.

    ``provisional()`` validates every size limit with a placeholder key so
    oversized content is rejected before any output is selected;
    ``finalize(pubkey)`` then binds the real key.
    """

    def __init__(self, content_type: str, payload: bytes):
        self.content_type = content_type
        self.payload = payload

    @classmethod
    def from_content(cls, content) -> InscriptionBuilder:
        return cls(content.content_type, content.payload())

    def provisional(self) -> ProvisionalInscription:
        chunks = envelope_chunks(self.content_type, self.payload)
        envelope = encode_envelope(chunks)
        redeem = reveal_script(PLACEHOLDER_PUBKEY, len(chunks))

        ops = count_ops(redeem)
        if ops > MAX_OPS_PER_SCRIPT:
            raise ContentTooLarge(ops, MAX_OPS_PER_SCRIPT, "reveal script operation count")
        if len(redeem) > MAX_SCRIPT_ELEMENT_SIZE:
            raise ContentTooLarge(len(redeem), MAX_SCRIPT_ELEMENT_SIZE, "reveal script")
        size = estimate_reveal_size(envelope, redeem)
        if size > MAX_STANDARD_TX_SIZE:
            raise ContentTooLarge(size, MAX_STANDARD_TX_SIZE)

        return ProvisionalInscription(
            content_type=self.content_type,
            payload=self.payload,
            chunks=chunks,
            envelope_script=envelope,
            reveal_script=redeem,
            funding_script=p2sh_script(hash160(redeem)),
            estimated_reveal_size=size,
        )
