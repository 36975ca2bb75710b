"""
Zcash v4 (Sapling format) transparent transaction assembly.

Serialized layout::

    header (version | overwintered) | version group id
    varint(n_in)  inputs  [outpoint | varint(len) scriptSig | sequence]
    varint(n_out) outputs [value u64 | varint(len) scriptPubKey]
    lock time | expiry height | value balance (0)
    nShieldedSpend (0) | nShieldedOutput (0) | nJoinSplit (0)
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from coincurve import verify_signature as coincurve_verify

from zinscribe.constants import (
    SAPLING_VERSION_GROUP_ID,
    SECP256K1_ORDER,
    SEQUENCE_FINAL,
    SIGHASH_ALL,
    TX_HEADER,
)
from zinscribe.errors import InvalidSignature
from zinscribe.script import iter_script, push_data


def varint(n: int) -> bytes:
    """Encode integer as a compact-size varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a varint, returning ``(value, new_offset)``."""
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    if first == 0xFD:
        return struct.unpack_from("<H", data, offset + 1)[0], offset + 3
    if first == 0xFE:
        return struct.unpack_from("<I", data, offset + 1)[0], offset + 5
    return struct.unpack_from("<Q", data, offset + 1)[0], offset + 9


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is displayed big-endian, raw transactions carry it reversed
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


@dataclass
class TxInput:
    """
    Transaction input.

    ``value`` and ``prev_script`` describe the spent output; they feed the
    signature hash but are not part of the serialization.
    """

    txid: str
    vout: int
    value: int = 0
    prev_script: bytes = b""
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def serialize(self) -> bytes:
        return (
            serialize_outpoint(self.txid, self.vout)
            + varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + varint(len(self.script)) + self.script


@dataclass
class ZcashTransaction:
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    lock_time: int = 0
    expiry_height: int = 0
    header: int = TX_HEADER
    version_group_id: int = SAPLING_VERSION_GROUP_ID

    def serialize(self) -> bytes:
        result = struct.pack("<I", self.header)
        result += struct.pack("<I", self.version_group_id)
        result += varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()
        result += varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()
        result += struct.pack("<I", self.lock_time)
        result += struct.pack("<I", self.expiry_height)
        # valueBalance, then empty shielded spends, shielded outputs, joinsplits
        result += struct.pack("<q", 0)
        result += bytes([0x00, 0x00, 0x00])
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        raw = self.serialize()
        return hashlib.sha256(hashlib.sha256(raw).digest()).digest()[::-1].hex()

    @property
    def total_output_value(self) -> int:
        return sum(out.value for out in self.outputs)

    @classmethod
    def parse(cls, raw: bytes | str) -> ZcashTransaction:
        """
        Parse a serialized transparent-only v4 transaction.

        Spent values and scripts are unknown and left empty.

        Raises:
            ValueError: On a non-v4 header, shielded data or trailing bytes
        """
        data = bytes.fromhex(raw) if isinstance(raw, str) else raw
        try:
            header, group_id = struct.unpack_from("<II", data, 0)
            if header != TX_HEADER or group_id != SAPLING_VERSION_GROUP_ID:
                raise ValueError(f"Unsupported transaction header {header:#x}/{group_id:#x}")
            offset = 8

            n_in, offset = read_varint(data, offset)
            inputs = []
            for _ in range(n_in):
                txid = data[offset : offset + 32][::-1].hex()
                (vout,) = struct.unpack_from("<I", data, offset + 32)
                offset += 36
                script_len, offset = read_varint(data, offset)
                script_sig = data[offset : offset + script_len]
                offset += script_len
                (sequence,) = struct.unpack_from("<I", data, offset)
                offset += 4
                inputs.append(TxInput(txid, vout, script_sig=script_sig, sequence=sequence))

            n_out, offset = read_varint(data, offset)
            outputs = []
            for _ in range(n_out):
                (value,) = struct.unpack_from("<Q", data, offset)
                offset += 8
                script_len, offset = read_varint(data, offset)
                outputs.append(TxOutput(value, data[offset : offset + script_len]))
                offset += script_len

            lock_time, expiry_height, value_balance = struct.unpack_from("<IIq", data, offset)
            offset += 16
            trailer = data[offset:]
        except (struct.error, IndexError) as e:
            raise ValueError(f"Truncated transaction: {e}") from e

        if value_balance != 0 or trailer != bytes(3):
            raise ValueError("Shielded components are not supported")
        return cls(inputs, outputs, lock_time=lock_time, expiry_height=expiry_height)


def _canonical_int(value: int) -> bytes:
    encoded = value.to_bytes(32, "big").lstrip(b"\x00") or b"\x00"
    if encoded[0] & 0x80:
        encoded = b"\x00" + encoded
    return encoded


def signature_to_der(raw: bytes) -> bytes:
    """
    Convert a 64-byte ``r || s`` signature to canonical low-S DER.

    Raises:
        InvalidSignature: If the input is not 64 bytes or a scalar is out of range
    """
    if len(raw) != 64:
        raise InvalidSignature(f"Raw signature must be 64 bytes, got {len(raw)}")
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:], "big")
    if not (0 < r < SECP256K1_ORDER and 0 < s < SECP256K1_ORDER):
        raise InvalidSignature("Signature scalar out of range")
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    r_bytes = _canonical_int(r)
    s_bytes = _canonical_int(s)
    body = bytes([0x02, len(r_bytes)]) + r_bytes + bytes([0x02, len(s_bytes)]) + s_bytes
    return bytes([0x30, len(body)]) + body


def signature_with_hashtype(raw: bytes, hash_type: int = SIGHASH_ALL) -> bytes:
    return signature_to_der(raw) + bytes([hash_type])


def verify_der_signature(der: bytes, digest: bytes, pubkey: bytes) -> bool:
    """Check a DER signature over a precomputed 32-byte digest."""
    try:
        return coincurve_verify(der, digest, pubkey, hasher=None)
    except (ValueError, TypeError):
        return False


def p2pkh_script_sig(signature: bytes, pubkey: bytes) -> bytes:
    """Unlocking script for a P2PKH output (``signature`` includes the hash type)."""
    return push_data(signature) + push_data(pubkey)


def reveal_script_sig(envelope: bytes, signature: bytes, redeem_script: bytes) -> bytes:
    """Unlocking script for the commit P2SH output: envelope, signature, redeem script."""
    return envelope + push_data(signature) + push_data(redeem_script)


def parse_p2pkh_script_sig(script_sig: bytes) -> tuple[bytes, bytes]:
    """
    Split a P2PKH unlocking script into ``(signature_with_hashtype, pubkey)``.

    Raises:
        ValueError: If the script is not exactly two pushes
    """
    items = list(iter_script(script_sig))
    if len(items) != 2 or items[0][1] is None or items[1][1] is None:
        raise ValueError("Expected a two-push P2PKH unlocking script")
    return items[0][1], items[1][1]


def checked_signature(
    raw_hex: str, digest_hex: str, pubkey: bytes, index: int, hash_type: int = SIGHASH_ALL
) -> bytes:
    """
    DER-encode a caller's raw signature and make sure it signs ``digest_hex``.

    Returns the signature with the hash type byte appended.

    Raises:
        InvalidSignature: If it is malformed or was made over another digest or key
    """
    try:
        raw = bytes.fromhex(raw_hex)
    except ValueError as e:
        raise InvalidSignature(f"Signature {index} is not hex") from e
    der = signature_to_der(raw)
    if not verify_der_signature(der, bytes.fromhex(digest_hex), pubkey):
        raise InvalidSignature(f"Signature {index} does not verify for digest {digest_hex}")
    return der + bytes([hash_type])
