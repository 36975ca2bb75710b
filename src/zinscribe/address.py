"""
Zcash transparent address utilities.

Transparent addresses are base58check with a two-byte version prefix:

- mainnet: ``t1`` (P2PKH, 0x1CB8), ``t3`` (P2SH, 0x1CBD)
- testnet/regtest: ``tm`` (P2PKH, 0x1D25), ``t2`` (P2SH, 0x1CBA)
"""

from __future__ import annotations

from enum import Enum

import base58

from zinscribe.script import hash160, p2pkh_script, p2sh_script


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"


P2PKH_PREFIXES: dict[NetworkType, bytes] = {
    NetworkType.MAINNET: bytes([0x1C, 0xB8]),
    NetworkType.TESTNET: bytes([0x1D, 0x25]),
    NetworkType.REGTEST: bytes([0x1D, 0x25]),
}

P2SH_PREFIXES: dict[NetworkType, bytes] = {
    NetworkType.MAINNET: bytes([0x1C, 0xBD]),
    NetworkType.TESTNET: bytes([0x1C, 0xBA]),
    NetworkType.REGTEST: bytes([0x1C, 0xBA]),
}


def decode_address(address: str) -> tuple[str, bytes]:
    """
    Decode a transparent address.

    Returns:
        ``("p2pkh" | "p2sh", 20-byte hash)``

    Raises:
        ValueError: On a bad checksum, length or version prefix
    """
    decoded = base58.b58decode_check(address)
    if len(decoded) != 22:
        raise ValueError(f"Invalid transparent address length: {address}")
    prefix, payload = decoded[:2], decoded[2:]
    if prefix in P2PKH_PREFIXES.values():
        return "p2pkh", payload
    if prefix in P2SH_PREFIXES.values():
        return "p2sh", payload
    raise ValueError(f"Unknown address prefix {prefix.hex()} for {address}")


def pubkey_hash_to_address(pubkey_hash: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    return base58.b58encode_check(P2PKH_PREFIXES[network] + pubkey_hash).decode("ascii")


def script_hash_to_address(script_hash: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    return base58.b58encode_check(P2SH_PREFIXES[network] + script_hash).decode("ascii")


def pubkey_to_address(pubkey: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    return pubkey_hash_to_address(hash160(pubkey), network)


def script_for_address(address: str) -> bytes:
    """Locking script paying to ``address``."""
    kind, payload = decode_address(address)
    if kind == "p2pkh":
        return p2pkh_script(payload)
    return p2sh_script(payload)


def pubkey_matches_address(pubkey: bytes, address: str) -> bool:
    try:
        kind, payload = decode_address(address)
    except ValueError:
        return False
    return kind == "p2pkh" and payload == hash160(pubkey)
