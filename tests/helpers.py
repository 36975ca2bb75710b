"""
Test doubles shared across the test modules.

FakeChainBackend lists outputs the way an address index of confirmed
outputs would, so outputs spent by a broadcast transaction keep being
listed until a test removes them.
"""

from __future__ import annotations

import hashlib

from coincurve import PrivateKey

from zinscribe.backends.base import ChainBackend, TaintOracle
from zinscribe.errors import BroadcastRejected
from zinscribe.models import UnspentOutput
from zinscribe.transaction import ZcashTransaction

NU5_BRANCH_ID = 0xC2D6D0B4


def fake_txid(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


def sign_digest(key: PrivateKey, digest_hex: str) -> str:
    """Raw 64-byte r||s over a precomputed digest, as an external signer returns it."""
    return key.sign_recoverable(bytes.fromhex(digest_hex), hasher=None)[:64].hex()


class FakeChainBackend(ChainBackend, TaintOracle):
    def __init__(self, branch_id: int = NU5_BRANCH_ID) -> None:
        self.utxos: dict[str, list[UnspentOutput]] = {}
        self.tainted: set[str] = set()
        self.branch_id = branch_id
        self.broadcasts: list[ZcashTransaction] = []
        self.spent: set[str] = set()
        self.rejections: list[str] = []
        self.taint_checks: list[str] = []

    def add_utxo(self, address: str, value: int, label: str | None = None, vout: int = 0) -> str:
        bucket = self.utxos.setdefault(address, [])
        txid = fake_txid(label or f"{address}-{len(bucket)}")
        utxo = UnspentOutput(txid=txid, vout=vout, value=value)
        bucket.append(utxo)
        return utxo.outpoint

    async def list_unspent(self, address: str) -> list[UnspentOutput]:
        return [u.model_copy() for u in self.utxos.get(address, [])]

    async def get_consensus_branch_id(self) -> int:
        return self.branch_id

    async def is_tainted(self, txid: str, vout: int) -> bool:
        self.taint_checks.append(f"{txid}:{vout}")
        return f"{txid}:{vout}" in self.tainted

    async def broadcast(self, raw_hex: str) -> str:
        if self.rejections:
            raise BroadcastRejected(self.rejections.pop(0))
        tx = ZcashTransaction.parse(raw_hex)
        if any(b.txid == tx.txid for b in self.broadcasts):
            raise BroadcastRejected("txn-already-known")
        for inp in tx.inputs:
            if inp.outpoint in self.spent:
                raise BroadcastRejected("bad-txns-inputs-missingorspent")
        self.spent.update(inp.outpoint for inp in tx.inputs)
        self.broadcasts.append(tx)
        return tx.txid
