"""
UTXO splitting.

Batch minting funds every unit from its own output. Splitting one large
output into many equal ones up front lets a batch run without waiting for
each commit's change to confirm.
"""

from __future__ import annotations

from loguru import logger

from zinscribe.address import pubkey_matches_address, script_for_address
from zinscribe.backends.base import Broadcaster, ChainBackend, broadcast_transaction
from zinscribe.constants import DEFAULT_FEE, DUST_THRESHOLD, SIGHASH_ALL
from zinscribe.errors import (
    BroadcastRejected,
    ContextNotFound,
    SignatureCountMismatch,
    StaleContext,
)
from zinscribe.leases import LeaseManager
from zinscribe.models import SplitContext
from zinscribe.orchestrator import funding_prev_script
from zinscribe.selection import UtxoSelector
from zinscribe.sighash import input_digests
from zinscribe.store import DocumentStore
from zinscribe.transaction import (
    TxInput,
    TxOutput,
    ZcashTransaction,
    checked_signature,
    p2pkh_script_sig,
)

SPLITS = "splits"
MAX_SPLIT_OUTPUTS = 500


class SplitBuilder:
    def __init__(
        self,
        store: DocumentStore,
        backend: ChainBackend,
        selector: UtxoSelector,
        leases: LeaseManager,
        broadcaster: Broadcaster | None = None,
        lease_ttl: float | None = None,
    ):
        self.store = store
        self.backend = backend
        self.selector = selector
        self.leases = leases
        self.broadcaster = broadcaster or backend
        self.lease_ttl = lease_ttl

    def get(self, split_id: str) -> SplitContext:
        doc = self.store.get(SPLITS, split_id)
        if doc is None:
            raise ContextNotFound("Split", split_id)
        return SplitContext.model_validate(doc)

    async def build(
        self, address: str, public_key: str, count: int, amount: int, fee: int = DEFAULT_FEE
    ) -> SplitContext:
        """
        Build an unsigned split of ``count`` outputs of ``amount`` each.

        Inputs accumulate in listing order until they cover the outputs and the
        fee; change above the dust threshold returns to ``address``.

        Raises:
            ValueError: On a bad count, a dust amount or a key/address mismatch
            InsufficientFunds, TaintedOutputOnly: From selection
        """
        if not 0 < count <= MAX_SPLIT_OUTPUTS:
            raise ValueError(f"count must be between 1 and {MAX_SPLIT_OUTPUTS}")
        if amount <= DUST_THRESHOLD:
            raise ValueError(f"amount {amount} is at or below dust ({DUST_THRESHOLD})")
        if not pubkey_matches_address(bytes.fromhex(public_key), address):
            raise ValueError(f"Public key does not match address {address}")

        branch_id = await self.backend.get_consensus_branch_id()
        ctx = SplitContext(
            address=address,
            public_key=public_key,
            inputs=[],
            count=count,
            amount=amount,
            fee=fee,
            unsigned_tx="",
            digests=[],
            consensus_branch_id=branch_id,
        )
        required = count * amount + fee
        funding = await self.selector.select_and_lease(
            address, required, ctx.split_id, accumulate=True, ttl=self.lease_ttl
        )

        own_script = script_for_address(address)
        change = sum(u.value for u in funding) - required
        outputs = [TxOutput(amount, own_script) for _ in range(count)]
        if change > DUST_THRESHOLD:
            outputs.append(TxOutput(change, own_script))
        tx = ZcashTransaction(
            inputs=[
                TxInput(u.txid, u.vout, u.value, funding_prev_script(u, address)) for u in funding
            ],
            outputs=outputs,
        )

        ctx.inputs = funding
        ctx.change = change if change > DUST_THRESHOLD else 0
        ctx.unsigned_tx = tx.to_hex()
        ctx.digests = [d.hex() for d in input_digests(tx, branch_id, SIGHASH_ALL)]
        self.store.put(SPLITS, ctx.split_id, ctx.model_dump(mode="json"))
        logger.info(
            f"Split {ctx.split_id}: {len(funding)} input(s) -> {count} x {amount} zats"
            f" + {ctx.change} change"
        )
        return ctx

    async def finalize(self, split_id: str, signatures: list[str]) -> str:
        """
        Attach signatures and broadcast the split.

        A rejected broadcast releases the inputs so they can be selected again.
        """
        ctx = self.get(split_id)
        if ctx.txid is not None:
            return ctx.txid
        if len(signatures) != len(ctx.digests):
            raise SignatureCountMismatch(len(ctx.digests), len(signatures))
        input_ids = [u.outpoint for u in ctx.inputs]
        if not self.leases.holds_all(input_ids, split_id):
            raise StaleContext(split_id, "split inputs are no longer leased")

        pubkey = bytes.fromhex(ctx.public_key)
        tx = ZcashTransaction.parse(ctx.unsigned_tx)
        for i, (inp, sig) in enumerate(zip(tx.inputs, signatures, strict=True)):
            inp.script_sig = p2pkh_script_sig(
                checked_signature(sig, ctx.digests[i], pubkey, i), pubkey
            )

        try:
            await broadcast_transaction(self.broadcaster, tx.to_hex(), tx.txid)
        except BroadcastRejected:
            self.leases.release(input_ids, split_id)
            raise
        self.leases.consume(input_ids, split_id)

        ctx.txid = tx.txid
        self.store.put(SPLITS, split_id, ctx.model_dump(mode="json"))
        logger.info(f"Split {split_id} broadcast as {ctx.txid}")
        return ctx.txid
