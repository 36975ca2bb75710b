"""
Commit/reveal orchestration.

Drives one inscription through a persisted state machine::

    building -> awaiting_commit_signature -> broadcasting_commit
             -> awaiting_reveal_signature -> broadcasting_reveal -> done

``aborted`` is reachable from every non-terminal phase. The engine never
holds a private key: each signing phase hands the caller one digest per
input and resumes when the signatures come back, possibly in another
process, since every transition is written to the document store first.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from zinscribe.address import pubkey_matches_address, script_for_address
from zinscribe.backends.base import Broadcaster, ChainBackend, broadcast_transaction
from zinscribe.constants import (
    DEFAULT_COMMIT_PROPAGATION_DELAY,
    DEFAULT_CONTEXT_TIMEOUT,
    DUST_THRESHOLD,
    SEQUENCE_RBF,
    SIGHASH_ALL,
)
from zinscribe.content import ContentModel
from zinscribe.errors import (
    BroadcastRejected,
    ContextNotFound,
    InvalidPhase,
    SignatureCountMismatch,
    StaleContext,
    ZinscribeError,
)
from zinscribe.leases import LeaseManager
from zinscribe.models import (
    ContextPhase,
    InscriptionAmounts,
    SigningRequest,
    TransactionContext,
    UnspentOutput,
)
from zinscribe.script import FinalizedInscription, InscriptionBuilder
from zinscribe.selection import UtxoSelector
from zinscribe.sighash import input_digests, signature_hash
from zinscribe.store import DocumentStore
from zinscribe.transaction import (
    TxInput,
    TxOutput,
    ZcashTransaction,
    checked_signature,
    p2pkh_script_sig,
    reveal_script_sig,
)

CONTEXTS = "contexts"

Signer = Callable[[SigningRequest], Awaitable[list[str]]]
"""Signing boundary: hex digests in, hex raw 64-byte signatures out, same order."""


def funding_prev_script(utxo: UnspentOutput, address: str) -> bytes:
    return bytes.fromhex(utxo.script) if utxo.script else script_for_address(address)


def build_commit_transaction(
    funding: list[UnspentOutput],
    inscription: FinalizedInscription,
    amounts: InscriptionAmounts,
    address: str,
) -> ZcashTransaction:
    """
    Commit: spend the funding outputs into ``P2SH(reveal script)``.

    Output order is fixed: inscription output at index 0 (the reveal spends
    ``commit_txid:0``), the optional platform fee, then change if it clears
    the dust threshold.
    """
    total_in = sum(u.value for u in funding)
    change = total_in - amounts.inscription_amount - amounts.fee - amounts.platform_fee

    outputs = [TxOutput(amounts.inscription_amount, inscription.funding_script)]
    if amounts.platform_fee > 0:
        if not amounts.treasury_address:
            raise ValueError("Platform fee enabled but no treasury address configured")
        outputs.append(TxOutput(amounts.platform_fee, script_for_address(amounts.treasury_address)))
    if change > DUST_THRESHOLD:
        outputs.append(TxOutput(change, script_for_address(address)))

    inputs = [
        TxInput(
            txid=u.txid,
            vout=u.vout,
            value=u.value,
            prev_script=funding_prev_script(u, address),
            sequence=SEQUENCE_RBF,
        )
        for u in funding
    ]
    return ZcashTransaction(inputs=inputs, outputs=outputs)


def build_reveal_transaction(
    commit_txid: str, redeem_script: bytes, amounts: InscriptionAmounts, address: str
) -> ZcashTransaction:
    """Reveal: spend ``commit_txid:0`` back to the owner, minus the fee."""
    return ZcashTransaction(
        inputs=[
            TxInput(
                txid=commit_txid,
                vout=0,
                value=amounts.inscription_amount,
                prev_script=redeem_script,
                sequence=SEQUENCE_RBF,
            )
        ],
        outputs=[
            TxOutput(amounts.inscription_amount - amounts.fee, script_for_address(address))
        ],
    )


class InscriptionOrchestrator:
    """
    Persisted commit/reveal state machine.

    The funding leases are held under the context id, so aborting or reaping
    a context releases exactly the outputs it reserved.
    """

    def __init__(
        self,
        store: DocumentStore,
        backend: ChainBackend,
        selector: UtxoSelector,
        leases: LeaseManager,
        broadcaster: Broadcaster | None = None,
        propagation_delay: float = DEFAULT_COMMIT_PROPAGATION_DELAY,
        context_timeout: float = DEFAULT_CONTEXT_TIMEOUT,
        lease_ttl: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.backend = backend
        self.selector = selector
        self.leases = leases
        self.broadcaster = broadcaster or backend
        self.propagation_delay = propagation_delay
        self.context_timeout = context_timeout
        self.lease_ttl = lease_ttl if lease_ttl is not None else context_timeout
        self.clock = clock
        self.sleep = sleep

    def _save(self, ctx: TransactionContext) -> None:
        ctx.updated_at = self.clock()
        self.store.put(CONTEXTS, ctx.context_id, ctx.model_dump(mode="json"))

    def get(self, context_id: str) -> TransactionContext:
        doc = self.store.get(CONTEXTS, context_id)
        if doc is None:
            raise ContextNotFound("Context", context_id)
        return TransactionContext.model_validate(doc)

    def list_contexts(self, phase: ContextPhase | None = None) -> list[TransactionContext]:
        docs = self.store.list(
            CONTEXTS, None if phase is None else (lambda d: d["phase"] == phase.value)
        )
        return [TransactionContext.model_validate(d) for d in docs]

    def _load_in_phase(self, context_id: str, phase: ContextPhase) -> TransactionContext:
        ctx = self.get(context_id)
        if ctx.phase != phase:
            raise InvalidPhase(context_id, ctx.phase.value, phase.value)
        # a broadcast commit never times out: only its reveal can recover the output
        if ctx.commit_txid is None and self.clock() - ctx.updated_at > self.context_timeout:
            self._abort(ctx, "context timed out")
            raise StaleContext(context_id, "timed out waiting for signatures")
        return ctx

    def _abort(self, ctx: TransactionContext, reason: str) -> TransactionContext:
        ctx.phase = ContextPhase.ABORTED
        ctx.error = reason
        self._save(ctx)
        released = self.leases.release_holder(ctx.context_id)
        logger.warning(f"Context {ctx.context_id} aborted: {reason} ({released} lease(s) released)")
        return ctx

    async def begin(
        self,
        address: str,
        public_key: str,
        content: ContentModel,
        amounts: InscriptionAmounts | None = None,
        exclude: Iterable[str] = (),
    ) -> SigningRequest:
        """
        Build an unsigned commit and return its per-input digests.

        Raises:
            ValueError: If the public key does not own ``address``
            ContentTooLarge: Before any output is selected
            InsufficientFunds, TaintedOutputOnly, LeaseConflict: From selection
        """
        amounts = amounts or InscriptionAmounts()
        pubkey = bytes.fromhex(public_key)
        if not pubkey_matches_address(pubkey, address):
            raise ValueError(f"Public key does not match address {address}")

        provisional = InscriptionBuilder.from_content(content).provisional()
        branch_id = await self.backend.get_consensus_branch_id()

        ctx = TransactionContext(
            address=address,
            public_key=public_key,
            content=content,
            amounts=amounts,
            consensus_branch_id=branch_id,
            created_at=self.clock(),
        )
        self._save(ctx)

        required = amounts.inscription_amount + amounts.fee + amounts.platform_fee
        try:
            funding = await self.selector.select_and_lease(
                address, required, ctx.context_id, exclude=exclude, ttl=self.lease_ttl
            )
        except ZinscribeError as e:
            self._abort(ctx, str(e))
            raise

        inscription = provisional.finalize(pubkey)
        commit = build_commit_transaction(funding, inscription, amounts, address)
        digests = input_digests(commit, branch_id, SIGHASH_ALL)

        ctx.inputs = funding
        ctx.redeem_script = inscription.reveal_script.hex()
        ctx.funding_script = inscription.funding_script.hex()
        ctx.envelope_script = inscription.envelope_script.hex()
        ctx.commit_tx = commit.to_hex()
        ctx.commit_digests = [d.hex() for d in digests]
        ctx.phase = ContextPhase.AWAITING_COMMIT_SIGNATURE
        self._save(ctx)

        logger.info(
            f"Context {ctx.context_id}: commit built with {len(funding)} input(s), "
            f"{len(inscription.chunks)} envelope chunk(s), {len(inscription.payload)} byte payload"
        )
        return SigningRequest(
            context_id=ctx.context_id,
            phase=ctx.phase,
            digests=ctx.commit_digests,
            public_key=public_key,
        )

    async def submit_commit_signatures(
        self, context_id: str, signatures: list[str]
    ) -> SigningRequest:
        """
        Finalize and broadcast the commit, then build the reveal.

        Returns the reveal's signing request after the propagation delay.

        Raises:
            SignatureCountMismatch: Wrong number of signatures (context unchanged)
            StaleContext: Context timed out or lost its leases
            BroadcastRejected: Commit refused; the context is aborted
        """
        ctx = self._load_in_phase(context_id, ContextPhase.AWAITING_COMMIT_SIGNATURE)
        if len(signatures) != len(ctx.commit_digests):
            raise SignatureCountMismatch(len(ctx.commit_digests), len(signatures))
        if not self.leases.holds_all(ctx.input_ids, ctx.context_id):
            self._abort(ctx, "funding lease expired")
            raise StaleContext(context_id, "funding lease expired or was taken over")

        pubkey = bytes.fromhex(ctx.public_key)
        commit = ZcashTransaction.parse(ctx.commit_tx)
        for i, (inp, sig) in enumerate(zip(commit.inputs, signatures, strict=True)):
            signature = checked_signature(sig, ctx.commit_digests[i], pubkey, i)
            inp.script_sig = p2pkh_script_sig(signature, pubkey)

        ctx.phase = ContextPhase.BROADCASTING_COMMIT
        self._save(ctx)
        try:
            broadcast_txid = await broadcast_transaction(
                self.broadcaster, commit.to_hex(), commit.txid
            )
        except BroadcastRejected as e:
            self._abort(ctx, f"commit rejected: {e.reason}")
            raise

        commit_txid = commit.txid
        if broadcast_txid != commit_txid:
            logger.warning(f"Provider reported txid {broadcast_txid}, computed {commit_txid}")
        self.leases.consume(ctx.input_ids, ctx.context_id)
        ctx.commit_txid = commit_txid
        self._save(ctx)
        logger.info(f"Context {context_id}: commit {commit_txid} broadcast")

        await self.sleep(self.propagation_delay)

        redeem = bytes.fromhex(ctx.redeem_script)
        reveal = build_reveal_transaction(commit_txid, redeem, ctx.amounts, ctx.address)
        digest = signature_hash(
            reveal, 0, redeem, ctx.amounts.inscription_amount, ctx.consensus_branch_id
        )
        ctx.reveal_tx = reveal.to_hex()
        ctx.reveal_digests = [digest.hex()]
        ctx.phase = ContextPhase.AWAITING_REVEAL_SIGNATURE
        self._save(ctx)
        return SigningRequest(
            context_id=ctx.context_id,
            phase=ctx.phase,
            digests=ctx.reveal_digests,
            public_key=ctx.public_key,
        )

    async def submit_reveal_signatures(self, context_id: str, signatures: list[str]) -> str:
        """
        Finalize and broadcast the reveal, returning the inscription id.

        A rejected reveal leaves the context awaiting a reveal signature with
        the reason recorded; the commit stays broadcast and the caller may
        retry the reveal alone.
        """
        ctx = self._load_in_phase(context_id, ContextPhase.AWAITING_REVEAL_SIGNATURE)
        if len(signatures) != 1:
            raise SignatureCountMismatch(1, len(signatures))

        reveal = ZcashTransaction.parse(ctx.reveal_tx)
        reveal.inputs[0].script_sig = reveal_script_sig(
            bytes.fromhex(ctx.envelope_script),
            checked_signature(
                signatures[0], ctx.reveal_digests[0], bytes.fromhex(ctx.public_key), 0
            ),
            bytes.fromhex(ctx.redeem_script),
        )

        ctx.phase = ContextPhase.BROADCASTING_REVEAL
        ctx.error = None
        self._save(ctx)
        try:
            await broadcast_transaction(self.broadcaster, reveal.to_hex(), reveal.txid)
        except BroadcastRejected as e:
            ctx.phase = ContextPhase.AWAITING_REVEAL_SIGNATURE
            ctx.error = f"reveal rejected: {e.reason}"
            self._save(ctx)
            logger.warning(f"Context {context_id}: reveal rejected ({e.reason}), commit kept")
            raise

        ctx.reveal_txid = reveal.txid
        ctx.inscription_id = f"{ctx.reveal_txid}i0"
        ctx.phase = ContextPhase.DONE
        self._save(ctx)
        logger.info(f"Context {context_id}: inscription {ctx.inscription_id}")
        return ctx.inscription_id

    def signing_request(self, context_id: str) -> SigningRequest:
        """Re-issue the outstanding signing request of a context awaiting signatures."""
        ctx = self.get(context_id)
        if ctx.phase == ContextPhase.AWAITING_COMMIT_SIGNATURE:
            digests = ctx.commit_digests
        elif ctx.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE:
            digests = ctx.reveal_digests
        else:
            raise InvalidPhase(context_id, ctx.phase.value, "awaiting signatures")
        return SigningRequest(
            context_id=context_id, phase=ctx.phase, digests=digests, public_key=ctx.public_key
        )

    def abort(self, context_id: str, reason: str = "aborted by caller") -> TransactionContext:
        """Abort a non-terminal context and release its leases.

        Terminal contexts are returned unchanged.
        """
        ctx = self.get(context_id)
        if ctx.phase.is_terminal:
            return ctx
        return self._abort(ctx, reason)

    def reap_expired(self, now: float | None = None) -> list[str]:
        """
        Abort every non-terminal context idle for longer than the context timeout.

        Contexts whose commit is already broadcast are left alone: they hold no
        live leases, and the inscription output can still be revealed.
        """
        now = self.clock() if now is None else now
        reaped = []
        for ctx in self.list_contexts():
            if ctx.phase.is_terminal or ctx.commit_txid is not None:
                continue
            if now - ctx.updated_at <= self.context_timeout:
                continue
            self._abort(ctx, "context timed out")
            reaped.append(ctx.context_id)
        if reaped:
            logger.info(f"Reaped {len(reaped)} abandoned context(s)")
        return reaped

    async def mint(
        self,
        address: str,
        public_key: str,
        content: ContentModel,
        signer: Signer,
        amounts: InscriptionAmounts | None = None,
        exclude: Iterable[str] = (),
        on_begin: Callable[[str], None] | None = None,
    ) -> TransactionContext:
        """
        Run a full commit/reveal cycle with ``signer`` answering both requests.

        A failure before the commit is broadcast aborts the context; after it,
        the context is left for a reveal retry. ``on_begin`` receives the new
        context id as soon as it exists.
        """
        request = await self.begin(address, public_key, content, amounts, exclude)
        if on_begin is not None:
            on_begin(request.context_id)
        try:
            reveal_request = await self.submit_commit_signatures(
                request.context_id, await signer(request)
            )
        except Exception as e:
            ctx = self.get(request.context_id)
            if not ctx.phase.is_terminal and ctx.commit_txid is None:
                self._abort(ctx, str(e))
            raise
        await self.submit_reveal_signatures(request.context_id, await signer(reveal_request))
        return self.get(request.context_id)
