"""
Atomic token-for-payment swaps.

The seller signs a one-input, one-output half transaction under
``SIGHASH_SINGLE | SIGHASH_ANYONECANPAY``: the signature commits to the token
input and to the payment output at the same index, and to nothing else. A
buyer can then append funding inputs, a token output and change without
invalidating it, but cannot alter the price or the payee.

Layout of the completed trade::

    inputs:  [0] token (seller, 0x83)   [1..n] buyer funding (SIGHASH_ALL)
    outputs: [0] price -> seller        [1] token value -> buyer   [2] change
"""

from __future__ import annotations

import time

from loguru import logger
from pydantic import BaseModel, Field

from zinscribe.address import pubkey_matches_address, script_for_address
from zinscribe.backends.base import Broadcaster, ChainBackend, broadcast_transaction
from zinscribe.constants import DEFAULT_FEE, SIGHASH_ALL, SIGHASH_SINGLE_ANYONECANPAY
from zinscribe.errors import (
    BroadcastRejected,
    ContextNotFound,
    InvalidListing,
    InvalidSignature,
    SignatureCountMismatch,
    StaleContext,
)
from zinscribe.leases import LeaseManager
from zinscribe.models import ListingStatus, PurchaseContext, SwapListing, TokenDescriptor
from zinscribe.orchestrator import funding_prev_script
from zinscribe.selection import UtxoSelector
from zinscribe.sighash import signature_hash
from zinscribe.store import DocumentStore
from zinscribe.transaction import (
    TxInput,
    TxOutput,
    ZcashTransaction,
    checked_signature,
    p2pkh_script_sig,
    parse_p2pkh_script_sig,
    verify_der_signature,
)

LISTINGS = "listings"
PURCHASES = "purchases"


class SwapOffer(BaseModel):
    """Seller half awaiting the seller's signature."""

    token: TokenDescriptor
    seller_address: str
    seller_public_key: str
    price: int = Field(..., gt=0)
    consensus_branch_id: int
    unsigned_tx: str
    digest: str


def _token_prev_script(token: TokenDescriptor, seller_address: str) -> bytes:
    return bytes.fromhex(token.script) if token.script else script_for_address(seller_address)


def _seller_half(token: TokenDescriptor, seller_address: str, price: int) -> ZcashTransaction:
    return ZcashTransaction(
        inputs=[
            TxInput(
                txid=token.txid,
                vout=token.vout,
                value=token.value,
                prev_script=_token_prev_script(token, seller_address),
            )
        ],
        outputs=[TxOutput(price, script_for_address(seller_address))],
    )


class SwapAssembler:
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

    # Seller side

    async def create_offer(
        self,
        token: TokenDescriptor,
        seller_address: str,
        seller_public_key: str,
        price: int,
        consensus_branch_id: int | None = None,
    ) -> SwapOffer:
        """Build the seller half and the digest the seller must sign with mode 0x83."""
        if not pubkey_matches_address(bytes.fromhex(seller_public_key), seller_address):
            raise ValueError(f"Public key does not match address {seller_address}")
        if consensus_branch_id is None:
            consensus_branch_id = await self.backend.get_consensus_branch_id()

        tx = _seller_half(token, seller_address, price)
        digest = signature_hash(
            tx,
            0,
            tx.inputs[0].prev_script,
            token.value,
            consensus_branch_id,
            SIGHASH_SINGLE_ANYONECANPAY,
        )
        return SwapOffer(
            token=token,
            seller_address=seller_address,
            seller_public_key=seller_public_key,
            price=price,
            consensus_branch_id=consensus_branch_id,
            unsigned_tx=tx.to_hex(),
            digest=digest.hex(),
        )

    def publish_offer(self, offer: SwapOffer, signature: str) -> SwapListing:
        """Attach the seller's signature and store an active listing."""
        pubkey = bytes.fromhex(offer.seller_public_key)
        try:
            signed = checked_signature(
                signature, offer.digest, pubkey, 0, SIGHASH_SINGLE_ANYONECANPAY
            )
        except InvalidSignature as e:
            raise InvalidListing(f"Seller signature rejected: {e}") from e

        tx = ZcashTransaction.parse(offer.unsigned_tx)
        tx.inputs[0].script_sig = p2pkh_script_sig(signed, pubkey)
        listing = SwapListing(
            partially_signed_tx=tx.to_hex(),
            seller_address=offer.seller_address,
            seller_public_key=offer.seller_public_key,
            price=offer.price,
            token=offer.token,
            consensus_branch_id=offer.consensus_branch_id,
        )
        self.store.create(LISTINGS, listing.listing_id, listing.model_dump(mode="json"))
        logger.info(
            f"Listing {listing.listing_id}: {offer.token.amount} {offer.token.ticker} "
            f"for {offer.price} zats"
        )
        return listing

    def get_listing(self, listing_id: str) -> SwapListing:
        doc = self.store.get(LISTINGS, listing_id)
        if doc is None:
            raise ContextNotFound("Listing", listing_id)
        return SwapListing.model_validate(doc)

    def list_listings(self, ticker: str | None = None) -> list[SwapListing]:
        docs = self.store.list(
            LISTINGS,
            lambda d: d["status"] == ListingStatus.ACTIVE.value
            and (ticker is None or d["token"]["ticker"] == ticker),
        )
        listings = [SwapListing.model_validate(d) for d in docs]
        return sorted(listings, key=lambda item: item.created_at, reverse=True)

    def _close_listing(
        self,
        listing_id: str,
        status: ListingStatus,
        txid: str | None = None,
        buyer_address: str | None = None,
    ) -> SwapListing:
        with self.store.transaction():
            listing = self.get_listing(listing_id)
            if listing.status != ListingStatus.ACTIVE:
                raise InvalidListing(f"Listing {listing_id} is {listing.status.value}")
            listing.status = status
            listing.txid = txid
            listing.buyer_address = buyer_address
            listing.updated_at = time.time()
            self.store.put(LISTINGS, listing_id, listing.model_dump(mode="json"))
        return listing

    def cancel_listing(self, listing_id: str) -> SwapListing:
        listing = self._close_listing(listing_id, ListingStatus.CANCELLED)
        logger.info(f"Listing {listing_id} cancelled")
        return listing

    # Buyer side

    def validate_seller_half(self, listing: SwapListing) -> ZcashTransaction:
        """
        Check the stored half before anyone builds on it.

        The hash type must be exactly ``SIGHASH_SINGLE | SIGHASH_ANYONECANPAY``
        and the signature must verify for the token input paired with the
        payment output, so the buyer cannot be handed a half whose price or
        payee differs from the listing.

        Raises:
            InvalidListing: On any mismatch
        """
        try:
            tx = ZcashTransaction.parse(listing.partially_signed_tx)
        except ValueError as e:
            raise InvalidListing(f"Malformed seller half: {e}") from e
        if len(tx.inputs) != 1 or len(tx.outputs) != 1:
            raise InvalidListing("Seller half must have exactly one input and one output")

        seller_in, payment = tx.inputs[0], tx.outputs[0]
        if seller_in.outpoint != listing.token.outpoint:
            raise InvalidListing("Seller input does not spend the listed token output")
        if payment.value != listing.price:
            raise InvalidListing(f"Payment output is {payment.value}, listing says {listing.price}")
        if payment.script != script_for_address(listing.seller_address):
            raise InvalidListing("Payment output does not pay the seller")

        try:
            signature, pubkey = parse_p2pkh_script_sig(seller_in.script_sig)
        except ValueError as e:
            raise InvalidListing(f"Seller input is not signed: {e}") from e
        if pubkey.hex() != listing.seller_public_key.lower():
            raise InvalidListing("Seller input is signed by another key")
        if signature[-1] != SIGHASH_SINGLE_ANYONECANPAY:
            raise InvalidListing(
                f"Seller signed with hash type {signature[-1]:#04x}, "
                f"expected {SIGHASH_SINGLE_ANYONECANPAY:#04x}"
            )

        seller_in.value = listing.token.value
        seller_in.prev_script = _token_prev_script(listing.token, listing.seller_address)
        digest = signature_hash(
            tx,
            0,
            seller_in.prev_script,
            seller_in.value,
            listing.consensus_branch_id,
            SIGHASH_SINGLE_ANYONECANPAY,
        )
        if not verify_der_signature(signature[:-1], digest, pubkey):
            raise InvalidListing("Seller signature does not verify")
        return tx

    async def prepare_purchase(
        self,
        listing_id: str,
        buyer_address: str,
        buyer_public_key: str,
        fee: int = DEFAULT_FEE,
    ) -> PurchaseContext:
        """
        Extend the seller half with the buyer's funding and outputs.

        Returns the purchase with ``SIGHASH_ALL`` digests for the buyer inputs
        only, in input order starting at index 1.

        Raises:
            InvalidListing: If the listing is inactive or its half is unusable
            InsufficientFunds: Before anything is signed, if the buyer is short
        """
        listing = self.get_listing(listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise InvalidListing(f"Listing {listing_id} is {listing.status.value}")
        if not pubkey_matches_address(bytes.fromhex(buyer_public_key), buyer_address):
            raise ValueError(f"Public key does not match address {buyer_address}")
        tx = self.validate_seller_half(listing)

        purchase = PurchaseContext(
            listing_id=listing_id,
            buyer_address=buyer_address,
            buyer_public_key=buyer_public_key,
            inputs=[],
            fee=fee,
            change=0,
            unsigned_tx="",
            digests=[],
        )
        funding = await self.selector.select_and_lease(
            buyer_address,
            listing.price + fee,
            purchase.purchase_id,
            accumulate=True,
            exclude=[listing.token.outpoint],
            ttl=self.lease_ttl,
        )
        change = sum(u.value for u in funding) - listing.price - fee

        buyer_script = script_for_address(buyer_address)
        for utxo in funding:
            tx.inputs.append(
                TxInput(utxo.txid, utxo.vout, utxo.value, funding_prev_script(utxo, buyer_address))
            )
        tx.outputs.append(TxOutput(listing.token.value, buyer_script))
        if change > 0:
            tx.outputs.append(TxOutput(change, buyer_script))

        digests = [
            signature_hash(
                tx,
                i,
                tx.inputs[i].prev_script,
                tx.inputs[i].value,
                listing.consensus_branch_id,
                SIGHASH_ALL,
            ).hex()
            for i in range(1, len(tx.inputs))
        ]

        purchase.inputs = funding
        purchase.change = change
        purchase.unsigned_tx = tx.to_hex()
        purchase.digests = digests
        self.store.put(PURCHASES, purchase.purchase_id, purchase.model_dump(mode="json"))
        logger.info(
            f"Purchase {purchase.purchase_id} of listing {listing_id}: "
            f"{len(funding)} buyer input(s), change {change}"
        )
        return purchase

    def get_purchase(self, purchase_id: str) -> PurchaseContext:
        doc = self.store.get(PURCHASES, purchase_id)
        if doc is None:
            raise ContextNotFound("Purchase", purchase_id)
        return PurchaseContext.model_validate(doc)

    async def complete_purchase(self, purchase_id: str, signatures: list[str]) -> str:
        """Sign the buyer inputs, broadcast the trade and close the listing."""
        purchase = self.get_purchase(purchase_id)
        if len(signatures) != len(purchase.digests):
            raise SignatureCountMismatch(len(purchase.digests), len(signatures))
        listing = self.get_listing(purchase.listing_id)
        input_ids = [u.outpoint for u in purchase.inputs]
        if listing.status != ListingStatus.ACTIVE:
            self.leases.release(input_ids, purchase_id)
            raise InvalidListing(f"Listing {listing.listing_id} is {listing.status.value}")
        if not self.leases.holds_all(input_ids, purchase_id):
            raise StaleContext(purchase_id, "buyer inputs are no longer leased")

        pubkey = bytes.fromhex(purchase.buyer_public_key)
        tx = ZcashTransaction.parse(purchase.unsigned_tx)
        for n, sig in enumerate(signatures):
            signed = checked_signature(sig, purchase.digests[n], pubkey, n + 1)
            tx.inputs[n + 1].script_sig = p2pkh_script_sig(signed, pubkey)

        try:
            await broadcast_transaction(self.broadcaster, tx.to_hex(), tx.txid)
        except BroadcastRejected:
            self.leases.release(input_ids, purchase_id)
            raise
        self.leases.consume(input_ids, purchase_id)

        txid = tx.txid
        self._close_listing(
            listing.listing_id,
            ListingStatus.COMPLETED,
            txid=txid,
            buyer_address=purchase.buyer_address,
        )
        logger.info(f"Listing {listing.listing_id} sold to {purchase.buyer_address} in {txid}")
        return txid
