"""
Collaborator interfaces: chain access, broadcast and inscription taint.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from loguru import logger

from zinscribe.errors import BackendError, BroadcastRejected
from zinscribe.models import UnspentOutput


class Broadcaster(ABC):
    @abstractmethod
    async def broadcast(self, raw_hex: str) -> str:
        """Broadcast a raw transaction, returns its txid.

        Raises BroadcastRejected carrying the provider's reason string."""

    async def close(self) -> None:
        pass


class ChainBackend(Broadcaster):
    """
    Abstract chain backend.

    The engine trusts the backend for output existence and values; it does
    no consensus validation of its own.
    """

    @abstractmethod
    async def list_unspent(self, address: str) -> list[UnspentOutput]:
        """Unspent outputs paying to ``address``, in the provider's order"""

    @abstractmethod
    async def get_consensus_branch_id(self) -> int:
        """Branch id of the network upgrade the next block is built under"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


class TaintOracle(ABC):
    """Answers whether an output carries an inscription."""

    @abstractmethod
    async def is_tainted(self, txid: str, vout: int) -> bool:
        """True if spending the output as a fee would destroy an inscription"""

    async def close(self) -> None:
        pass


class FallbackBroadcaster(Broadcaster):
    """
    Broadcast through several providers in order.

    The first provider that accepts wins. A provider that rejects or cannot
    be reached passes the transaction on to the next one. An "already known"
    rejection ends the walk, since every later provider would say the same.
    If no provider accepts, the reasons are joined into one BroadcastRejected,
    or a BackendError when no provider could be reached at all.
    """

    def __init__(self, providers: list[Broadcaster]):
        if not providers:
            raise ValueError("At least one broadcast provider is required")
        self.providers = providers

    async def broadcast(self, raw_hex: str) -> str:
        reasons: list[str] = []
        rejected = False
        for provider in self.providers:
            name = type(provider).__name__
            try:
                txid = await provider.broadcast(raw_hex)
                logger.info(f"Broadcast via {name}: {txid}")
                return txid
            except BroadcastRejected as e:
                if e.category == "already_broadcast":
                    raise
                logger.warning(f"{name} rejected transaction: {e.reason}")
                reasons.append(f"{name}: {e.reason}")
                rejected = True
            except BackendError as e:
                logger.warning(f"{name} unreachable: {e}")
                reasons.append(f"{name}: {e}")
        if rejected:
            raise BroadcastRejected("; ".join(reasons))
        raise BackendError(f"No broadcast provider reachable: {'; '.join(reasons)}")


async def broadcast_transaction(broadcaster: Broadcaster, raw_hex: str, txid: str) -> str:
    """
    Broadcast ``raw_hex`` whose txid is ``txid``.

    An "already known" rejection counts as success: the raw bytes fix the
    txid, so the network already holds this very transaction. This happens
    when a retried request follows a first attempt the node did accept.
    """
    try:
        return await broadcaster.broadcast(raw_hex)
    except BroadcastRejected as e:
        if e.category != "already_broadcast" or (e.txid and e.txid != txid):
            raise
        logger.info(f"Transaction {txid} already known to the network")
        return txid
