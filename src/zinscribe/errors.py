"""
Exception hierarchy for the inscription engine.

Selection and encoding errors are raised synchronously to the caller.
Broadcast errors abort the current phase; batch errors are recorded on the
job rather than raised.
"""

from __future__ import annotations

from collections.abc import Iterable


class ZinscribeError(Exception):
    """Base class for all engine errors."""


class InsufficientFunds(ZinscribeError):
    def __init__(self, required: int, available: int, detail: str = ""):
        self.required = required
        self.available = available
        self.shortfall = max(0, required - available)
        message = (
            f"Insufficient funds: need {required} zats, have {available} zats "
            f"(short {self.shortfall})"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LeaseConflict(ZinscribeError):
    def __init__(self, output_ids: Iterable[str], holder_id: str | None = None):
        self.output_ids = list(output_ids)
        self.holder_id = holder_id
        owner = f" held by {holder_id}" if holder_id else ""
        super().__init__(f"Outputs already leased{owner}: {', '.join(self.output_ids)}")


class TaintedOutputOnly(ZinscribeError):
    """Every candidate output carries an inscription and cannot fund a transaction."""

    def __init__(self, output_ids: Iterable[str]):
        self.output_ids = list(output_ids)
        super().__init__(
            f"Only inscribed outputs are available ({len(self.output_ids)}); "
            "refusing to spend them as fees"
        )


class ContentTooLarge(ZinscribeError):
    def __init__(self, size: int, limit: int, what: str = "reveal transaction"):
        self.size = size
        self.limit = limit
        super().__init__(f"Content too large: {what} is {size}, limit {limit}")


class InvalidContent(ZinscribeError):
    """Inscription content failed validation."""


class BroadcastRejected(ZinscribeError):
    """The broadcast collaborator refused a transaction."""

    def __init__(self, reason: str, txid: str | None = None):
        self.reason = reason
        self.txid = txid
        super().__init__(f"Broadcast rejected: {reason}")

    @property
    def category(self) -> str:
        """Coarse classification of the provider's reason string."""
        lowered = self.reason.lower()
        if "scriptsig-not-pushonly" in lowered:
            return "invalid_script"
        if "insufficient fee" in lowered or "unpaid action" in lowered:
            return "fee_too_low"
        if "missing inputs" in lowered or "missingorspent" in lowered:
            return "inputs_unavailable"
        if "already in block chain" in lowered or "txn-already-" in lowered:
            return "already_broadcast"
        return "rejected"


class StaleContext(ZinscribeError):
    def __init__(self, context_id: str, reason: str):
        self.context_id = context_id
        self.reason = reason
        super().__init__(f"Context {context_id} is stale: {reason}")


class SignatureCountMismatch(ZinscribeError):
    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(f"Expected {expected} signature(s), received {received}")


class InvalidSignature(ZinscribeError):
    """A signature is malformed or does not verify."""


class InvalidPhase(ZinscribeError):
    def __init__(self, context_id: str, phase: str, expected: str):
        self.context_id = context_id
        self.phase = phase
        super().__init__(f"Context {context_id} is in phase {phase}, expected {expected}")


class ContextNotFound(ZinscribeError):
    def __init__(self, kind: str, record_id: str):
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class InvalidListing(ZinscribeError):
    """A swap listing is malformed, inactive, or its seller half is unusable."""


class SighashError(ZinscribeError):
    """Programming error while computing a signature hash."""


class BackendError(ZinscribeError):
    """A chain or indexer collaborator failed after retries."""


class GatewayAuthError(ZinscribeError):
    """Gateway request authentication failed."""

    def __init__(self, message: str, status: int = 401):
        self.status = status
        super().__init__(message)
