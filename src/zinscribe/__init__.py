"""
zinscribe - Zcash transparent inscriptions and atomic swaps

Builds commit/reveal inscription transactions, coordinates external signing,
runs batch mints and assembles trustless token-for-payment swaps.
"""

__version__ = "0.1.0"

from zinscribe.content import (
    BinaryContent,
    InscriptionContent,
    JsonContent,
    NameContent,
    TextContent,
    Zrc20Content,
    parse_content,
)
from zinscribe.errors import (
    BroadcastRejected,
    ContentTooLarge,
    InsufficientFunds,
    LeaseConflict,
    SignatureCountMismatch,
    StaleContext,
    TaintedOutputOnly,
    ZinscribeError,
)
from zinscribe.jobs import BatchJobEngine
from zinscribe.leases import LeaseManager
from zinscribe.models import (
    BatchJob,
    ContextPhase,
    InscriptionAmounts,
    SigningRequest,
    SwapListing,
    TransactionContext,
    UnspentOutput,
)
from zinscribe.orchestrator import InscriptionOrchestrator, Signer
from zinscribe.selection import UtxoSelector
from zinscribe.split import SplitBuilder
from zinscribe.store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from zinscribe.swap import SwapAssembler

__all__ = [
    "BatchJob",
    "BatchJobEngine",
    "BinaryContent",
    "BroadcastRejected",
    "ContentTooLarge",
    "ContextPhase",
    "DocumentStore",
    "InMemoryDocumentStore",
    "InscriptionAmounts",
    "InscriptionContent",
    "InscriptionOrchestrator",
    "InsufficientFunds",
    "JsonContent",
    "JsonFileDocumentStore",
    "LeaseConflict",
    "LeaseManager",
    "NameContent",
    "SignatureCountMismatch",
    "Signer",
    "SigningRequest",
    "SplitBuilder",
    "StaleContext",
    "SwapAssembler",
    "SwapListing",
    "TaintedOutputOnly",
    "TextContent",
    "TransactionContext",
    "UnspentOutput",
    "UtxoSelector",
    "ZinscribeError",
    "Zrc20Content",
    "parse_content",
]
