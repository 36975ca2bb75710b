"""
Persistent records for the inscription engine.

Every record round-trips through ``model_dump(mode="json")`` so it can be
stored as a plain document by the persistence collaborator.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from zinscribe.constants import DEFAULT_FEE, DEFAULT_INSCRIPTION_AMOUNT
from zinscribe.content import InscriptionContent


def new_id() -> str:
    return uuid.uuid4().hex


def outpoint_id(txid: str, vout: int) -> str:
    return f"{txid}:{vout}"


class UnspentOutput(BaseModel):
    txid: str = Field(..., min_length=64, max_length=64)
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    script: str = ""
    height: int | None = None
    tainted: bool = False

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        bytes.fromhex(v)
        return v.lower()

    @property
    def outpoint(self) -> str:
        return outpoint_id(self.txid, self.vout)


class Lease(BaseModel):
    output_id: str
    holder_id: str
    expires_at: float
    consumed: bool = False

    def is_active(self, now: float) -> bool:
        return self.expires_at > now


class ContextPhase(str, Enum):
    BUILDING = "building"
    AWAITING_COMMIT_SIGNATURE = "awaiting_commit_signature"
    BROADCASTING_COMMIT = "broadcasting_commit"
    AWAITING_REVEAL_SIGNATURE = "awaiting_reveal_signature"
    BROADCASTING_REVEAL = "broadcasting_reveal"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (ContextPhase.DONE, ContextPhase.ABORTED)


class InscriptionAmounts(BaseModel):
    """Amounts for one commit/reveal cycle, in zatoshis."""

    inscription_amount: int = Field(default=DEFAULT_INSCRIPTION_AMOUNT, gt=0)
    fee: int = Field(default=DEFAULT_FEE, ge=0)
    platform_fee: int = Field(default=0, ge=0)
    treasury_address: str | None = None

    @field_validator("fee")
    @classmethod
    def fee_below_amount(cls, v: int, info) -> int:
        amount = info.data.get("inscription_amount")
        if amount is not None and v >= amount:
            raise ValueError("fee must be smaller than inscription_amount")
        return v


class SigningRequest(BaseModel):
    """Digests handed to the external signer, one per input in input order."""

    context_id: str
    phase: ContextPhase
    digests: list[str]
    public_key: str


class TransactionContext(BaseModel):
    context_id: str = Field(default_factory=new_id)
    phase: ContextPhase = ContextPhase.BUILDING
    address: str
    public_key: str
    content: InscriptionContent | None = None
    amounts: InscriptionAmounts = Field(default_factory=InscriptionAmounts)
    consensus_branch_id: int = 0
    inputs: list[UnspentOutput] = Field(default_factory=list)
    redeem_script: str = ""
    funding_script: str = ""
    envelope_script: str = ""
    commit_tx: str = ""
    commit_digests: list[str] = Field(default_factory=list)
    commit_txid: str | None = None
    reveal_tx: str = ""
    reveal_digests: list[str] = Field(default_factory=list)
    reveal_txid: str | None = None
    inscription_id: str | None = None
    error: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def input_ids(self) -> list[str]:
        return [utxo.outpoint for utxo in self.inputs]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchJob(BaseModel):
    job_id: str = Field(default_factory=new_id)
    type: str = "batch-mint"
    status: JobStatus = JobStatus.PENDING
    params: dict[str, Any] = Field(default_factory=dict)
    total_count: int = Field(..., gt=0)
    completed_count: int = Field(default=0, ge=0)
    produced_ids: list[str] = Field(default_factory=list)
    spent_outputs: list[str] = Field(default_factory=list)
    pending_context_id: str | None = None
    error: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def remaining(self) -> int:
        return max(0, self.total_count - self.completed_count)


class ListingStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TokenDescriptor(BaseModel):
    """The token-bearing output offered for sale."""

    ticker: str
    amount: str
    inscription_id: str | None = None
    txid: str
    vout: int = Field(..., ge=0)
    value: int = Field(..., gt=0)
    script: str = ""

    @property
    def outpoint(self) -> str:
        return outpoint_id(self.txid, self.vout)


class SwapListing(BaseModel):
    listing_id: str = Field(default_factory=new_id)
    partially_signed_tx: str
    seller_address: str
    seller_public_key: str
    price: int = Field(..., gt=0)
    token: TokenDescriptor
    consensus_branch_id: int
    status: ListingStatus = ListingStatus.ACTIVE
    txid: str | None = None
    buyer_address: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class PurchaseContext(BaseModel):
    purchase_id: str = Field(default_factory=new_id)
    listing_id: str
    buyer_address: str
    buyer_public_key: str
    inputs: list[UnspentOutput]
    fee: int
    change: int
    unsigned_tx: str
    digests: list[str]
    created_at: float = Field(default_factory=time.time)


class SplitContext(BaseModel):
    split_id: str = Field(default_factory=new_id)
    address: str
    public_key: str
    inputs: list[UnspentOutput]
    count: int = Field(..., gt=0)
    amount: int = Field(..., gt=0)
    fee: int = Field(..., ge=0)
    change: int = 0
    unsigned_tx: str
    digests: list[str]
    consensus_branch_id: int
    txid: str | None = None
    created_at: float = Field(default_factory=time.time)
