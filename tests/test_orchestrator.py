"""
Tests for the commit/reveal state machine.
"""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from coincurve import PrivateKey

from tests.helpers import FakeChainBackend, sign_digest
from zinscribe.address import pubkey_to_address, script_for_address
from zinscribe.constants import DEFAULT_CONTEXT_TIMEOUT
from zinscribe.content import TextContent
from zinscribe.errors import (
    BroadcastRejected,
    ContentTooLarge,
    InsufficientFunds,
    InvalidPhase,
    InvalidSignature,
    SignatureCountMismatch,
    StaleContext,
)
from zinscribe.leases import LeaseManager
from zinscribe.models import ContextPhase, InscriptionAmounts
from zinscribe.orchestrator import InscriptionOrchestrator
from zinscribe.script import hash160, p2sh_script, parse_envelope, split_reveal_script_sig
from zinscribe.transaction import ZcashTransaction

HELLO = TextContent(text="hello")


class TestBegin:
    """Tests for building the unsigned commit."""

    @pytest.mark.asyncio
    async def test_exact_funding_has_no_change(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test 70000 zats funding a 60000 + 10000 commit yields a single output."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)

        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.AWAITING_COMMIT_SIGNATURE
        assert len(request.digests) == 1
        assert request.digests == ctx.commit_digests
        assert ctx.consensus_branch_id == backend.branch_id

        commit = ZcashTransaction.parse(ctx.commit_tx)
        assert len(commit.outputs) == 1
        assert commit.outputs[0].value == 60_000
        redeem = bytes.fromhex(ctx.redeem_script)
        assert commit.outputs[0].script == p2sh_script(hash160(redeem))

    @pytest.mark.asyncio
    async def test_change_and_platform_fee(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test output order: inscription, platform fee, change."""
        treasury = pubkey_to_address(PrivateKey(bytes([0x44] * 32)).public_key.format())
        backend.add_utxo(address, 300_000)
        amounts = InscriptionAmounts(platform_fee=100_000, treasury_address=treasury)
        request = await orchestrator.begin(address, public_key, HELLO, amounts)

        commit = ZcashTransaction.parse(orchestrator.get(request.context_id).commit_tx)
        assert [o.value for o in commit.outputs] == [60_000, 100_000, 130_000]
        assert commit.outputs[1].script == script_for_address(treasury)
        assert commit.outputs[2].script == script_for_address(address)

    @pytest.mark.asyncio
    async def test_dust_change_dropped(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test change at the dust threshold is left to the fee."""
        backend.add_utxo(address, 70_546)
        request = await orchestrator.begin(address, public_key, HELLO)

        commit = ZcashTransaction.parse(orchestrator.get(request.context_id).commit_tx)
        assert len(commit.outputs) == 1

    @pytest.mark.asyncio
    async def test_key_must_own_address(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
    ) -> None:
        other = PrivateKey(bytes([0x55] * 32)).public_key.format().hex()
        backend.add_utxo(address, 70_000)
        with pytest.raises(ValueError, match="does not match"):
            await orchestrator.begin(address, other, HELLO)

    @pytest.mark.asyncio
    async def test_oversized_content_before_selection(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test oversized content fails without creating a context or touching outputs."""
        backend.add_utxo(address, 70_000)
        with pytest.raises(ContentTooLarge):
            await orchestrator.begin(address, public_key, TextContent(text="x" * 200_000))
        assert orchestrator.list_contexts() == []
        assert backend.taint_checks == []

    @pytest.mark.asyncio
    async def test_insufficient_funds_aborts(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        backend.add_utxo(address, 69_999)
        with pytest.raises(InsufficientFunds) as exc_info:
            await orchestrator.begin(address, public_key, HELLO)
        assert exc_info.value.shortfall == 1
        [ctx] = orchestrator.list_contexts()
        assert ctx.phase == ContextPhase.ABORTED


class TestCommitAndReveal:
    """Tests for the signing phases."""

    @pytest.mark.asyncio
    async def test_full_cycle(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        sleep: AsyncMock,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test commit broadcast, propagation wait, then reveal and inscription id."""
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)

        reveal_request = await orchestrator.submit_commit_signatures(
            request.context_id, await signer(request)
        )
        sleep.assert_awaited_once_with(8.0)
        assert reveal_request.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE
        assert len(reveal_request.digests) == 1
        assert leases.is_leased(funding)

        commit = backend.broadcasts[0]
        ctx = orchestrator.get(request.context_id)
        assert ctx.commit_txid == commit.txid

        inscription_id = await orchestrator.submit_reveal_signatures(
            request.context_id, await signer(reveal_request)
        )
        reveal = backend.broadcasts[1]
        assert inscription_id == f"{reveal.txid}i0"
        assert reveal.inputs[0].outpoint == f"{commit.txid}:0"
        assert len(reveal.outputs) == 1
        assert reveal.outputs[0].value == 50_000
        assert reveal.outputs[0].script == script_for_address(address)

        envelope, _, redeem = split_reveal_script_sig(reveal.inputs[0].script_sig)
        assert parse_envelope(envelope) == ("text/plain;charset=utf-8", b"hello")
        assert p2sh_script(hash160(redeem)) == commit.outputs[0].script

        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.DONE
        assert ctx.inscription_id == inscription_id

    @pytest.mark.asyncio
    async def test_rebroadcast_surfaces_rejection(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test re-sending a broadcast commit is reported, not silently accepted."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        await orchestrator.submit_commit_signatures(request.context_id, await signer(request))

        with pytest.raises(BroadcastRejected) as exc_info:
            await backend.broadcast(backend.broadcasts[0].to_hex())
        assert exc_info.value.category == "already_broadcast"
        with pytest.raises(InvalidPhase):
            await orchestrator.submit_commit_signatures(request.context_id, await signer(request))

    @pytest.mark.asyncio
    async def test_signature_count_mismatch(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test a wrong signature count leaves the context untouched."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        with pytest.raises(SignatureCountMismatch):
            await orchestrator.submit_commit_signatures(request.context_id, [])
        assert orchestrator.get(request.context_id).phase == ContextPhase.AWAITING_COMMIT_SIGNATURE
        assert backend.broadcasts == []

    @pytest.mark.asyncio
    async def test_wrong_key_signature(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
    ) -> None:
        """Test a signature from another key is caught before broadcast."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        other = PrivateKey(bytes([0x66] * 32))
        with pytest.raises(InvalidSignature):
            await orchestrator.submit_commit_signatures(
                request.context_id, [sign_digest(other, d) for d in request.digests]
            )
        assert backend.broadcasts == []

    @pytest.mark.asyncio
    async def test_commit_rejected_aborts(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test a refused commit aborts the context and frees its outputs."""
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        backend.rejections.append("66: insufficient fee")

        with pytest.raises(BroadcastRejected) as exc_info:
            await orchestrator.submit_commit_signatures(request.context_id, await signer(request))
        assert exc_info.value.category == "fee_too_low"
        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.ABORTED
        assert "insufficient fee" in (ctx.error or "")
        assert leases.holder_of(funding) is None

    @pytest.mark.asyncio
    async def test_commit_already_known_proceeds(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test a commit the node reports as already known is treated as broadcast."""
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        backend.rejections.append("18: txn-already-in-mempool")

        reveal_request = await orchestrator.submit_commit_signatures(
            request.context_id, await signer(request)
        )
        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE
        assert ctx.commit_txid == ZcashTransaction.parse(ctx.commit_tx).txid
        assert leases.is_leased(funding)
        assert len(reveal_request.digests) == 1

    @pytest.mark.asyncio
    async def test_reveal_rejection_is_retryable(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test a refused reveal keeps the commit and accepts a second attempt."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        reveal_request = await orchestrator.submit_commit_signatures(
            request.context_id, await signer(request)
        )
        backend.rejections.append("16: mandatory-script-verify-flag-failed")

        with pytest.raises(BroadcastRejected):
            await orchestrator.submit_reveal_signatures(
                request.context_id, await signer(reveal_request)
            )
        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE
        assert ctx.error is not None

        retry = orchestrator.signing_request(request.context_id)
        inscription_id = await orchestrator.submit_reveal_signatures(
            request.context_id, await signer(retry)
        )
        assert inscription_id.endswith("i0")
        assert orchestrator.get(request.context_id).error is None

    @pytest.mark.asyncio
    async def test_lost_lease_is_stale(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test signatures arriving after the lease was taken over are refused."""
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        leases.release_holder(request.context_id)
        leases.acquire([funding], "someone-else")

        with pytest.raises(StaleContext):
            await orchestrator.submit_commit_signatures(request.context_id, await signer(request))
        assert orchestrator.get(request.context_id).phase == ContextPhase.ABORTED
        assert leases.holder_of(funding) == "someone-else"


class TestAbortAndReap:
    """Tests for abandoning contexts."""

    @pytest.mark.asyncio
    async def test_abort_releases_leases(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
    ) -> None:
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        ctx = orchestrator.abort(request.context_id, "user cancelled")
        assert ctx.phase == ContextPhase.ABORTED
        assert ctx.error == "user cancelled"
        assert leases.holder_of(funding) is None

    @pytest.mark.asyncio
    async def test_abort_terminal_is_noop(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        backend.add_utxo(address, 70_000)
        ctx = await orchestrator.mint(address, public_key, HELLO, signer)
        assert orchestrator.abort(ctx.context_id).phase == ContextPhase.DONE

    @pytest.mark.asyncio
    async def test_reap_expired(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
    ) -> None:
        """Test idle contexts past the timeout are aborted and their outputs freed."""
        funding = backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)

        assert orchestrator.reap_expired() == []
        reaped = orchestrator.reap_expired(now=time.time() + DEFAULT_CONTEXT_TIMEOUT + 1)
        assert reaped == [request.context_id]
        assert orchestrator.get(request.context_id).phase == ContextPhase.ABORTED
        assert leases.holder_of(funding) is None

    @pytest.mark.asyncio
    async def test_reap_keeps_broadcast_commit(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test a context whose commit is on chain survives reaping and can still reveal."""
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        reveal_request = await orchestrator.submit_commit_signatures(
            request.context_id, await signer(request)
        )

        assert orchestrator.reap_expired(now=time.time() + DEFAULT_CONTEXT_TIMEOUT + 1) == []
        ctx = orchestrator.get(request.context_id)
        assert ctx.phase == ContextPhase.AWAITING_REVEAL_SIGNATURE

        inscription_id = await orchestrator.submit_reveal_signatures(
            request.context_id, await signer(reveal_request)
        )
        assert inscription_id == f"{backend.broadcasts[1].txid}i0"

    @pytest.mark.asyncio
    async def test_late_reveal_signature_accepted(
        self,
        store,
        backend: FakeChainBackend,
        selector,
        leases: LeaseManager,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        now = [1_000.0]
        orchestrator = InscriptionOrchestrator(
            store,
            backend,
            selector,
            leases,
            context_timeout=60,
            clock=lambda: now[0],
            sleep=AsyncMock(),
        )
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        reveal_request = await orchestrator.submit_commit_signatures(
            request.context_id, await signer(request)
        )
        now[0] += 3_600
        await orchestrator.submit_reveal_signatures(
            request.context_id, await signer(reveal_request)
        )
        assert orchestrator.get(request.context_id).phase == ContextPhase.DONE

    @pytest.mark.asyncio
    async def test_late_signature_is_stale(
        self,
        store,
        backend: FakeChainBackend,
        selector,
        leases: LeaseManager,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        """Test signatures arriving after the context timeout abort the context."""
        now = [1_000.0]
        orchestrator = InscriptionOrchestrator(
            store,
            backend,
            selector,
            leases,
            context_timeout=60,
            lease_ttl=600,
            clock=lambda: now[0],
            sleep=AsyncMock(),
        )
        backend.add_utxo(address, 70_000)
        request = await orchestrator.begin(address, public_key, HELLO)
        now[0] += 61
        with pytest.raises(StaleContext):
            await orchestrator.submit_commit_signatures(request.context_id, await signer(request))
        assert orchestrator.get(request.context_id).phase == ContextPhase.ABORTED


class TestMint:
    """Tests for the one-call mint helper."""

    @pytest.mark.asyncio
    async def test_mint_reports_context(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        address: str,
        public_key: str,
        signer,
    ) -> None:
        backend.add_utxo(address, 70_000)
        seen: list[str] = []
        ctx = await orchestrator.mint(address, public_key, HELLO, signer, on_begin=seen.append)
        assert seen == [ctx.context_id]
        assert ctx.phase == ContextPhase.DONE
        assert len(backend.broadcasts) == 2

    @pytest.mark.asyncio
    async def test_mint_signer_failure_aborts(
        self,
        orchestrator: InscriptionOrchestrator,
        backend: FakeChainBackend,
        leases: LeaseManager,
        address: str,
        public_key: str,
    ) -> None:
        """Test a signer error before the commit frees the funding output."""
        funding = backend.add_utxo(address, 70_000)
        signer = AsyncMock(side_effect=RuntimeError("wallet locked"))
        with pytest.raises(RuntimeError):
            await orchestrator.mint(address, public_key, HELLO, signer)
        [ctx] = orchestrator.list_contexts()
        assert ctx.phase == ContextPhase.ABORTED
        assert leases.holder_of(funding) is None
