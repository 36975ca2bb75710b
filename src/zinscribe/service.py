"""
Wiring of the engine's components from settings.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from zinscribe.backends.base import Broadcaster, ChainBackend, FallbackBroadcaster, TaintOracle
from zinscribe.backends.zcash_rpc import ZcashRPCBackend
from zinscribe.backends.zerdinals import ZerdinalsClient
from zinscribe.config import Settings
from zinscribe.jobs import BatchJobEngine
from zinscribe.leases import LeaseManager
from zinscribe.orchestrator import InscriptionOrchestrator
from zinscribe.selection import UtxoSelector
from zinscribe.split import SplitBuilder
from zinscribe.store import DocumentStore, JsonFileDocumentStore
from zinscribe.swap import SwapAssembler


@dataclass
class InscriptionService:
    settings: Settings
    store: DocumentStore
    backend: ChainBackend
    broadcaster: Broadcaster
    taint_oracle: TaintOracle | None
    leases: LeaseManager
    selector: UtxoSelector
    orchestrator: InscriptionOrchestrator
    jobs: BatchJobEngine
    splits: SplitBuilder
    swaps: SwapAssembler
    zerdinals: ZerdinalsClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DocumentStore | None = None,
        backend: ChainBackend | None = None,
    ) -> InscriptionService:
        store = store or JsonFileDocumentStore(settings.state_file)
        if backend is None:
            backend = ZcashRPCBackend(
                rpc_url=settings.rpc_url,
                rpc_user=settings.rpc_user,
                rpc_password=settings.rpc_password,
                branch_id_fallback=settings.branch_id_fallback,
                max_retries=settings.rpc_max_retries,
                base_delay=settings.rpc_base_delay,
                timeout=settings.rpc_timeout,
            )

        zerdinals: ZerdinalsClient | None = None
        if settings.taint_source == "indexer" or settings.relay_broadcast:
            zerdinals = ZerdinalsClient(
                indexer_url=settings.indexer_url,
                utxo_url=settings.utxo_url,
                max_retries=settings.rpc_max_retries,
                base_delay=settings.rpc_base_delay,
            )

        taint_oracle: TaintOracle | None = None
        if settings.taint_source == "indexer":
            taint_oracle = zerdinals
        elif settings.taint_source == "node" and isinstance(backend, TaintOracle):
            taint_oracle = backend
        else:
            logger.warning("No taint source configured; inscribed outputs may be spent as fees")

        broadcaster: Broadcaster = backend
        if settings.relay_broadcast and zerdinals is not None:
            broadcaster = FallbackBroadcaster([backend, zerdinals])

        leases = LeaseManager(store, default_ttl=settings.lease_ttl)
        selector = UtxoSelector(backend, leases, taint_oracle)
        orchestrator = InscriptionOrchestrator(
            store,
            backend,
            selector,
            leases,
            broadcaster=broadcaster,
            propagation_delay=settings.commit_propagation_delay,
            context_timeout=settings.context_timeout,
            lease_ttl=settings.lease_ttl,
        )
        return cls(
            settings=settings,
            store=store,
            backend=backend,
            broadcaster=broadcaster,
            taint_oracle=taint_oracle,
            leases=leases,
            selector=selector,
            orchestrator=orchestrator,
            jobs=BatchJobEngine(store, orchestrator),
            splits=SplitBuilder(
                store, backend, selector, leases, broadcaster, lease_ttl=settings.lease_ttl
            ),
            swaps=SwapAssembler(
                store, backend, selector, leases, broadcaster, lease_ttl=settings.lease_ttl
            ),
            zerdinals=zerdinals,
        )

    async def close(self) -> None:
        await self.backend.close()
        if self.zerdinals is not None:
            await self.zerdinals.close()
