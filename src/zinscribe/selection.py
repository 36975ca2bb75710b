"""
Funding output selection.

Outputs are considered in the order the chain backend lists them; there is
no value sorting. Inscription taint is checked lazily, only for outputs that
would otherwise be picked, since every check is a network round trip.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import NoReturn

from loguru import logger

from zinscribe.backends.base import ChainBackend, TaintOracle
from zinscribe.errors import InsufficientFunds, LeaseConflict, TaintedOutputOnly
from zinscribe.leases import LeaseManager
from zinscribe.models import UnspentOutput

LEASE_RACE_RETRIES = 3


class UtxoSelector:
    def __init__(
        self,
        backend: ChainBackend,
        leases: LeaseManager,
        taint_oracle: TaintOracle | None = None,
    ):
        self.backend = backend
        self.leases = leases
        self.taint_oracle = taint_oracle

    async def _is_tainted(self, utxo: UnspentOutput, cache: dict[str, bool]) -> bool:
        if utxo.tainted:
            return True
        if self.taint_oracle is None:
            return False
        if utxo.outpoint not in cache:
            cache[utxo.outpoint] = await self.taint_oracle.is_tainted(utxo.txid, utxo.vout)
        return cache[utxo.outpoint]

    async def candidates(
        self, address: str, holder_id: str, exclude: Iterable[str] = ()
    ) -> list[UnspentOutput]:
        """Unspent outputs not excluded and not leased by another holder."""
        excluded = set(exclude)
        utxos = await self.backend.list_unspent(address)
        return [
            u
            for u in utxos
            if u.outpoint not in excluded
            and not self.leases.is_leased(u.outpoint, by_other_than=holder_id)
        ]

    async def _fail(
        self, candidates: list[UnspentOutput], required: int, cache: dict[str, bool]
    ) -> NoReturn:
        clean: list[UnspentOutput] = []
        tainted: list[str] = []
        for utxo in candidates:
            if await self._is_tainted(utxo, cache):
                tainted.append(utxo.outpoint)
            else:
                clean.append(utxo)
        if tainted and not clean:
            raise TaintedOutputOnly(tainted)
        available = sum(u.value for u in clean)
        raise InsufficientFunds(required, available, f"{len(clean)} spendable output(s)")

    async def select_single(
        self, address: str, required: int, holder_id: str, exclude: Iterable[str] = ()
    ) -> UnspentOutput:
        """
        First listed output whose value alone covers ``required``.

        Raises:
            TaintedOutputOnly: If every candidate carries an inscription
            InsufficientFunds: If no single clean output is large enough
        """
        candidates = await self.candidates(address, holder_id, exclude)
        cache: dict[str, bool] = {}
        for utxo in candidates:
            if utxo.value < required:
                continue
            if await self._is_tainted(utxo, cache):
                logger.debug(f"Skipping inscribed output {utxo.outpoint}")
                continue
            return utxo
        await self._fail(candidates, required, cache)

    async def select_accumulating(
        self, address: str, required: int, holder_id: str, exclude: Iterable[str] = ()
    ) -> list[UnspentOutput]:
        """Shortest prefix of clean listed outputs whose total covers ``required``."""
        candidates = await self.candidates(address, holder_id, exclude)
        cache: dict[str, bool] = {}
        selected: list[UnspentOutput] = []
        total = 0
        for utxo in candidates:
            if await self._is_tainted(utxo, cache):
                logger.debug(f"Skipping inscribed output {utxo.outpoint}")
                continue
            selected.append(utxo)
            total += utxo.value
            if total >= required:
                return selected
        await self._fail(candidates, required, cache)

    async def select_and_lease(
        self,
        address: str,
        required: int,
        holder_id: str,
        accumulate: bool = False,
        exclude: Iterable[str] = (),
        ttl: float | None = None,
    ) -> list[UnspentOutput]:
        """
        Select funding outputs and lease them to ``holder_id``.

        A flow that loses a lease race to a concurrent flow reselects without
        the contested outputs.
        """
        excluded = set(exclude)
        attempt = 0
        while True:
            attempt += 1
            if accumulate:
                selected = await self.select_accumulating(address, required, holder_id, excluded)
            else:
                selected = [await self.select_single(address, required, holder_id, excluded)]
            try:
                self.leases.acquire([u.outpoint for u in selected], holder_id, ttl)
            except LeaseConflict as e:
                if attempt >= LEASE_RACE_RETRIES:
                    raise
                logger.debug(f"Lost lease race for {e.output_ids}, reselecting")
                excluded.update(e.output_ids)
                continue
            logger.info(
                f"Selected {len(selected)} output(s) totalling "
                f"{sum(u.value for u in selected)} zats for {holder_id}"
            )
            return selected
