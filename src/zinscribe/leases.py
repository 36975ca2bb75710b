"""
Time-bounded exclusive leases on unspent outputs.

A lease stops two concurrent flows from spending the same output. Leases
live in the document store so they survive restarts, and expire on their own
so a crashed flow never pins an output forever.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable

from loguru import logger

from zinscribe.constants import DEFAULT_LEASE_TTL
from zinscribe.errors import LeaseConflict
from zinscribe.models import Lease
from zinscribe.store import DocumentStore

LEASES = "leases"


class LeaseManager:
    """
    Lease table over a document store.

    ``acquire`` is all-or-nothing: either every requested output is leased to
    the holder or none is. The same holder may re-acquire to refresh expiry.
    Consumed leases mark outputs that a broadcast transaction has already
    spent; they are kept until they expire so the outputs are not offered
    again before the chain source catches up.
    """

    def __init__(
        self,
        store: DocumentStore,
        default_ttl: float = DEFAULT_LEASE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.clock = clock

    def _load(self, output_id: str) -> Lease | None:
        doc = self.store.get(LEASES, output_id)
        return Lease.model_validate(doc) if doc else None

    def acquire(
        self, output_ids: Iterable[str], holder_id: str, ttl: float | None = None
    ) -> list[Lease]:
        """
        Lease every output in ``output_ids`` to ``holder_id``.

        Raises:
            LeaseConflict: If any output has an active lease by another holder,
                or has already been consumed
        """
        ids = list(dict.fromkeys(output_ids))
        expires_at = self.clock() + (ttl if ttl is not None else self.default_ttl)

        with self.store.transaction():
            now = self.clock()
            conflicts: list[str] = []
            owner: str | None = None
            for output_id in ids:
                lease = self._load(output_id)
                if lease is None or not lease.is_active(now):
                    continue
                if lease.holder_id != holder_id or lease.consumed:
                    conflicts.append(output_id)
                    owner = owner or lease.holder_id
            if conflicts:
                raise LeaseConflict(conflicts, owner)

            leases = [Lease(output_id=o, holder_id=holder_id, expires_at=expires_at) for o in ids]
            for lease in leases:
                self.store.put(LEASES, lease.output_id, lease.model_dump(mode="json"))

        logger.debug(f"Leased {len(ids)} output(s) to {holder_id}")
        return leases

    def release(self, output_ids: Iterable[str], holder_id: str | None = None) -> None:
        """
        Drop leases. Idempotent; consumed leases are kept.

        When ``holder_id`` is given, leases owned by someone else are left alone.
        """
        with self.store.transaction():
            for output_id in output_ids:
                lease = self._load(output_id)
                if lease is None or lease.consumed:
                    continue
                if holder_id is not None and lease.holder_id != holder_id:
                    continue
                self.store.delete(LEASES, output_id)

    def release_holder(self, holder_id: str) -> int:
        """Drop every unconsumed lease owned by ``holder_id``."""
        with self.store.transaction():
            docs = self.store.list(
                LEASES, lambda d: d["holder_id"] == holder_id and not d.get("consumed")
            )
            for doc in docs:
                self.store.delete(LEASES, doc["output_id"])
        if docs:
            logger.debug(f"Released {len(docs)} lease(s) held by {holder_id}")
        return len(docs)

    def consume(
        self, output_ids: Iterable[str], holder_id: str, retention: float | None = None
    ) -> None:
        """Mark outputs as spent by ``holder_id``'s broadcast transaction."""
        expires_at = self.clock() + (retention if retention is not None else self.default_ttl)
        with self.store.transaction():
            for output_id in output_ids:
                lease = Lease(
                    output_id=output_id, holder_id=holder_id, expires_at=expires_at, consumed=True
                )
                self.store.put(LEASES, output_id, lease.model_dump(mode="json"))

    def holder_of(self, output_id: str) -> str | None:
        lease = self._load(output_id)
        if lease is None or not lease.is_active(self.clock()):
            return None
        return lease.holder_id

    def is_leased(self, output_id: str, by_other_than: str | None = None) -> bool:
        """
        True if the output has an active lease (by anyone but ``by_other_than``)
        or has been consumed.
        """
        lease = self._load(output_id)
        if lease is None or not lease.is_active(self.clock()):
            return False
        if lease.consumed:
            return True
        return by_other_than is None or lease.holder_id != by_other_than

    def holds_all(self, output_ids: Iterable[str], holder_id: str) -> bool:
        now = self.clock()
        for output_id in output_ids:
            lease = self._load(output_id)
            if lease is None or not lease.is_active(now) or lease.holder_id != holder_id:
                return False
            if lease.consumed:
                return False
        return True

    def prune_expired(self) -> int:
        now = self.clock()
        with self.store.transaction():
            expired = self.store.list(LEASES, lambda d: d["expires_at"] <= now)
            for doc in expired:
                self.store.delete(LEASES, doc["output_id"])
        return len(expired)
