"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from coincurve import PrivateKey

from tests.helpers import FakeChainBackend, sign_digest
from zinscribe.address import pubkey_to_address
from zinscribe.leases import LeaseManager
from zinscribe.models import SigningRequest
from zinscribe.orchestrator import InscriptionOrchestrator
from zinscribe.selection import UtxoSelector
from zinscribe.store import InMemoryDocumentStore


@pytest.fixture
def private_key() -> PrivateKey:
    """Deterministic test key (not for production use!)."""
    return PrivateKey(bytes([0x11] * 32))


@pytest.fixture
def public_key(private_key: PrivateKey) -> str:
    return private_key.public_key.format(compressed=True).hex()


@pytest.fixture
def address(public_key: str) -> str:
    return pubkey_to_address(bytes.fromhex(public_key))


@pytest.fixture
def signer(private_key: PrivateKey):
    async def sign(request: SigningRequest) -> list[str]:
        return [sign_digest(private_key, d) for d in request.digests]

    return sign


@pytest.fixture
def backend() -> FakeChainBackend:
    return FakeChainBackend()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def leases(store: InMemoryDocumentStore) -> LeaseManager:
    return LeaseManager(store)


@pytest.fixture
def selector(backend: FakeChainBackend, leases: LeaseManager) -> UtxoSelector:
    return UtxoSelector(backend, leases, backend)


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def orchestrator(
    store: InMemoryDocumentStore,
    backend: FakeChainBackend,
    selector: UtxoSelector,
    leases: LeaseManager,
    sleep: AsyncMock,
) -> InscriptionOrchestrator:
    return InscriptionOrchestrator(store, backend, selector, leases, sleep=sleep)
