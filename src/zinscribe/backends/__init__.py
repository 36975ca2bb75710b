"""
Chain, broadcast and indexer backends.

Available backends:
- ZcashRPCBackend: zcashd/zebrad JSON-RPC (address index required for UTXO listing)
- ZerdinalsClient: inscription indexer, UTXO service and broadcast relay
"""

from zinscribe.backends.base import Broadcaster, ChainBackend, FallbackBroadcaster, TaintOracle
from zinscribe.backends.zcash_rpc import ZcashRPCBackend
from zinscribe.backends.zerdinals import ZerdinalsClient

__all__ = [
    "Broadcaster",
    "ChainBackend",
    "FallbackBroadcaster",
    "TaintOracle",
    "ZcashRPCBackend",
    "ZerdinalsClient",
]
