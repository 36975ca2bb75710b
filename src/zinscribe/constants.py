"""
Protocol constants for Zcash transparent transactions and inscriptions.
"""

from __future__ import annotations

# Sapling (v4) transaction format
TX_VERSION = 4
OVERWINTERED_FLAG = 0x80000000
TX_HEADER = OVERWINTERED_FLAG | TX_VERSION
SAPLING_VERSION_GROUP_ID = 0x892F2085

# Signature hash types
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80
SIGHASH_SINGLE_ANYONECANPAY = SIGHASH_SINGLE | SIGHASH_ANYONECANPAY

# ZIP-243 BLAKE2b personalizations (each exactly 16 bytes)
PREVOUTS_PERSONALIZATION = b"ZcashPrevoutHash"
SEQUENCE_PERSONALIZATION = b"ZcashSequencHash"
OUTPUTS_PERSONALIZATION = b"ZcashOutputsHash"
SIGHASH_PERSONALIZATION_PREFIX = b"ZcashSigHash"

# Sequence numbers
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_RBF = 0xFFFFFFFD

# Consensus / standardness limits
MAX_SCRIPT_ELEMENT_SIZE = 520
MAX_OPS_PER_SCRIPT = 201
MAX_STANDARD_TX_SIZE = 100_000
DUST_THRESHOLD = 546

# secp256k1 group order
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Inscription defaults (zatoshis)
DEFAULT_INSCRIPTION_AMOUNT = 60_000
DEFAULT_FEE = 10_000
DEFAULT_PLATFORM_FEE = 100_000
ENVELOPE_PROTOCOL_TAG = b"ord"

# Timing (seconds)
DEFAULT_COMMIT_PROPAGATION_DELAY = 8.0
DEFAULT_LEASE_TTL = 15 * 60
DEFAULT_CONTEXT_TIMEOUT = 30 * 60
BRANCH_ID_CACHE_TTL = 10 * 60
