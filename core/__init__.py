"""
HASHCHAIN Core Module
Contains hashing, nonce generation, and chain ledger primitives.
"""

from .blockchain import Block, ChainLedger, HashPointer, LedgerError
from .nonce import (
    NONCE_STRATEGIES,
    NonceGenerator,
    NonceSpaceExhausted,
    create_generator,
)
from .crypto import (
    Hasher,
    score,
    leading_zero_bits,
    hash_difficulty,
    is_valid_hash,
)

__all__ = [
    'Block',
    'ChainLedger',
    'HashPointer',
    'LedgerError',
    'NONCE_STRATEGIES',
    'NonceGenerator',
    'NonceSpaceExhausted',
    'create_generator',
    'Hasher',
    'score',
    'leading_zero_bits',
    'hash_difficulty',
    'is_valid_hash',
]
