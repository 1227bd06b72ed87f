"""
HASHCHAIN Cryptographic Utilities
SHA-256 scoring of (previous hash, identity, nonce) candidates.
"""

import hashlib
from typing import Tuple, Union

import config

HASH_BITS = config.HASH_BITS
HEX_DIGITS = set('0123456789abcdefABCDEF')


# ============================================================================
# HASHING FUNCTIONS
# ============================================================================

def sha256(data: bytes) -> bytes:
    """Single SHA-256 hash."""
    return hashlib.sha256(data).digest()


def sha256_hex(text: str) -> str:
    """SHA-256 of a UTF-8 string, as lowercase hex."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def leading_zero_bits(digest: bytes) -> int:
    """
    Count leading zero bits of a digest, most significant bit first.
    An all-zero digest scores its full bit width.
    """
    value = int.from_bytes(digest, 'big')
    return len(digest) * 8 - value.bit_length()


def hash_difficulty(hash_hex: str) -> int:
    """Difficulty (leading zero bits) of a hex-encoded hash."""
    return leading_zero_bits(bytes.fromhex(hash_hex))


def is_valid_hash(value: str) -> bool:
    """Check for a 256-bit hex hash."""
    return (
        isinstance(value, str)
        and len(value) == config.HASH_HEX_LENGTH
        and all(c in HEX_DIGITS for c in value)
    )


def nonce_to_str(nonce: Union[int, str]) -> str:
    """Canonical string form of a nonce (decimal for integers, as-is for tokens)."""
    return str(nonce)


# ============================================================================
# SCORING
# ============================================================================

class Hasher:
    """
    Scores nonces against a fixed previous hash and identity.

    The constant prefix is hashed once; each nonce only feeds a copy of
    that state, so results are identical to score().
    """

    def __init__(self, previous_hash: str, identity: str):
        self.previous_hash = previous_hash
        self.identity = identity
        self._prefix = hashlib.sha256(f"{previous_hash}{identity}".encode('utf-8'))

    def digest(self, nonce: Union[int, str]) -> bytes:
        h = self._prefix.copy()
        h.update(nonce_to_str(nonce).encode('utf-8'))
        return h.digest()

    def score(self, nonce: Union[int, str]) -> Tuple[str, int]:
        """Return (digest hex, difficulty) for a nonce."""
        digest = self.digest(nonce)
        return digest.hex(), leading_zero_bits(digest)


def score(previous_hash: str, identity: str, nonce: Union[int, str]) -> Tuple[str, int]:
    """
    Score a candidate block.

    Args:
        previous_hash: Hash of the current chain tip
        identity: Miner identity
        nonce: Candidate nonce (int or token)

    Returns:
        (digest hex, leading zero bits) of sha256(previous_hash + identity + nonce)
    """
    digest = sha256(f"{previous_hash}{identity}{nonce_to_str(nonce)}".encode('utf-8'))
    return digest.hex(), leading_zero_bits(digest)
