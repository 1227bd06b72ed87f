"""
HASHCHAIN Chain Structures
Hash pointers, blocks and the append-only chain ledger.
"""

import os
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from .crypto import is_valid_hash, score, sha256_hex
import config


class LedgerError(Exception):
    """Ledger file is unreadable, malformed or belongs to another identity."""


@dataclass(frozen=True)
class HashPointer:
    """
    Authoritative tip of the chain.

    hash is the previous hash the next block must reference; difficulty is
    the bar a new block must beat. Pointers built from accepted blocks carry
    the leading zero bits of their hash; starting points carry whatever
    difficulty they were given, 0 by default.
    """
    hash: str
    nonce: str
    difficulty: int

    @classmethod
    def from_hash(cls, hash_hex: str, nonce: str = '', difficulty: int = 0) -> 'HashPointer':
        """
        Build a starting pointer from an externally supplied hash.

        The difficulty is taken as given, not derived from the hash, so a
        genesis hash of all zeros still starts the search at 0.
        """
        if not is_valid_hash(hash_hex):
            raise ValueError(f"Not a {config.HASH_BITS}-bit hex hash: {hash_hex!r}")
        hash_hex = hash_hex.lower()
        if not 0 <= difficulty <= config.HASH_BITS:
            raise ValueError(f"Difficulty must be between 0 and {config.HASH_BITS}, got {difficulty}")
        return cls(hash=hash_hex, nonce=str(nonce), difficulty=difficulty)

    def to_dict(self) -> Dict[str, Any]:
        return {'hash': self.hash, 'nonce': self.nonce, 'difficulty': self.difficulty}


@dataclass(frozen=True)
class Block:
    """A proposed (and, once confirmed, accepted) extension of the chain."""
    previous: str
    identity: str
    nonce: str
    hash: str
    difficulty: int

    @classmethod
    def create(cls, previous: str, identity: str, nonce: str) -> 'Block':
        """Build a block by scoring its nonce."""
        digest, difficulty = score(previous, identity, nonce)
        return cls(previous=previous, identity=identity, nonce=str(nonce),
                   hash=digest, difficulty=difficulty)

    def ledger_line(self) -> str:
        """The hashed preimage, as stored in the ledger."""
        return f"{self.previous}{self.identity}{self.nonce}"

    def verify(self) -> bool:
        """Check that hash and difficulty match the block contents."""
        return score(self.previous, self.identity, self.nonce) == (self.hash, self.difficulty)

    def to_pointer(self) -> HashPointer:
        """Fold this block into the next chain tip."""
        return HashPointer(hash=self.hash, nonce=self.nonce, difficulty=self.difficulty)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'previous': self.previous,
            'identity': self.identity,
            'nonce': self.nonce,
            'hash': self.hash,
            'difficulty': self.difficulty,
        }


class ChainLedger:
    """
    Append-only record of accepted blocks.

    Line 1 holds the identity; every further line is
    <previous hash><identity><nonce>, in chain order.
    """

    def __init__(self, filepath: str, identity: str):
        if not identity or '\n' in identity or '\r' in identity:
            raise ValueError("Identity must be a non-empty single-line string")
        self.filepath = filepath
        self.identity = identity
        self.lock = Lock()

    def exists(self) -> bool:
        return os.path.exists(self.filepath) and os.path.getsize(self.filepath) > 0

    def read_lines(self) -> List[str]:
        """Identity line followed by block lines; [] when the file is absent."""
        if not self.exists():
            return []
        try:
            with open(self.filepath, 'r', encoding='utf-8') as f:
                lines = [line.rstrip('\r\n') for line in f]
        except OSError as e:
            raise LedgerError(f"Cannot read ledger {self.filepath}: {e}") from e

        while lines and not lines[-1]:
            lines.pop()
        if lines and lines[0] != self.identity:
            raise LedgerError(
                f"Ledger {self.filepath} belongs to identity {lines[0]!r}, not {self.identity!r}"
            )
        return lines

    def parse_line(self, line: str) -> Tuple[str, str]:
        """Split a block line into (previous hash, nonce)."""
        width = config.HASH_HEX_LENGTH
        previous = line[:width]
        rest = line[width:]
        if not is_valid_hash(previous) or not rest.startswith(self.identity):
            raise LedgerError(f"Malformed ledger line: {line!r}")
        nonce = rest[len(self.identity):]
        if not nonce:
            raise LedgerError(f"Ledger line has no nonce: {line!r}")
        return previous, nonce

    def blocks(self) -> List[Block]:
        """All recorded blocks, with hashes and difficulties recomputed."""
        lines = self.read_lines()
        result = []
        for line in lines[1:]:
            previous, nonce = self.parse_line(line)
            result.append(Block.create(previous, self.identity, nonce))
        return result

    @property
    def height(self) -> int:
        """Number of recorded blocks."""
        return max(len(self.read_lines()) - 1, 0)

    def tip(self) -> Optional[HashPointer]:
        """
        Pointer to resume from, or None when no block has been recorded.

        The difficulty is recomputed from the hash of the last line, never
        read from storage.
        """
        lines = self.read_lines()
        if len(lines) < 2:
            return None
        previous, nonce = self.parse_line(lines[-1])
        return Block.create(previous, self.identity, nonce).to_pointer()

    def verify(self) -> bool:
        """Check that every block references the hash of the block before it."""
        lines = self.read_lines()
        for prev_line, line in zip(lines[1:], lines[2:]):
            previous, _ = self.parse_line(line)
            if previous.lower() != sha256_hex(prev_line):
                return False
        return True

    def append(self, block: Block):
        """Record an accepted block, creating the file with its identity line if needed."""
        if block.identity != self.identity:
            raise LedgerError(f"Block identity {block.identity!r} does not match ledger {self.identity!r}")

        with self.lock:
            directory = os.path.dirname(os.path.abspath(self.filepath))
            os.makedirs(directory, exist_ok=True)
            new_file = not self.exists()
            needs_newline = False
            if not new_file:
                # Validates the identity line
                self.read_lines()
                with open(self.filepath, 'rb') as f:
                    f.seek(-1, os.SEEK_END)
                    needs_newline = f.read(1) != b'\n'

            with open(self.filepath, 'a', encoding='utf-8') as f:
                if new_file:
                    f.write(self.identity + '\n')
                elif needs_newline:
                    f.write('\n')
                f.write(block.ledger_line() + '\n')
                f.flush()
                os.fsync(f.fileno())
