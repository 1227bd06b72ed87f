"""
HASHCHAIN Nonce Generators
Candidate nonce producers, one instance per worker.
"""

import secrets
from typing import Optional, Tuple

import config

NONCE_STRATEGIES = ('sequential', 'random', 'random-numeric')


class NonceSpaceExhausted(Exception):
    """Raised when a bounded sequential generator runs out of nonces."""


class NonceGenerator:
    """Base class: next() returns (nonce, counter) with counter increasing from 1."""

    strategy = ''

    def __init__(self):
        self.counter = 0

    def next(self) -> Tuple[str, int]:
        nonce = self._produce()
        self.counter += 1
        return nonce, self.counter

    def reset(self):
        """Start over for a new epoch."""
        self.counter = 0

    def _produce(self) -> str:
        raise NotImplementedError


class SequentialNonceGenerator(NonceGenerator):
    """
    Deterministic stride: worker_id + iteration * worker_count.

    Workers with distinct ids cover disjoint nonces. The generator can be
    restarted from any iteration, and an optional max_nonce bounds the range.
    """

    strategy = 'sequential'

    def __init__(self, worker_id: int, worker_count: int, start_iteration: int = 0,
                 max_nonce: Optional[int] = None):
        super().__init__()
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if not 0 <= worker_id < worker_count:
            raise ValueError(f"worker_id {worker_id} out of range for {worker_count} workers")
        self.worker_id = worker_id
        self.worker_count = worker_count
        self.start_iteration = start_iteration
        self.max_nonce = max_nonce
        self.iteration = start_iteration

    @property
    def current_nonce(self) -> int:
        return self.worker_id + self.iteration * self.worker_count

    def _produce(self) -> str:
        nonce = self.current_nonce
        if self.max_nonce is not None and nonce >= self.max_nonce:
            raise NonceSpaceExhausted(
                f"worker {self.worker_id} exhausted nonces below {self.max_nonce}"
            )
        self.iteration += 1
        return str(nonce)

    def reset(self):
        super().reset()
        self.iteration = self.start_iteration


class RandomNonceGenerator(NonceGenerator):
    """High-entropy URL-safe token. Not restartable."""

    strategy = 'random'

    def __init__(self, nbytes: int = config.RANDOM_TOKEN_BYTES):
        super().__init__()
        self.nbytes = nbytes

    def _produce(self) -> str:
        return secrets.token_urlsafe(self.nbytes)


class RandomNumericNonceGenerator(NonceGenerator):
    """Fixed-width random digit string, for ledgers that want numeric nonces."""

    strategy = 'random-numeric'

    def __init__(self, digits: int = config.RANDOM_NUMERIC_DIGITS):
        super().__init__()
        if digits < 1:
            raise ValueError("digits must be >= 1")
        self.digits = digits
        self._bound = 10 ** digits

    def _produce(self) -> str:
        return str(secrets.randbelow(self._bound)).zfill(self.digits)


def create_generator(strategy: str, worker_id: int = 0, worker_count: int = 1,
                     max_nonce: Optional[int] = None, start_iteration: int = 0) -> NonceGenerator:
    """Build the generator for a strategy name."""
    if strategy == 'sequential':
        return SequentialNonceGenerator(worker_id, worker_count,
                                        start_iteration=start_iteration,
                                        max_nonce=max_nonce)
    if strategy == 'random':
        return RandomNonceGenerator()
    if strategy == 'random-numeric':
        return RandomNumericNonceGenerator()
    raise ValueError(f"Unknown nonce strategy: {strategy!r} (expected one of {', '.join(NONCE_STRATEGIES)})")
