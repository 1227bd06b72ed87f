"""
Worker <-> Coordinator messages for the HASHCHAIN miner.

Every worker message carries the epoch it was computed under so the
coordinator can drop results that refer to an old chain tip.
"""

from dataclasses import dataclass
from typing import Union

from core.blockchain import HashPointer


# Worker -> Coordinator

@dataclass(frozen=True)
class Progress:
    """Hashes evaluated since the worker's previous report."""
    worker_id: int
    epoch: int
    count: int


@dataclass(frozen=True)
class Update:
    """A new worker-local best above the pointer difficulty."""
    worker_id: int
    epoch: int
    nonce: str
    hash: str
    difficulty: int


@dataclass(frozen=True)
class Found:
    """A worker-local best at or above the target difficulty."""
    worker_id: int
    epoch: int
    nonce: str
    hash: str
    difficulty: int


@dataclass(frozen=True)
class Exhausted:
    """A bounded sequential range ran out for this epoch."""
    worker_id: int
    epoch: int
    count: int


@dataclass(frozen=True)
class WorkerError:
    """Fatal error inside a worker; the worker has stopped."""
    worker_id: int
    epoch: int
    error: str
    traceback: str = ''


WorkerMessage = Union[Progress, Update, Found, Exhausted, WorkerError]


# Coordinator -> Worker

@dataclass(frozen=True)
class PointerChanged:
    """A block was accepted: search the new epoch from this pointer."""
    epoch: int
    pointer: HashPointer
