"""
HASHCHAIN Mining Pool
"""

from .coordinator import Coordinator, ExtensionState, MiningResult, PoolFailure
from .workers import MiningWorker, WorkerManager, WorkerState
from .share import ProposalValidator, ProposalResult

__all__ = [
    'Coordinator',
    'ExtensionState',
    'MiningResult',
    'PoolFailure',
    'MiningWorker',
    'WorkerManager',
    'WorkerState',
    'ProposalValidator',
    'ProposalResult',
]
