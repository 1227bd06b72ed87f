"""
Proposal Validation for the HASHCHAIN miner
Classifies worker results before the coordinator acts on them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
import logging

from core.blockchain import Block, HashPointer
from .messages import Found, Update

logger = logging.getLogger(__name__)


class ProposalResult(Enum):
    """Result of proposal validation."""
    VALID_PROPOSAL = "valid_proposal"
    VALID_FINAL = "valid_final"
    STALE_EPOCH = "stale_epoch"
    EXCLUDED_WORKER = "excluded_worker"
    LOW_DIFFICULTY = "low_difficulty"
    INVALID_HASH = "invalid_hash"

    @property
    def is_valid(self) -> bool:
        return self in (ProposalResult.VALID_PROPOSAL, ProposalResult.VALID_FINAL)


@dataclass
class Proposal:
    """A worker result checked against the current epoch."""
    worker_id: int
    epoch: int
    block: Optional[Block]
    result: ProposalResult
    arrival: int = 0

    @property
    def difficulty(self) -> int:
        return self.block.difficulty if self.block else 0


class ProposalValidator:
    """Validates Update/Found messages against the authoritative epoch."""

    def __init__(self, identity: str, target_difficulty: int, verify_hashes: bool = True):
        self.identity = identity
        self.target_difficulty = target_difficulty
        self.verify_hashes = verify_hashes

    def validate(self, message: Union[Update, Found], epoch: int, pointer: HashPointer,
                 excluded: bool = False, arrival: int = 0) -> Proposal:
        """
        Validate a worker result.

        Args:
            message: Update or Found from a worker
            epoch: Current epoch id
            pointer: Current chain tip
            excluded: Whether the sending worker has been excluded
            arrival: Arrival order within the batch, used to break ties

        Returns:
            Proposal with result
        """
        proposal = Proposal(worker_id=message.worker_id, epoch=message.epoch, block=None,
                            result=ProposalResult.INVALID_HASH, arrival=arrival)

        if excluded:
            proposal.result = ProposalResult.EXCLUDED_WORKER
            logger.debug(f"Ignoring result from excluded worker #{message.worker_id}")
            return proposal

        if message.epoch != epoch:
            proposal.result = ProposalResult.STALE_EPOCH
            logger.debug(f"Stale result from worker #{message.worker_id}: "
                         f"epoch {message.epoch} != {epoch} (difficulty {message.difficulty})")
            return proposal

        if message.difficulty <= pointer.difficulty:
            proposal.result = ProposalResult.LOW_DIFFICULTY
            logger.debug(f"Low difficulty from worker #{message.worker_id}: "
                         f"{message.difficulty} <= {pointer.difficulty}")
            return proposal

        block = Block(previous=pointer.hash, identity=self.identity, nonce=message.nonce,
                      hash=message.hash, difficulty=message.difficulty)
        if self.verify_hashes and not block.verify():
            logger.warning(f"Hash mismatch from worker #{message.worker_id} at nonce {message.nonce}")
            return proposal

        proposal.block = block
        if block.difficulty >= self.target_difficulty:
            proposal.result = ProposalResult.VALID_FINAL
        else:
            proposal.result = ProposalResult.VALID_PROPOSAL
        return proposal


def select_best(proposals: list) -> Optional[Proposal]:
    """Highest difficulty wins; ties go to the earliest arrival."""
    best = None
    for proposal in proposals:
        if best is None or proposal.difficulty > best.difficulty:
            best = proposal
        elif proposal.difficulty == best.difficulty and proposal.arrival < best.arrival:
            best = proposal
    return best
