"""
HASHCHAIN Search Coordinator
Reduces worker results into one global best and extends the chain.
"""

import json
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from core.blockchain import Block, ChainLedger, HashPointer
from ledger_client import OfflineSubmitter, SubmitResult, SubmitStatus
from .messages import Exhausted, Found, PointerChanged, Progress, Update, WorkerError
from .share import ProposalResult, ProposalValidator, select_best
from .workers import WorkerManager
import config

logger = logging.getLogger(__name__)


class PoolFailure(Exception):
    """Every worker in the pool has failed."""


class ExtensionState(Enum):
    """Chain extension protocol state."""
    SEARCHING = "searching"
    PROPOSED = "proposed"
    SUBMITTING = "submitting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class MiningResult:
    """Outcome of a search run."""
    hash: str
    nonce: str
    difficulty: int
    elapsed: float
    found: bool
    accepted: bool = False
    reason: str = ''
    blocks_accepted: int = 0
    total_hashes: int = 0
    tip: Optional[HashPointer] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.hash,
            'nonce': self.nonce,
            'difficulty': self.difficulty,
            'elapsed': round(self.elapsed, 3),
            'found': self.found,
            'accepted': self.accepted,
            'reason': self.reason,
            'blocks_accepted': self.blocks_accepted,
            'total_hashes': self.total_hashes,
        }

    def save(self, filepath: str):
        """Write the result artifact as JSON."""
        directory = os.path.dirname(os.path.abspath(filepath))
        os.makedirs(directory, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)


class Coordinator:
    """
    Owns the authoritative pointer and epoch id, the worker pool, and the
    chain extension protocol.

    Workers only ever see copies of the pointer, delivered through
    PointerChanged broadcasts; results tagged with an older epoch are
    dropped.
    """

    def __init__(self,
                 identity: str,
                 pointer: HashPointer,
                 target_difficulty: int = config.REQUIRED_DIFFICULTY,
                 submitter=None,
                 ledger: Optional[ChainLedger] = None,
                 threads: Optional[int] = None,
                 strategy: str = config.NONCE_STRATEGY,
                 backend: str = config.WORKER_BACKEND,
                 progress_interval: float = config.PROGRESS_INTERVAL,
                 check_interval: int = config.CHECK_INTERVAL,
                 poll_interval: float = config.POLL_INTERVAL,
                 stats_interval: float = config.STATS_INTERVAL,
                 submit_retries: int = config.SUBMIT_RETRIES,
                 retry_delay: float = config.RETRY_DELAY,
                 max_nonce: Optional[int] = config.MAX_NONCE,
                 result_path: Optional[str] = None):

        if target_difficulty > config.HASH_BITS:
            raise ValueError(f"Target difficulty {target_difficulty} exceeds {config.HASH_BITS} bits")
        if target_difficulty <= pointer.difficulty:
            raise ValueError(
                f"Target difficulty {target_difficulty} must be above the "
                f"starting pointer difficulty {pointer.difficulty}"
            )

        self.identity = identity
        self.pointer = pointer
        self.target_difficulty = target_difficulty
        self.submitter = submitter or OfflineSubmitter()
        self.ledger = ledger
        self.threads = threads or config.default_thread_count()
        self.strategy = strategy
        self.progress_interval = progress_interval
        self.check_interval = check_interval
        self.poll_interval = poll_interval
        self.stats_interval = stats_interval
        self.submit_retries = max(0, submit_retries)
        self.retry_delay = retry_delay
        self.max_nonce = max_nonce
        self.result_path = result_path

        self.manager = WorkerManager(backend=backend)
        self.validator = ProposalValidator(identity, target_difficulty)

        self.epoch = 0
        self.state = ExtensionState.SEARCHING
        self.total_hashes = 0
        self.blocks_accepted = 0
        self.best: Optional[Block] = None
        self.accepted_blocks: List[Block] = []
        self.start_time = 0.0
        self._last_stats = 0.0
        self._last_stats_hashes = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time if self.start_time else 0.0

    def start(self):
        """Spawn the worker pool on the current epoch."""
        self.start_time = time.time()
        self._last_stats = self.start_time
        logger.info(f"Searching from {self.pointer.hash} (difficulty {self.pointer.difficulty}) "
                    f"for difficulty {self.target_difficulty} as {self.identity!r}")
        self.manager.start(
            identity=self.identity,
            pointer=self.pointer,
            epoch=self.epoch,
            target_difficulty=self.target_difficulty,
            count=self.threads,
            strategy=self.strategy,
            progress_interval=self.progress_interval,
            check_interval=self.check_interval,
            max_nonce=self.max_nonce,
        )

    def run(self) -> MiningResult:
        """Search until the target difficulty is reached; returns the result."""
        self.start()
        result = None
        try:
            while result is None:
                result = self.step()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping workers...")
            result = self._build_result(None, reason='interrupted')
        finally:
            self.shutdown()

        result.total_hashes = self.total_hashes
        result.elapsed = self.elapsed
        if self.result_path:
            result.save(self.result_path)
            logger.info(f"Result written to {self.result_path}")
        return result

    def step(self, timeout: Optional[float] = None) -> Optional[MiningResult]:
        """Process one batch of worker messages."""
        messages = self.manager.drain(self.poll_interval if timeout is None else timeout)
        self.manager.check_alive()
        result = self.process_messages(messages)
        self._maybe_log_stats()
        return result

    def shutdown(self):
        """Stop every worker and account for their last progress reports."""
        for message in self.manager.stop():
            if isinstance(message, Progress) and not self.manager.is_excluded(message.worker_id):
                self._record_progress(message)

    # ------------------------------------------------------------------
    # Message reduction
    # ------------------------------------------------------------------

    def process_messages(self, messages: list) -> Optional[MiningResult]:
        """
        Reduce one batch of worker messages.

        Returns a MiningResult when the search is over, None otherwise.
        Raises PoolFailure when no worker is left.
        """
        proposals = []
        finals = []

        for arrival, message in enumerate(messages):
            if isinstance(message, WorkerError):
                self._handle_error(message)
                continue

            if self.manager.is_excluded(message.worker_id):
                continue

            if isinstance(message, Progress):
                self._record_progress(message)
            elif isinstance(message, (Update, Found)):
                proposal = self.validator.validate(message, self.epoch, self.pointer, arrival=arrival)
                if not proposal.result.is_valid:
                    continue
                self.manager.record_update(message.worker_id, message.difficulty)
                self._track_best(proposal.block)
                if proposal.result is ProposalResult.VALID_FINAL:
                    finals.append(proposal)
                else:
                    proposals.append(proposal)
            elif isinstance(message, Exhausted):
                if message.epoch == self.epoch:
                    self.manager.mark_exhausted(message.worker_id, message.epoch)
                    logger.info(f"Worker #{message.worker_id} exhausted its range after {message.count:,} nonces")
            else:
                logger.warning(f"Unknown worker message: {message!r}")

        if self.manager.all_failed():
            raise PoolFailure("All workers have failed")

        if finals:
            winner = select_best(finals)
            logger.info(f"Target difficulty {self.target_difficulty} reached by worker "
                        f"#{winner.worker_id}: nonce={winner.block.nonce} difficulty={winner.difficulty}")
            accepted = self.extend_chain(winner.block, final=True)
            return self._build_result(winner.block, reason='target_reached', accepted=accepted)

        if proposals:
            winner = select_best(proposals)
            for proposal in proposals:
                if proposal is not winner:
                    logger.debug(f"Discarding proposal from worker #{proposal.worker_id} "
                                 f"(difficulty {proposal.difficulty}) in favour of {winner.difficulty}")
            self.extend_chain(winner.block)

        if self.manager.all_exhausted(self.epoch):
            logger.info("Every worker exhausted its nonce range without reaching the target")
            return self._build_result(None, reason='exhausted')

        return None

    def _record_progress(self, message: Progress):
        self.total_hashes += message.count
        self.manager.record_progress(message.worker_id, message.count)

    def _handle_error(self, message: WorkerError):
        self.manager.mark_failed(message.worker_id, message.error)
        if message.traceback:
            logger.debug(f"Worker #{message.worker_id} traceback:\n{message.traceback}")
        remaining = len(self.manager.active_workers())
        logger.warning(f"{remaining} workers remaining")

    def _track_best(self, block: Block):
        if self.best is None or block.difficulty > self.best.difficulty:
            self.best = block

    # ------------------------------------------------------------------
    # Chain extension
    # ------------------------------------------------------------------

    def extend_chain(self, block: Block, final: bool = False) -> bool:
        """
        Run the chain extension protocol for a proposed block.

        On acceptance the block is appended to the ledger, becomes the new
        pointer and, unless this is the final block, the new epoch is
        broadcast to every worker. Returns True if the block was accepted.
        """
        self.state = ExtensionState.PROPOSED
        logger.info(f"Proposing block: nonce={block.nonce} difficulty={block.difficulty} hash={block.hash}")

        self.state = ExtensionState.SUBMITTING
        result = self._submit(block)

        if not result.accepted:
            self.state = ExtensionState.REJECTED
            if result.status is SubmitStatus.TRANSPORT_ERROR:
                logger.warning(f"Submission failed, staying on epoch {self.epoch}: {result.reason}")
            else:
                logger.warning(f"Block rejected: {result.reason}")
            self.state = ExtensionState.SEARCHING
            return False

        self.state = ExtensionState.ACCEPTED
        if self.ledger is not None:
            self.ledger.append(block)
        self.pointer = block.to_pointer()
        self.epoch += 1
        self.blocks_accepted += 1
        self.accepted_blocks.append(block)
        logger.info(f"Block accepted ({self.blocks_accepted} total), epoch {self.epoch}: "
                    f"{self.pointer.hash} difficulty {self.pointer.difficulty}")

        if not final:
            self.manager.broadcast(PointerChanged(epoch=self.epoch, pointer=self.pointer))
        self.state = ExtensionState.SEARCHING
        return True

    def _submit(self, block: Block) -> SubmitResult:
        """Submit with retries on transport failure; rejections are final."""
        attempts = 1 + self.submit_retries
        result = SubmitResult.transport_error("not submitted")
        for attempt in range(1, attempts + 1):
            try:
                result = self.submitter.submit(block.previous, block.identity, block.nonce)
            except Exception as e:
                result = SubmitResult.transport_error(f"{type(e).__name__}: {e}")

            if result.status is not SubmitStatus.TRANSPORT_ERROR:
                return result

            logger.warning(f"Submit attempt {attempt}/{attempts} failed: {result.reason}")
            if attempt < attempts:
                time.sleep(self.retry_delay)
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _build_result(self, block: Optional[Block], reason: str, accepted: bool = False) -> MiningResult:
        found = block is not None
        best = block or self.best
        if best is None:
            hash_hex, nonce, difficulty = self.pointer.hash, self.pointer.nonce, self.pointer.difficulty
        else:
            hash_hex, nonce, difficulty = best.hash, best.nonce, best.difficulty
        return MiningResult(
            hash=hash_hex,
            nonce=nonce,
            difficulty=difficulty,
            elapsed=self.elapsed,
            found=found,
            accepted=accepted,
            reason=reason,
            blocks_accepted=self.blocks_accepted,
            total_hashes=self.total_hashes,
            tip=self.pointer,
        )

    def _maybe_log_stats(self):
        now = time.time()
        interval = now - self._last_stats
        if interval < self.stats_interval:
            return
        hashrate = (self.total_hashes - self._last_stats_hashes) / interval if interval > 0 else 0
        self._last_stats = now
        self._last_stats_hashes = self.total_hashes
        best = self.best.difficulty if self.best else self.pointer.difficulty
        logger.info(f"{config.format_hashrate(hashrate)} | hashes: {self.total_hashes:,} | "
                    f"best: {best} | blocks: {self.blocks_accepted} | epoch: {self.epoch} | "
                    f"workers: {len(self.manager.active_workers())}/{self.threads}")

    def get_stats(self) -> dict:
        """Coordinator and worker statistics."""
        elapsed = self.elapsed
        return {
            'identity': self.identity,
            'epoch': self.epoch,
            'state': self.state.value,
            'pointer': self.pointer.to_dict(),
            'target_difficulty': self.target_difficulty,
            'best_difficulty': self.best.difficulty if self.best else None,
            'blocks_accepted': self.blocks_accepted,
            'total_hashes': self.total_hashes,
            'hashrate': self.total_hashes / elapsed if elapsed > 0 else 0.0,
            'elapsed': elapsed,
            'workers': self.manager.get_stats(),
        }
