"""
Tests for the HASHCHAIN search coordinator and proposal validation.
"""

import hashlib
import json
import queue
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.blockchain import Block, ChainLedger, HashPointer
from core.crypto import score
from ledger_client import SubmitResult
from mining.coordinator import Coordinator, ExtensionState, MiningResult, PoolFailure
from mining.messages import Exhausted, Found, PointerChanged, Progress, Update, WorkerError
from mining.share import ProposalResult, ProposalValidator, select_best
from mining.workers import WorkerInfo


START = HashPointer.from_hash('f' * 64)
IDENTITY = "alice"


def make_result(previous, difficulty, worker_id=0, epoch=0, cls=Update, skip=()):
    """Worker result with a real nonce of exactly the given difficulty."""
    nonce = 0
    while True:
        digest, d = score(previous, IDENTITY, nonce)
        if d == difficulty and str(nonce) not in skip:
            return cls(worker_id=worker_id, epoch=epoch, nonce=str(nonce), hash=digest, difficulty=d)
        nonce += 1


class RecordingSubmitter:
    """Returns queued results and records every submission."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def submit(self, previous_hash, identity, nonce):
        self.calls.append((previous_hash, identity, nonce))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SubmitResult.ok()


def make_coordinator(submitter=None, target=10, ledger=None, workers=0, **kwargs):
    coordinator = Coordinator(
        identity=IDENTITY,
        pointer=START,
        target_difficulty=target,
        submitter=submitter or RecordingSubmitter(),
        ledger=ledger,
        threads=max(workers, 1),
        backend='thread',
        retry_delay=0,
        **kwargs
    )
    for worker_id in range(workers):
        coordinator.manager.workers[worker_id] = WorkerInfo(
            id=worker_id, strategy='sequential', inbox=queue.Queue())
    return coordinator


class TestProposalValidator:
    """Test classification of worker results."""

    def test_valid_proposal(self):
        validator = ProposalValidator(IDENTITY, 10)
        update = make_result(START.hash, 3)
        proposal = validator.validate(update, 0, START)

        assert proposal.result == ProposalResult.VALID_PROPOSAL
        assert proposal.block.hash == update.hash

    def test_valid_final(self):
        validator = ProposalValidator(IDENTITY, 3)
        proposal = validator.validate(make_result(START.hash, 3), 0, START)
        assert proposal.result == ProposalResult.VALID_FINAL

    def test_stale_epoch(self):
        validator = ProposalValidator(IDENTITY, 10)
        proposal = validator.validate(make_result(START.hash, 3, epoch=0), 1, START)
        assert proposal.result == ProposalResult.STALE_EPOCH

    def test_excluded(self):
        validator = ProposalValidator(IDENTITY, 10)
        proposal = validator.validate(make_result(START.hash, 3), 0, START, excluded=True)
        assert proposal.result == ProposalResult.EXCLUDED_WORKER

    def test_low_difficulty(self):
        pointer = HashPointer.from_hash('0f' + 'f' * 62, difficulty=4)
        validator = ProposalValidator(IDENTITY, 10)
        proposal = validator.validate(make_result(pointer.hash, 4), 0, pointer)
        assert proposal.result == ProposalResult.LOW_DIFFICULTY

    def test_invalid_hash(self):
        """A claimed difficulty that does not match the hash is rejected."""
        update = make_result(START.hash, 3)
        forged = Update(worker_id=0, epoch=0, nonce=update.nonce, hash=update.hash, difficulty=9)
        proposal = ProposalValidator(IDENTITY, 10).validate(forged, 0, START)

        assert proposal.result == ProposalResult.INVALID_HASH
        assert not proposal.result.is_valid

    def test_select_best(self):
        validator = ProposalValidator(IDENTITY, 10)
        low = validator.validate(make_result(START.hash, 2), 0, START, arrival=0)
        high = validator.validate(make_result(START.hash, 4), 0, START, arrival=1)

        assert select_best([low, high]) is high
        assert select_best([]) is None

    def test_select_best_tie_goes_to_first(self):
        validator = ProposalValidator(IDENTITY, 10)
        first_msg = make_result(START.hash, 3, worker_id=0)
        second_msg = make_result(START.hash, 3, worker_id=1, skip={first_msg.nonce})
        first = validator.validate(first_msg, 0, START, arrival=0)
        second = validator.validate(second_msg, 0, START, arrival=1)

        assert select_best([second, first]) is first


class TestCoordinatorSetup:
    """Test construction checks."""

    def test_target_above_pointer(self):
        pointer = HashPointer.from_hash('0' * 64, difficulty=45)
        with pytest.raises(ValueError):
            Coordinator(IDENTITY, pointer, target_difficulty=45, backend='thread')

    def test_target_within_hash_width(self):
        with pytest.raises(ValueError):
            Coordinator(IDENTITY, START, target_difficulty=257, backend='thread')

    def test_initial_state(self):
        coordinator = make_coordinator()
        assert coordinator.epoch == 0
        assert coordinator.state == ExtensionState.SEARCHING
        assert coordinator.pointer == START


class TestBatchReduction:
    """Test how one batch of messages is reduced."""

    def test_best_of_batch_submitted(self):
        """Only the highest-difficulty proposal in a batch is submitted."""
        submitter = RecordingSubmitter()
        coordinator = make_coordinator(submitter)
        low = make_result(START.hash, 2, worker_id=0)
        high = make_result(START.hash, 4, worker_id=1)

        assert coordinator.process_messages([low, high]) is None

        assert submitter.calls == [(START.hash, IDENTITY, high.nonce)]
        assert coordinator.epoch == 1
        assert coordinator.pointer == HashPointer(high.hash, high.nonce, 4)

    def test_progress_counted(self):
        coordinator = make_coordinator()
        coordinator.process_messages([Progress(0, 0, 100), Progress(1, 0, 50)])
        assert coordinator.total_hashes == 150

    def test_stale_epoch_after_acceptance(self):
        submitter = RecordingSubmitter()
        coordinator = make_coordinator(submitter)
        coordinator.process_messages([make_result(START.hash, 3)])
        assert coordinator.epoch == 1

        # Computed against the old pointer, tagged with the old epoch
        stale = make_result(START.hash, 6, worker_id=1, epoch=0)
        coordinator.process_messages([stale])

        assert len(submitter.calls) == 1
        assert coordinator.epoch == 1

    def test_low_difficulty_after_acceptance(self):
        submitter = RecordingSubmitter()
        coordinator = make_coordinator(submitter)
        coordinator.process_messages([make_result(START.hash, 4)])
        pointer = coordinator.pointer

        coordinator.process_messages([make_result(pointer.hash, 3, epoch=1)])

        assert len(submitter.calls) == 1
        assert coordinator.pointer == pointer

    def test_broadcast_on_acceptance(self):
        coordinator = make_coordinator(workers=2)
        coordinator.process_messages([make_result(START.hash, 3)])

        for info in coordinator.manager.workers.values():
            message = info.inbox.get_nowait()
            assert isinstance(message, PointerChanged)
            assert message.epoch == 1
            assert message.pointer == coordinator.pointer


class TestChainExtension:
    """Test submission outcomes."""

    def test_rejected_then_accepted(self, tmp_path):
        """Rejected blocks never reach the ledger; the epoch stays put."""
        ledger_path = str(tmp_path / "chain.log")
        ledger = ChainLedger(ledger_path, IDENTITY)
        submitter = RecordingSubmitter(SubmitResult.rejected("duplicate"), SubmitResult.ok())
        coordinator = make_coordinator(submitter, ledger=ledger)

        coordinator.process_messages([make_result(START.hash, 3)])
        assert coordinator.epoch == 0
        assert coordinator.pointer == START
        assert ledger.height == 0

        second = make_result(START.hash, 4)
        coordinator.process_messages([second])

        assert coordinator.epoch == 1
        resumed = ChainLedger(ledger_path, IDENTITY)
        assert resumed.height == 1
        assert resumed.tip() == HashPointer(second.hash, second.nonce, second.difficulty)

    def test_transport_retry(self):
        submitter = RecordingSubmitter(SubmitResult.transport_error("timeout"),
                                       SubmitResult.transport_error("timeout"),
                                       SubmitResult.ok())
        coordinator = make_coordinator(submitter, submit_retries=2)
        block = Block.create(START.hash, IDENTITY, make_result(START.hash, 3).nonce)

        assert coordinator.extend_chain(block)
        assert len(submitter.calls) == 3
        assert coordinator.blocks_accepted == 1

    def test_transport_failure_gives_up(self):
        submitter = RecordingSubmitter(*[SubmitResult.transport_error("down")] * 5)
        coordinator = make_coordinator(submitter, submit_retries=1)
        block = Block.create(START.hash, IDENTITY, make_result(START.hash, 3).nonce)

        assert not coordinator.extend_chain(block)
        assert len(submitter.calls) == 2
        assert coordinator.epoch == 0
        assert coordinator.state == ExtensionState.SEARCHING

    def test_rejection_not_retried(self):
        submitter = RecordingSubmitter(SubmitResult.rejected("bad"))
        coordinator = make_coordinator(submitter, submit_retries=3)
        block = Block.create(START.hash, IDENTITY, make_result(START.hash, 3).nonce)

        assert not coordinator.extend_chain(block)
        assert len(submitter.calls) == 1

    def test_submitter_exception_is_transport_error(self):
        submitter = RecordingSubmitter(ConnectionError("reset"), SubmitResult.ok())
        coordinator = make_coordinator(submitter, submit_retries=1)
        block = Block.create(START.hash, IDENTITY, make_result(START.hash, 3).nonce)

        assert coordinator.extend_chain(block)
        assert len(submitter.calls) == 2


class TestTermination:
    """Test the conditions that end a run."""

    def test_found_is_final(self, tmp_path):
        ledger = ChainLedger(str(tmp_path / "chain.log"), IDENTITY)
        coordinator = make_coordinator(target=5, ledger=ledger, workers=1)
        found = make_result(START.hash, 5, cls=Found)

        result = coordinator.process_messages([found])

        assert result.found
        assert result.accepted
        assert result.reason == 'target_reached'
        assert result.nonce == found.nonce
        assert result.difficulty == 5
        assert ledger.tip().hash == found.hash
        # No new epoch is broadcast for the final block
        assert coordinator.manager.workers[0].inbox.empty()

    def test_update_at_target_is_final(self):
        coordinator = make_coordinator(target=5)
        result = coordinator.process_messages([make_result(START.hash, 6)])

        assert result is not None
        assert result.reason == 'target_reached'

    def test_final_wins_over_proposals(self):
        submitter = RecordingSubmitter()
        coordinator = make_coordinator(submitter, target=5)
        proposal = make_result(START.hash, 4, worker_id=0)
        final = make_result(START.hash, 5, worker_id=1, cls=Found)

        result = coordinator.process_messages([proposal, final])

        assert result.nonce == final.nonce
        assert submitter.calls == [(START.hash, IDENTITY, final.nonce)]

    def test_final_rejected_still_ends(self):
        submitter = RecordingSubmitter(SubmitResult.rejected("late"))
        coordinator = make_coordinator(submitter, target=5)

        result = coordinator.process_messages([make_result(START.hash, 5, cls=Found)])

        assert result.found
        assert not result.accepted
        assert coordinator.blocks_accepted == 0

    def test_worker_error_excludes(self):
        submitter = RecordingSubmitter()
        coordinator = make_coordinator(submitter, workers=2)

        coordinator.process_messages([WorkerError(0, 0, "RuntimeError: boom")])
        assert coordinator.manager.is_excluded(0)

        coordinator.process_messages([make_result(START.hash, 3, worker_id=0)])
        assert submitter.calls == []

        with pytest.raises(PoolFailure):
            coordinator.process_messages([WorkerError(1, 0, "RuntimeError: boom")])

    def test_exhausted(self):
        coordinator = make_coordinator(workers=2)
        assert coordinator.process_messages([Exhausted(0, 0, 10)]) is None

        result = coordinator.process_messages([Exhausted(1, 0, 10)])

        assert result.reason == 'exhausted'
        assert not result.found

    def test_old_epoch_exhaustion_ignored(self):
        coordinator = make_coordinator(workers=1)
        coordinator.process_messages([make_result(START.hash, 3)])

        assert coordinator.process_messages([Exhausted(0, 0, 10)]) is None


class TestMiningResult:
    """Test the result artifact."""

    def test_save(self, tmp_path):
        path = str(tmp_path / "out" / "result.json")
        result = MiningResult(hash='ab' * 32, nonce='7', difficulty=12, elapsed=1.23456,
                              found=True, accepted=True, reason='target_reached')
        result.save(path)

        with open(path) as f:
            data = json.load(f)
        assert data['nonce'] == '7'
        assert data['difficulty'] == 12
        assert data['elapsed'] == 1.235
        assert 'tip' not in data


class TargetOnlySubmitter:
    """Accepts only blocks at or above a difficulty, so the pointer stays put until then."""

    def __init__(self, difficulty):
        self.difficulty = difficulty
        self.calls = []

    def submit(self, previous_hash, identity, nonce):
        self.calls.append(nonce)
        if score(previous_hash, identity, nonce)[1] >= self.difficulty:
            return SubmitResult.ok()
        return SubmitResult.rejected("below target")


def first_nonce_reaching(previous, difficulty):
    """Independent reference: first sequential nonce whose sha256 has enough zero bits."""
    nonce = 0
    while True:
        digest = hashlib.sha256(f"{previous}{IDENTITY}{nonce}".encode()).digest()
        if 256 - int.from_bytes(digest, 'big').bit_length() >= difficulty:
            return str(nonce), digest.hex()
        nonce += 1


class TestEndToEnd:
    """Full runs with thread and process workers."""

    def test_single_sequential_worker(self):
        """One sequential worker from an all-zero genesis returns the first nonce reaching 8 bits."""
        zero = '0' * 64
        submitter = TargetOnlySubmitter(8)
        coordinator = Coordinator(
            identity=IDENTITY,
            pointer=HashPointer.from_hash(zero),
            target_difficulty=8,
            submitter=submitter,
            threads=1,
            strategy='sequential',
            backend='thread',
            check_interval=50,
            poll_interval=0.05,
        )

        result = coordinator.run()

        nonce, expected = first_nonce_reaching(zero, 8)
        assert result.found
        assert result.accepted
        assert result.nonce == nonce
        assert result.hash == expected
        assert result.blocks_accepted == 1
        assert submitter.calls[-1] == nonce

    def test_process_backend_reaches_target(self, tmp_path):
        """Two worker processes reach the target and every block lands in the ledger."""
        ledger = ChainLedger(str(tmp_path / "chain.log"), IDENTITY)
        coordinator = Coordinator(
            identity=IDENTITY,
            pointer=START,
            target_difficulty=10,
            ledger=ledger,
            threads=2,
            backend='process',
            progress_interval=0.05,
            check_interval=100,
            poll_interval=0.05,
        )

        result = coordinator.run()

        assert result.found
        assert result.accepted
        assert result.difficulty >= 10
        assert result.total_hashes > 0
        assert ledger.tip().hash == result.hash
        assert ledger.verify()
        assert not any(info.is_alive() for info in coordinator.manager.workers.values())

    def test_run_reaches_target(self, tmp_path):
        ledger_path = str(tmp_path / "chain.log")
        result_path = str(tmp_path / "result.json")
        ledger = ChainLedger(ledger_path, IDENTITY)
        coordinator = Coordinator(
            identity=IDENTITY,
            pointer=START,
            target_difficulty=8,
            ledger=ledger,
            threads=2,
            backend='thread',
            progress_interval=0.05,
            check_interval=50,
            poll_interval=0.05,
            result_path=result_path,
        )

        result = coordinator.run()

        assert result.found
        assert result.accepted
        assert result.difficulty >= 8
        assert result.total_hashes > 0

        blocks = ledger.blocks()
        assert blocks[0].previous == START.hash
        assert blocks[-1].hash == result.hash
        assert len(blocks) == result.blocks_accepted
        assert ledger.verify()
        # Each accepted block raises the pointer difficulty
        difficulties = [b.difficulty for b in blocks]
        assert difficulties == sorted(set(difficulties))

        with open(result_path) as f:
            assert json.load(f)['hash'] == result.hash
