"""
Worker Management for the HASHCHAIN miner
Scanning workers, their local state, and the pool that runs them.
"""

import time
import queue
import threading
import traceback
import multiprocessing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from core.blockchain import HashPointer
from core.crypto import Hasher
from core.nonce import NonceSpaceExhausted, create_generator
from .messages import (
    Exhausted,
    Found,
    PointerChanged,
    Progress,
    Update,
    WorkerError,
)
import config

logger = logging.getLogger(__name__)

BACKENDS = ('process', 'thread')


class WorkerStatus(Enum):
    """Scan loop state of a worker."""
    IDLE = "idle"
    SCANNING = "scanning"
    REPORTING = "reporting"
    YIELDING = "yielding"
    SUSPENDED = "suspended"
    EXHAUSTED = "exhausted"
    TERMINATED = "terminated"


@dataclass
class WorkerState:
    """State owned by one worker. Reset, never replaced, on epoch change."""
    worker_id: int
    strategy: str
    epoch: int = 0
    best_difficulty: int = 0
    best_nonce: str = ''
    best_hash: str = ''
    hashes_since_report: int = 0
    total_hashes: int = 0
    status: WorkerStatus = WorkerStatus.IDLE

    def reset(self, epoch: int, difficulty: int):
        self.epoch = epoch
        self.best_difficulty = difficulty
        self.best_nonce = ''
        self.best_hash = ''

    def record_best(self, nonce: str, hash_hex: str, difficulty: int):
        self.best_nonce = nonce
        self.best_hash = hash_hex
        self.best_difficulty = difficulty


class MiningWorker:
    """
    Scans nonces for one epoch at a time and reports to the coordinator.
    Workers never log: spawned processes have no handlers configured, so
    everything, failures included, goes through the outbox.

    outbox is shared by all workers; inbox carries PointerChanged messages
    for this worker only. The shutdown event and the inbox are checked every
    check_interval hashes.
    """

    WAIT_TIMEOUT = 0.1

    def __init__(self, worker_id: int, worker_count: int, identity: str,
                 pointer: HashPointer, epoch: int, target_difficulty: int,
                 outbox: Any, inbox: Any, stop_event: Any,
                 strategy: str = config.NONCE_STRATEGY,
                 progress_interval: float = config.PROGRESS_INTERVAL,
                 check_interval: int = config.CHECK_INTERVAL,
                 max_nonce: Optional[int] = config.MAX_NONCE):
        self.worker_id = worker_id
        self.worker_count = worker_count
        self.identity = identity
        self.pointer = pointer
        self.target_difficulty = target_difficulty
        self.outbox = outbox
        self.inbox = inbox
        self.stop_event = stop_event
        self.strategy = strategy
        self.progress_interval = progress_interval
        self.check_interval = max(1, check_interval)
        self.max_nonce = max_nonce

        self.state = WorkerState(worker_id=worker_id, strategy=strategy)
        self.state.reset(epoch, pointer.difficulty)
        self.generator = None
        self.hasher = None
        self._last_report = 0.0

    def run(self):
        """Entry point for the worker thread or process."""
        try:
            self.generator = create_generator(self.strategy, self.worker_id, self.worker_count,
                                              max_nonce=self.max_nonce)
            self.hasher = Hasher(self.pointer.hash, self.identity)
            self._last_report = time.monotonic()
            self._scan()
        except KeyboardInterrupt:
            # Ctrl+C reaches every process; the coordinator owns shutdown
            return
        except Exception as e:
            self._send(WorkerError(
                worker_id=self.worker_id,
                epoch=self.state.epoch,
                error=f"{type(e).__name__}: {e}",
                traceback=traceback.format_exc(),
            ))
        finally:
            self._flush_progress()
            self.state.status = WorkerStatus.TERMINATED

    def _scan(self):
        state = self.state
        while not self.stop_event.is_set():
            state.status = WorkerStatus.SCANNING
            hasher = self.hasher
            generator = self.generator
            target = self.target_difficulty

            for _ in range(self.check_interval):
                try:
                    nonce, _ = generator.next()
                except NonceSpaceExhausted:
                    self._flush_progress()
                    self._send(Exhausted(worker_id=self.worker_id, epoch=state.epoch,
                                         count=generator.counter))
                    self._wait_for_instruction(WorkerStatus.EXHAUSTED)
                    break

                digest, difficulty = hasher.score(nonce)
                state.hashes_since_report += 1
                state.total_hashes += 1

                if difficulty > state.best_difficulty:
                    state.record_best(nonce, digest, difficulty)
                    self._send(Update(worker_id=self.worker_id, epoch=state.epoch,
                                      nonce=nonce, hash=digest, difficulty=difficulty))
                    if difficulty >= target:
                        self._flush_progress()
                        self._send(Found(worker_id=self.worker_id, epoch=state.epoch,
                                         nonce=nonce, hash=digest, difficulty=difficulty))
                        # Only the coordinator decides when the pool stops
                        self._wait_for_instruction(WorkerStatus.SUSPENDED)
                        break

            self._maybe_report_progress()
            self._poll_inbox()

    def _send(self, message):
        self.outbox.put(message)

    def _maybe_report_progress(self):
        if time.monotonic() - self._last_report >= self.progress_interval:
            self.state.status = WorkerStatus.REPORTING
            self._flush_progress()

    def _flush_progress(self):
        state = self.state
        if state.hashes_since_report:
            self._send(Progress(worker_id=self.worker_id, epoch=state.epoch,
                                count=state.hashes_since_report))
            state.hashes_since_report = 0
        self._last_report = time.monotonic()

    def _poll_inbox(self):
        while True:
            try:
                message = self.inbox.get_nowait()
            except queue.Empty:
                return
            self._handle_control(message)

    def _wait_for_instruction(self, status: WorkerStatus):
        """Block until a newer epoch arrives or the pool shuts down."""
        self.state.status = status
        while not self.stop_event.is_set():
            try:
                message = self.inbox.get(timeout=self.WAIT_TIMEOUT)
            except queue.Empty:
                continue
            if self._handle_control(message):
                return

    def _handle_control(self, message) -> bool:
        """Apply a control message; True if the worker moved to a new epoch."""
        if isinstance(message, PointerChanged) and message.epoch > self.state.epoch:
            self._apply_pointer(message)
            return True
        return False

    def _apply_pointer(self, message: PointerChanged):
        self.state.status = WorkerStatus.YIELDING
        self._flush_progress()
        self.pointer = message.pointer
        self.state.reset(message.epoch, message.pointer.difficulty)
        self.generator.reset()
        self.hasher = Hasher(message.pointer.hash, self.identity)


def worker_main(worker: MiningWorker):
    """
    Worker thread/process target.
    Must be at module level for multiprocessing compatibility.
    """
    worker.run()


@dataclass
class WorkerInfo:
    """Coordinator-side view of a worker, built from its messages."""
    id: int
    strategy: str
    handle: Any = None
    inbox: Any = None
    started_at: float = field(default_factory=time.time)
    hashes: int = 0
    updates: int = 0
    best_difficulty: int = 0
    failed: bool = False
    error: str = ''
    exhausted_epoch: Optional[int] = None

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    @property
    def hashrate(self) -> float:
        uptime = self.uptime
        return self.hashes / uptime if uptime > 0 else 0.0

    def is_alive(self) -> bool:
        return self.handle is not None and self.handle.is_alive()

    def to_dict(self) -> dict:
        """Convert to dictionary for stats output."""
        return {
            'id': self.id,
            'strategy': self.strategy,
            'uptime': int(self.uptime),
            'hashes': self.hashes,
            'hashrate': round(self.hashrate, 2),
            'updates': self.updates,
            'best_difficulty': self.best_difficulty,
            'failed': self.failed,
            'error': self.error,
        }


class WorkerManager:
    """Runs the worker pool and keeps per-worker statistics."""

    def __init__(self, backend: str = config.WORKER_BACKEND):
        if backend not in BACKENDS:
            raise ValueError(f"Unknown worker backend: {backend!r} (expected one of {', '.join(BACKENDS)})")
        self.backend = backend
        self.workers: Dict[int, WorkerInfo] = {}
        self.lock = threading.RLock()
        self.outbox = None
        self.stop_event = None
        self.started = False

    def _new_queue(self):
        return multiprocessing.Queue() if self.backend == 'process' else queue.Queue()

    def start(self, identity: str, pointer: HashPointer, epoch: int, target_difficulty: int,
              count: int, strategy: str = config.NONCE_STRATEGY,
              progress_interval: float = config.PROGRESS_INTERVAL,
              check_interval: int = config.CHECK_INTERVAL,
              max_nonce: Optional[int] = config.MAX_NONCE):
        """Spawn count workers searching the given epoch."""
        if count < 1:
            raise ValueError("At least one worker is required")
        if self.started:
            raise RuntimeError("Worker pool already started")

        self.outbox = self._new_queue()
        if self.backend == 'process':
            self.stop_event = multiprocessing.Event()
        else:
            self.stop_event = threading.Event()

        with self.lock:
            for worker_id in range(count):
                inbox = self._new_queue()
                worker = MiningWorker(
                    worker_id=worker_id,
                    worker_count=count,
                    identity=identity,
                    pointer=pointer,
                    epoch=epoch,
                    target_difficulty=target_difficulty,
                    outbox=self.outbox,
                    inbox=inbox,
                    stop_event=self.stop_event,
                    strategy=strategy,
                    progress_interval=progress_interval,
                    check_interval=check_interval,
                    max_nonce=max_nonce,
                )
                name = f"hashchain-worker-{worker_id}"
                if self.backend == 'process':
                    handle = multiprocessing.Process(target=worker_main, args=(worker,), name=name, daemon=True)
                else:
                    handle = threading.Thread(target=worker_main, args=(worker,), name=name, daemon=True)
                self.workers[worker_id] = WorkerInfo(id=worker_id, strategy=strategy, handle=handle, inbox=inbox)

            for info in self.workers.values():
                info.handle.start()
            self.started = True

        logger.info(f"Started {count} {self.backend} workers ({strategy} nonces)")

    def get(self, timeout: float):
        """Next worker message, or None after timeout."""
        try:
            return self.outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, timeout: float) -> list:
        """Wait up to timeout for one message, then take everything already queued."""
        first = self.get(timeout)
        if first is None:
            return []
        messages = [first]
        while True:
            try:
                messages.append(self.outbox.get_nowait())
            except queue.Empty:
                return messages

    def broadcast(self, message):
        """Send a control message to every worker still running."""
        with self.lock:
            for info in self.workers.values():
                if info.failed:
                    continue
                try:
                    info.inbox.put(message)
                except Exception as e:
                    logger.debug(f"Failed to send to worker #{info.id}: {e}")

    def record_progress(self, worker_id: int, count: int):
        with self.lock:
            info = self.workers.get(worker_id)
            if info:
                info.hashes += count

    def record_update(self, worker_id: int, difficulty: int):
        with self.lock:
            info = self.workers.get(worker_id)
            if info:
                info.updates += 1
                info.best_difficulty = max(info.best_difficulty, difficulty)

    def mark_failed(self, worker_id: int, error: str):
        """Exclude a worker from the pool."""
        with self.lock:
            info = self.workers.get(worker_id)
            if info and not info.failed:
                info.failed = True
                info.error = error
                logger.error(f"Worker #{worker_id} excluded: {error}")

    def mark_exhausted(self, worker_id: int, epoch: int):
        with self.lock:
            info = self.workers.get(worker_id)
            if info:
                info.exhausted_epoch = epoch

    def is_excluded(self, worker_id: int) -> bool:
        with self.lock:
            info = self.workers.get(worker_id)
            return info is not None and info.failed

    def active_workers(self) -> List[WorkerInfo]:
        with self.lock:
            return [w for w in self.workers.values() if not w.failed]

    def all_failed(self) -> bool:
        with self.lock:
            return bool(self.workers) and all(w.failed for w in self.workers.values())

    def all_exhausted(self, epoch: int) -> bool:
        """True when every active worker ran out of nonces in this epoch."""
        active = self.active_workers()
        return bool(active) and all(w.exhausted_epoch == epoch for w in active)

    def check_alive(self) -> List[int]:
        """Mark workers that died without reporting; returns their ids."""
        dead = []
        if self.stop_event is None or self.stop_event.is_set():
            return dead
        with self.lock:
            for info in self.workers.values():
                if not info.failed and info.handle is not None and not info.is_alive():
                    dead.append(info.id)
        for worker_id in dead:
            self.mark_failed(worker_id, "worker exited unexpectedly")
        return dead

    def stop(self, timeout: float = config.JOIN_TIMEOUT) -> list:
        """
        Signal shutdown, join every worker and return the messages they
        flushed on the way out.
        """
        if not self.started:
            return []
        self.stop_event.set()
        leftover = []
        deadline = time.time() + timeout

        with self.lock:
            infos = list(self.workers.values())

        for info in infos:
            while info.handle.is_alive() and time.time() < deadline:
                leftover.extend(self.drain(0.05))
                info.handle.join(timeout=0.05)
            if info.handle.is_alive():
                logger.warning(f"Worker #{info.id} did not stop within {timeout}s")
                if self.backend == 'process':
                    info.handle.terminate()
                    info.handle.join(timeout=1.0)

        leftover.extend(self.drain(0.0) if self.outbox is not None else [])
        self.started = False
        return leftover

    def get_total_hashes(self) -> int:
        with self.lock:
            return sum(w.hashes for w in self.workers.values())

    def get_stats(self) -> dict:
        """Aggregate worker statistics."""
        with self.lock:
            return {
                'backend': self.backend,
                'total_workers': len(self.workers),
                'active_workers': sum(1 for w in self.workers.values() if not w.failed),
                'total_hashes': sum(w.hashes for w in self.workers.values()),
                'workers': [w.to_dict() for w in self.workers.values()],
            }
