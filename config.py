"""
HASHCHAIN Miner Configuration
Defaults for the difficulty search, the chain ledger and block submission.
"""

import os

# ============================================================================
# IDENTITY & CHAIN
# ============================================================================

# Miner identity hashed into every candidate (previous_hash + IDENTITY + nonce)
IDENTITY = "lunar"

# Digest width of the hash function, in bits
HASH_BITS = 256

# Hex length of a hash pointer
HASH_HEX_LENGTH = HASH_BITS // 4

# Difficulty ceiling: the search ends once a block reaches this many
# leading zero bits
REQUIRED_DIFFICULTY = 45

# ============================================================================
# WORKERS
# ============================================================================

# 0 = use every available core
THREAD_COUNT = 0

# Worker backend: 'process' (multiprocessing) or 'thread' (threading)
WORKER_BACKEND = "process"

# Nonce strategies: 'sequential', 'random', 'random-numeric'
NONCE_STRATEGY = "sequential"

# Upper bound for sequential nonces (None = unbounded)
MAX_NONCE = None

# Entropy of random tokens (secrets.token_urlsafe bytes)
RANDOM_TOKEN_BYTES = 16

# Width of random numeric nonces
RANDOM_NUMERIC_DIGITS = 16

# Hashes between shutdown / pointer-change checks
CHECK_INTERVAL = 2_000

# Seconds between worker progress reports
PROGRESS_INTERVAL = 2.0

# ============================================================================
# COORDINATOR
# ============================================================================

# Seconds the coordinator waits for a worker message before housekeeping
POLL_INTERVAL = 0.25

# Seconds between hashrate log lines
STATS_INTERVAL = 30.0

# Seconds to wait for each worker on shutdown
JOIN_TIMEOUT = 5.0

# ============================================================================
# SUBMISSION
# ============================================================================

# Ledger service endpoint (empty = offline, every block accepted locally)
SUBMIT_URL = ""

# HTTP timeout for a block submission
SUBMIT_TIMEOUT = 30

# Extra attempts after a transport failure (rejections are never retried)
SUBMIT_RETRIES = 2

# Seconds between transport retries
RETRY_DELAY = 2.0

# ============================================================================
# FILE PATHS
# ============================================================================

LEDGER_FILE = "chain.log"
RESULT_FILE = "result.json"
LOG_FILE = "hash-miner.log"

# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# ============================================================================
# VERSION INFO
# ============================================================================

VERSION = "1.0.0"
CLIENT_NAME = "HASHCHAIN Miner"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def default_thread_count() -> int:
    """Number of workers to run when THREAD_COUNT is 0."""
    if THREAD_COUNT > 0:
        return THREAD_COUNT
    return os.cpu_count() or 1


def format_hashrate(hashrate: float) -> str:
    """Human readable hashrate."""
    if hashrate >= 1_000_000_000:
        return f"{hashrate/1_000_000_000:.2f} GH/s"
    elif hashrate >= 1_000_000:
        return f"{hashrate/1_000_000:.2f} MH/s"
    elif hashrate >= 1_000:
        return f"{hashrate/1_000:.2f} KH/s"
    return f"{hashrate:.0f} H/s"


def format_duration(seconds: float) -> str:
    """Compact duration, e.g. '1h 02m 03s'."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
