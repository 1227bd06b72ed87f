#!/usr/bin/env python3
"""
HASHCHAIN Miner
Search for a nonce whose hash meets the target difficulty and extend the chain.

Usage:
    python miner.py --identity alice --hash <64-hex> --difficulty 40
    python miner.py --identity alice --ledger chain.log          Resume from ledger
    python miner.py --identity alice --hash <64-hex> --submit-url https://ledger.example/submit
"""

import sys
import os
import argparse
import logging

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import config
from core.blockchain import ChainLedger, HashPointer, LedgerError
from core.nonce import NONCE_STRATEGIES
from ledger_client import create_submitter
from mining.coordinator import Coordinator, PoolFailure
from mining.workers import BACKENDS

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = config.LOG_FILE, verbose: bool = False):
    """Log to the console and to a fresh log file."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL),
        format=config.LOG_FORMAT,
        datefmt=config.LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='HASHCHAIN Miner',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Start a new chain from an all-zero genesis hash:
    python miner.py --identity alice --hash 0000000000000000000000000000000000000000000000000000000000000000 --difficulty 32

  Resume from the ledger with 8 random-token workers:
    python miner.py --identity alice --threads 8 --strategy random
"""
    )
    parser.add_argument('--identity', '-i', default=config.IDENTITY,
                        help=f'Miner identity (default: {config.IDENTITY})')
    parser.add_argument('--hash', dest='start_hash', default=None,
                        help='Starting previous hash (required when the ledger is empty)')
    parser.add_argument('--nonce', dest='start_nonce', default='',
                        help='Nonce that produced the starting hash (informational)')
    parser.add_argument('--start-difficulty', type=int, default=0,
                        help='Difficulty a first block must beat when starting from --hash (default: 0)')
    parser.add_argument('--difficulty', '-d', type=int, default=config.REQUIRED_DIFFICULTY,
                        help=f'Target difficulty in leading zero bits (default: {config.REQUIRED_DIFFICULTY})')
    parser.add_argument('--threads', '-t', type=int, default=config.default_thread_count(),
                        help='Number of workers (default: all cores)')
    parser.add_argument('--strategy', '-s', choices=NONCE_STRATEGIES, default=config.NONCE_STRATEGY,
                        help=f'Nonce strategy (default: {config.NONCE_STRATEGY})')
    parser.add_argument('--backend', choices=BACKENDS, default=config.WORKER_BACKEND,
                        help=f'Worker backend (default: {config.WORKER_BACKEND})')
    parser.add_argument('--max-nonce', type=int, default=config.MAX_NONCE,
                        help='Upper bound for sequential nonces (default: unbounded)')
    parser.add_argument('--progress-interval', type=float, default=config.PROGRESS_INTERVAL,
                        help=f'Seconds between worker progress reports (default: {config.PROGRESS_INTERVAL})')
    parser.add_argument('--stats-interval', type=float, default=config.STATS_INTERVAL,
                        help=f'Seconds between hashrate log lines (default: {config.STATS_INTERVAL})')
    parser.add_argument('--ledger', '-l', default=config.LEDGER_FILE,
                        help=f'Chain ledger file (default: {config.LEDGER_FILE})')
    parser.add_argument('--submit-url', '-u', default=config.SUBMIT_URL,
                        help='Ledger service URL (default: offline, accept locally)')
    parser.add_argument('--submit-timeout', type=float, default=config.SUBMIT_TIMEOUT,
                        help=f'Submission timeout in seconds (default: {config.SUBMIT_TIMEOUT})')
    parser.add_argument('--submit-retries', type=int, default=config.SUBMIT_RETRIES,
                        help=f'Retries after a transport failure (default: {config.SUBMIT_RETRIES})')
    parser.add_argument('--result', '-r', default=config.RESULT_FILE,
                        help=f'Result file (default: {config.RESULT_FILE})')
    parser.add_argument('--log-file', default=config.LOG_FILE,
                        help=f'Log file (default: {config.LOG_FILE}, empty to disable)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'{config.CLIENT_NAME} {config.VERSION}')
    return parser


def resolve_pointer(ledger: ChainLedger, start_hash: str = None, start_nonce: str = '',
                    start_difficulty: int = 0) -> HashPointer:
    """
    Pointer to start from: the ledger tip when the ledger has blocks,
    otherwise the explicit starting hash at start_difficulty.
    """
    tip = ledger.tip()
    if tip is not None:
        if start_hash and start_hash.lower() != tip.hash:
            logger.warning(f"Ignoring --hash, resuming from ledger tip {tip.hash}")
        if not ledger.verify():
            logger.warning(f"Ledger {ledger.filepath} has broken links between blocks")
        logger.info(f"Resuming from {ledger.filepath} at height {ledger.height}")
        return tip

    if not start_hash:
        raise LedgerError(f"Ledger {ledger.filepath} has no blocks; a starting --hash is required")
    return HashPointer.from_hash(start_hash, start_nonce, start_difficulty)


def print_summary(result):
    print(f"""
╔══════════════════════════════════════════════════════════╗
║                   Mining Summary                         ║
╠══════════════════════════════════════════════════════════╣
║  Outcome:          {result.reason:<37} ║
║  Difficulty:       {result.difficulty:<37} ║
║  Nonce:            {str(result.nonce)[:37]:<37} ║
║  Blocks Accepted:  {result.blocks_accepted:<37} ║
║  Total Hashes:     {result.total_hashes:<37,} ║
║  Time:             {config.format_duration(result.elapsed):<37} ║
╚══════════════════════════════════════════════════════════╝
""")
    print(f"Hash: {result.hash}")


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_file, args.verbose)

    if args.threads < 1:
        parser.error("--threads must be at least 1")

    print(f"""
╔══════════════════════════════════════════════════════════╗
║                   {config.CLIENT_NAME:<39}║
╚══════════════════════════════════════════════════════════╝
""")

    try:
        ledger = ChainLedger(args.ledger, args.identity)
        pointer = resolve_pointer(ledger, args.start_hash, args.start_nonce, args.start_difficulty)
        coordinator = Coordinator(
            identity=args.identity,
            pointer=pointer,
            target_difficulty=args.difficulty,
            submitter=create_submitter(args.submit_url, timeout=args.submit_timeout),
            ledger=ledger,
            threads=args.threads,
            strategy=args.strategy,
            backend=args.backend,
            progress_interval=args.progress_interval,
            stats_interval=args.stats_interval,
            submit_retries=args.submit_retries,
            max_nonce=args.max_nonce,
            result_path=args.result or None,
        )
    except (LedgerError, ValueError) as e:
        logger.error(str(e))
        return 1

    print(f"Identity:   {args.identity}")
    print(f"Pointer:    {pointer.hash} (difficulty {pointer.difficulty})")
    print(f"Target:     {args.difficulty}")
    print(f"Workers:    {args.threads} {args.backend} ({args.strategy})")
    print(f"Submission: {args.submit_url or 'offline'}")
    print(f"\nPress Ctrl+C to stop mining.\n")

    try:
        result = coordinator.run()
    except PoolFailure as e:
        logger.error(f"Mining failed: {e}")
        return 1
    except LedgerError as e:
        logger.error(f"Ledger error: {e}")
        return 1

    print_summary(result)
    if result.reason == 'exhausted':
        print("\nNo valid hash found. Increase --max-nonce or lower --difficulty.")
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
