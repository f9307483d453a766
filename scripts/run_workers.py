#!/usr/bin/env python3
"""Run notification cycles without the external job trigger.

Each cycle expands active rules into queued deliveries, then delivers
whatever is due. In production the signed processing endpoint does the
same on every trigger call; this script is for local development and
for draining a backlog by hand.

Usage:
    python scripts/run_workers.py --once
    python scripts/run_workers.py --once --process-only
    python scripts/run_workers.py --loop --interval 10
    python scripts/run_workers.py --loop --max-iterations 5 --concurrency 2

Environment variables:
    WORKER_BATCH_SIZE: Deliveries per cycle (default: 500)
    WORKER_POLL_INTERVAL_SECONDS: Seconds between cycles (default: 60)
    PROCESSOR_CONCURRENCY: Deliveries processed at once (default: 8)
    METRICS_CONCURRENCY: Template lookups run at once during fan-out (default: 4)
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from app.workers import (
    RunnerResult,
    configure_worker_logging,
    run_worker_loop,
    run_worker_once,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Expand notification rules and deliver due notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--once", action="store_true", help="Run one cycle and exit")
    mode.add_argument("--loop", action="store_true", help="Run cycles until interrupted")

    parser.add_argument(
        "--process-only",
        action="store_true",
        help="Skip rule fan-out and only deliver what is already queued",
    )
    parser.add_argument("--interval", type=int, default=None, help="Seconds between cycles (loop only)")
    parser.add_argument("--max-iterations", type=int, default=None, help="Stop after N cycles (loop only)")
    parser.add_argument("--batch-size", type=int, default=None, help="Deliveries fetched per cycle")
    parser.add_argument("--concurrency", type=int, default=None, help="Deliveries processed at once")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="DEBUG logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Warnings only")
    return parser


def print_summary(result: RunnerResult) -> None:
    print("\n--- Notification Cycle ---")
    for expansion in result.expansions:
        status = "error" if expansion.errors else "ok"
        print(
            f"rule {expansion.rule_id}: {expansion.enqueued} enqueued, "
            f"{expansion.unchanged} unchanged, {expansion.failed} failed [{status}]"
        )
    summary = result.summary()
    print(
        f"processed={summary['processed']} skipped={summary['skipped']} "
        f"failed={summary['failed']} expanded={summary['expanded']}"
    )
    for err in result.errors:
        print(f"error: {err}")


def main() -> int:
    args = build_parser().parse_args()

    if args.verbose:
        configure_worker_logging(logging.DEBUG)
    elif args.quiet:
        configure_worker_logging(logging.WARNING)
    else:
        configure_worker_logging(logging.INFO)

    logger = logging.getLogger(__name__)
    expand_rules = not args.process_only

    try:
        if args.once:
            result = run_worker_once(
                batch_size=args.batch_size,
                concurrency=args.concurrency,
                expand_rules=expand_rules,
            )
            print_summary(result)
            return 0 if result.success else 1

        logger.info("Starting cycle loop (Ctrl+C to stop)")
        run_worker_loop(
            interval_seconds=args.interval,
            max_iterations=args.max_iterations,
            batch_size=args.batch_size,
            concurrency=args.concurrency,
            expand_rules=expand_rules,
        )
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Cycle runner failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
