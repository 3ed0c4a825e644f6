#!/usr/bin/env python3
"""
Run a subledger background worker outside the API process.

Usage:
    # Run the reconciliation worker on its configured interval
    python3 scripts/run_worker.py reconciliation

    # One expiration sweep pass (for cron), exit code 1 if any item failed
    python3 scripts/run_worker.py expiration_sweep --once
"""

import argparse
import asyncio
import signal
import sys

from subledger.config import settings
from subledger.db.session import close_engines, get_write_session_factory
from subledger.observability import get_logger, setup_logging
from subledger.services.billing_client import build_apple_verifier, build_store_clients
from subledger.workers.registry import build_workers

WORKER_NAMES = ("reconciliation", "expiration_sweep")

logger = get_logger("subledger.scripts.run_worker")


async def run(name: str, once: bool) -> int:
    clients = build_store_clients(settings, build_apple_verifier(settings))
    workers = build_workers(settings, get_write_session_factory(), clients)
    worker = workers.by_name(name)

    try:
        if once:
            result = await worker.run_once()
            return 1 if result.errors else 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await worker.start()
        logger.info("worker_process_started", worker=name)
        await stop.wait()
        await worker.stop()
        return 0
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a subledger background worker")
    parser.add_argument("worker", choices=WORKER_NAMES, help="Worker to run")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.worker, args.once)))


if __name__ == "__main__":
    main()
