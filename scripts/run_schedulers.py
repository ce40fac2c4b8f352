#!/usr/bin/env python3
"""Run the background loops without the HTTP API.

Loops: price monitor (limit fills + liquidations), DCA, interest accrual and
limit-order expiry. Point DATABASE_URL at the same database as the API.

Usage:
    python scripts/run_schedulers.py
    python scripts/run_schedulers.py --once
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from core.platform import Platform  # noqa: E402
from core.scheduling.runner import BackgroundScheduler  # noqa: E402

logger = logging.getLogger("run_schedulers")


async def _run_once(scheduler: BackgroundScheduler) -> None:
    for job in scheduler.jobs:
        result = await scheduler.run_job_once(job)
        logger.info("%s: %s", job.name, result)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run BitTrade background schedulers.")
    parser.add_argument("--once", action="store_true", help="Run every job a single time and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    scheduler = BackgroundScheduler(Platform.from_env())
    try:
        asyncio.run(_run_once(scheduler) if args.once else scheduler.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
