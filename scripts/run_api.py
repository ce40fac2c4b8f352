#!/usr/bin/env python3
"""Run the BitTrade API server.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT] [--with-schedulers]

Environment:
    DATABASE_URL - Optional. PostgreSQL connection string (in-memory otherwise).
    BITTRADE_STATIC_BTC_USD - Optional. Fixed BTC/USD price instead of CoinGecko.

Examples:
    python scripts/run_api.py
    python scripts/run_api.py --host 0.0.0.0 --port 8000 --with-schedulers
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

logger = logging.getLogger("run_api")


def main() -> int:
    """Run the API server."""
    parser = argparse.ArgumentParser(description="Run the BitTrade trading API.")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--with-schedulers",
        action="store_true",
        help="Run the background loops (price monitor, DCA, interest, expiry) in the API process",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.with_schedulers:
        os.environ["BITTRADE_RUN_SCHEDULERS"] = "true"
    if not os.environ.get("DATABASE_URL"):
        logger.warning("DATABASE_URL is not set; state will be kept in memory only")

    import uvicorn

    logger.info("Starting API on %s:%s", args.host, args.port)
    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
