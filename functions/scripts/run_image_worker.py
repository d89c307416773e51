"""
Daemon that drains the image persistence queue.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fibli.worker import run_loop

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Image persistence worker")
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=2.0,
        help="Seconds to block on the queue before polling the database",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one job and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    logger.info("Starting image worker")
    try:
        run_loop(args.poll_interval_seconds, once=args.once)
    except KeyboardInterrupt:
        logger.info("Image worker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
