#!/usr/bin/env python3
"""Run the center change-feed consumer.

Listens on the centers channel and runs the refill check for every center
that reports current_count == 0. Redundant with the check-empty-centers
beat entry; whichever trigger arrives first performs the refill.

Examples:
  python backend/scripts/run_center_feed.py
  python backend/scripts/run_center_feed.py --log-level debug
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from capacity.pipeline import handle_center_emptied
from db.session import AsyncSessionLocal
from realtime.feed import CENTER_CHANNEL, consume_center_changes

logger = structlog.get_logger()


async def _on_center_emptied(center_id: uuid.UUID) -> dict:
    async with AsyncSessionLocal() as db:
        outcome = await handle_center_emptied(db, center_id)
    logger.info("feed.center_emptied_handled", **outcome)
    return outcome


def main() -> int:
    parser = argparse.ArgumentParser(description="Consume center updates and refill emptied centers")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Minimum log level",
    )
    args = parser.parse_args()

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, args.log_level.upper())),
    )
    logger.info("feed.consumer_starting", channel=CENTER_CHANNEL)

    try:
        asyncio.run(consume_center_changes(_on_center_emptied))
    except KeyboardInterrupt:
        logger.info("feed.consumer_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
