#!/usr/bin/env python3
"""
Follow-up Script

Sends the PRO follow-up for links left unclicked 23 to 24 hours after the
customer's last DM. Meant for an hourly cron:

    0 * * * * python scripts/send_followups.py --limit 200

Exit status is 1 when any send failed.
"""

import argparse
import asyncio
import sys

from dmtobuy.api.dependencies import build_container
from dmtobuy.db.session import close_engines, get_session_factory
from dmtobuy.observability import get_logger, setup_logging

logger = get_logger(__name__)


async def main(limit: int) -> int:
    container = build_container(get_session_factory())
    try:
        summary = await container.followups.run(limit)
    finally:
        await container.close()
        await close_engines()

    logger.info("followup_script_complete", sent=summary.sent, failed=summary.failed)
    return 1 if summary.failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Send PRO follow-ups for unclicked links")
    parser.add_argument("--limit", type=int, default=100, help="Max candidates per run")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(main(args.limit)))
