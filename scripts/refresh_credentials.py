#!/usr/bin/env python3
"""
Credential Refresh Script

Exchanges messaging tokens that expire inside the refresh window so no
pipeline unit ever has to refresh on the hot path. Meant for cron:

    */30 * * * * python scripts/refresh_credentials.py --limit 200

Exit status is 1 when any refresh failed.
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
        checked, refreshed, failed = await container.credentials.refresh_expiring(limit)
    finally:
        await container.close()
        await close_engines()

    logger.info("refresh_script_complete", checked=checked, refreshed=refreshed, failed=failed)
    return 1 if failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh expiring messaging credentials")
    parser.add_argument("--limit", type=int, default=100, help="Max credentials per run")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(main(args.limit)))
