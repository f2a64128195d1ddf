#!/usr/bin/env python3
"""
cleanup_expired_drafts.py - Delete abandoned close drafts

Removes EXPIRED close drafts of one store that have not been touched for
a given number of hours. IN_PROGRESS, FINALIZING and FINALIZED drafts are
never touched.

Usage:
    # See how many drafts would be deleted
    python scripts/cleanup_expired_drafts.py --store-id <store> --dry-run

    # Delete drafts expired for more than 48 hours
    python scripts/cleanup_expired_drafts.py --store-id <store> --max-age-hours 48
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from app.core.config import config  # noqa: E402
from app.core.db.engine import session_scope  # noqa: E402
from app.modules.auth.auth import Role, TokenData  # noqa: E402
from app.modules.close_drafts.service import CloseDraftsService  # noqa: E402

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run_cleanup(store_id: str, max_age_hours: int, dry_run: bool) -> int:
    actor = TokenData(
        user_id="maintenance",
        username="cleanup_expired_drafts",
        role=Role.STORE_MANAGER.value,
        store_id=store_id,
    )
    async with session_scope() as db:
        count = await CloseDraftsService.cleanup_expired(
            db, actor, max_age_hours, dry_run=dry_run
        )

    if dry_run:
        logger.info("[DRY RUN] %d expired drafts older than %dh would be deleted", count, max_age_hours)
    else:
        logger.info("Deleted %d expired drafts older than %dh", count, max_age_hours)
    return count


def main():
    parser = argparse.ArgumentParser(
        description="Delete expired close drafts of a store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--store-id", required=True, help="Store whose drafts are cleaned up")
    parser.add_argument(
        "--max-age-hours",
        type=int,
        default=config.draft_cleanup_max_age_hours,
        help=f"Minimum age in hours (default: {config.draft_cleanup_max_age_hours})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only count, delete nothing")
    args = parser.parse_args()

    if args.max_age_hours <= 0:
        parser.error("--max-age-hours must be positive")

    asyncio.run(run_cleanup(args.store_id, args.max_age_hours, args.dry_run))


if __name__ == "__main__":
    main()
