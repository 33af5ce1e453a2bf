"""
Run the hold-period sweep by hand, outside the scheduler.

Approves every pending earning whose hold window has elapsed, exactly as the
scheduled job does. Safe to run while the scheduler is active.

Usage:
    python scripts/run_hold_sweep.py [--at 2026-01-31T00:00:00] [--dry-run] [--reconcile-links] [--rebuild-summaries]

Options:
    --at ISO_TIMESTAMP    Treat this UTC time as "now" (default: current time)
    --dry-run             Report how many earnings are due without changing anything
    --reconcile-links     Also release earnings still linked to failed/cancelled/returned payouts
    --rebuild-summaries   Rebuild every beneficiary's summary snapshot afterwards
"""

import asyncio
import argparse
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select, func
from app.database import AsyncSessionLocal
from app.models.earning import Earning, EarningStatus
from app.services.hold import mature_earnings
from app.services.ledger import recompute_summaries
from app.services.payouts import release_orphaned_links
import logging

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def count_due(db, now: datetime) -> tuple[int, int]:
    """Number and total of pending earnings the sweep would approve at ``now``."""
    result = await db.execute(
        select(func.count(Earning.uuid), func.coalesce(func.sum(Earning.commission_amount), 0)).where(
            Earning.status == EarningStatus.PENDING,
            Earning.payment_completed_at.is_not(None),
            Earning.eligible_for_payout_at <= now,
            Earning.is_gifted.is_(False),
        )
    )
    count, total = result.one()
    return count, int(total)


async def main(at: datetime | None = None, dry_run: bool = False, reconcile_links: bool = False,
               rebuild_summaries: bool = False):
    now = at or datetime.utcnow()
    logger.info(f"Hold sweep as of {now.isoformat()}")

    async with AsyncSessionLocal() as db:
        if dry_run:
            count, total = await count_due(db, now)
            logger.info(f"[DRY RUN] Would approve {count} earnings (total {total} minor units)")
            return

        approved = await mature_earnings(db, now)
        logger.info(f"Approved {approved} earnings")

        if reconcile_links:
            released = await release_orphaned_links(db)
            logger.info(f"Released {released} orphaned payout links")

        if rebuild_summaries:
            result = await db.execute(select(Earning.beneficiary_id).distinct())
            written = await recompute_summaries(db, result.scalars().all())
            await db.commit()
            logger.info(f"Rebuilt {written} summary snapshots")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Approve pending earnings whose hold period has elapsed"
    )
    parser.add_argument("--at", type=datetime.fromisoformat, help="UTC time to treat as now (ISO 8601)")
    parser.add_argument("--dry-run", action="store_true", help="Report due earnings without writing")
    parser.add_argument("--reconcile-links", action="store_true", help="Release links to failed/cancelled/returned payouts")
    parser.add_argument("--rebuild-summaries", action="store_true", help="Rebuild all summary snapshots")
    args = parser.parse_args()

    asyncio.run(main(
        at=args.at,
        dry_run=args.dry_run,
        reconcile_links=args.reconcile_links,
        rebuild_summaries=args.rebuild_summaries,
    ))
