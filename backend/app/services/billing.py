"""Billing ingest: apply one billing fact to the ledger exactly once."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.earning import Earning
from app.schemas.ledger import BillingFact
from app.services import ledger
from app.services.commission import compute_earnings
from app.services.idempotency import record_if_new, remember_event, seen_recently

logger = logging.getLogger(__name__)

RECORDED = "recorded"
DUPLICATE = "duplicate"
GIFTED = "gifted"


@dataclass
class IngestResult:
    status: str
    earnings: List[Earning] = field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.status == DUPLICATE


async def ingest_billing_fact(db: AsyncSession, fact: BillingFact, now: Optional[datetime] = None) -> IngestResult:
    """
    Turn a successful payment into pending earnings.

    Order matters: gifted facts stop before the idempotency record is
    written; the record, the earnings and their events then commit together,
    so a failure anywhere leaves the fact unprocessed and safe to redeliver.

    Raises:
        ConfigurationError: The plan has no commission rate.
    """
    if fact.is_gifted:
        logger.info(f"Billing fact {fact.subscription_ref}/{fact.external_payment_id} is gifted; no earnings")
        return IngestResult(status=GIFTED)

    if await seen_recently(fact.event_id):
        logger.info(f"Event {fact.event_id} seen recently; skipping")
        return IngestResult(status=DUPLICATE)

    try:
        if not await record_if_new(db, fact.subscription_ref, fact.external_payment_id):
            await db.rollback()
            await remember_event(fact.event_id)
            return IngestResult(status=DUPLICATE)

        drafts = compute_earnings(fact, now)

        origin_ids = {}
        if fact.billing_reason == "renewal":
            for draft in drafts:
                origin = await ledger.find_origin_earning(db, fact.subscription_ref, draft.tier_level)
                if origin is not None:
                    origin_ids[draft.tier_level] = origin.uuid

        earnings = await ledger.add_earnings(db, drafts, origin_ids)
        await ledger.recompute_summaries(db, {e.beneficiary_id for e in earnings})
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await remember_event(fact.event_id)
    logger.info(
        f"Recorded {len(earnings)} earnings for {fact.subscription_ref}/{fact.external_payment_id} "
        f"({fact.billing_reason}, {fact.gross_amount} {fact.currency})"
    )
    return IngestResult(status=RECORDED, earnings=earnings)
