"""Reverse the earnings of a cancelled, refunded or gifted subscription."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import InvalidTransition
from app.models.earning import Earning, EarningStatus
from app.services import ledger

logger = logging.getLogger(__name__)

SYSTEM_REVERSAL = "system:reversal"


@dataclass
class ReversalResult:
    subscription_ref: str
    cancelled: int = 0
    # Earning ids in an in-flight payout; cancelled when that payout is released
    deferred: List[str] = field(default_factory=list)
    # Earning ids that could not be reversed or deferred
    skipped: List[str] = field(default_factory=list)


async def reverse_for_subscription(
    db: AsyncSession,
    subscription_ref: str,
    reason: str,
    *,
    actor_id: str = SYSTEM_REVERSAL,
    gifted: bool = False,
    now: Optional[datetime] = None,
) -> ReversalResult:
    """
    Cancel every not-yet-paid earning of a subscription.

    Paid lines are never touched. A line held by a payout already in flight
    is marked for reversal and cancelled once that payout fails, is
    cancelled or is returned. Calling this again for the same subscription
    cancels nothing more. With ``gifted`` every line of the
    subscription is also flagged ``is_gifted`` so the sweep and payout pool
    ignore it for good.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(Earning.uuid)
        .where(
            Earning.billing_subject_ref == subscription_ref,
            Earning.status.in_(EarningStatus.REVERSIBLE),
        )
        .order_by(Earning.tier_level, Earning.created_at)
    )
    earning_ids = list(result.scalars().all())

    outcome = ReversalResult(subscription_ref=subscription_ref)
    beneficiaries = set()
    for earning_id in earning_ids:
        try:
            earning = await ledger.reverse_earning(
                db, earning_id, EarningStatus.CANCELLED, actor_id, reason, now,
                {"is_gifted": True} if gifted else None,
            )
        except InvalidTransition as e:
            if await ledger.defer_reversal(db, earning_id, actor_id, reason, now):
                outcome.deferred.append(earning_id)
            else:
                logger.warning(f"Reversal of {subscription_ref} skipped earning {earning_id}: {e.message}")
                outcome.skipped.append(earning_id)
            continue
        outcome.cancelled += 1
        beneficiaries.add(earning.beneficiary_id)

    if gifted:
        await db.execute(
            update(Earning)
            .where(Earning.billing_subject_ref == subscription_ref, Earning.is_gifted.is_(False))
            .values(is_gifted=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    await ledger.recompute_summaries(db, beneficiaries)
    await db.commit()
    logger.info(
        f"Reversed subscription {subscription_ref}: {outcome.cancelled} cancelled, "
        f"{len(outcome.deferred)} deferred, {len(outcome.skipped)} skipped ({reason})"
    )
    return outcome
