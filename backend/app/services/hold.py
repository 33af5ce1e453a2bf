"""Hold period: when an earning may be paid out, and the sweep that matures it."""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.earning import Earning, EarningStatus, HoldPolicy
from app.services import ledger, outbox

logger = logging.getLogger(__name__)


def hold_window(payment_completed_at: datetime, hold_period_days: int) -> Tuple[str, datetime]:
    """
    Derive the hold policy and payout eligibility time for a new earning.

    A zero-day hold is ``waived``: the earning is eligible from the moment
    the payment completed. Anything else is ``timed``.
    """
    if hold_period_days < 0:
        raise ValueError(f"hold_period_days must be >= 0, got {hold_period_days}")
    if hold_period_days == 0:
        return HoldPolicy.WAIVED, payment_completed_at
    return HoldPolicy.TIMED, payment_completed_at + timedelta(days=hold_period_days)


async def mature_earnings(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Approve every pending earning whose hold window has elapsed.

    One conditional UPDATE; running it twice (or on two instances at once)
    approves each line exactly once. Summaries are rebuilt for the affected
    beneficiaries and one ``earnings.approved`` event is queued per
    beneficiary and currency.

    Returns:
        Number of earnings approved.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        update(Earning)
        .where(
            Earning.status == EarningStatus.PENDING,
            Earning.payment_completed_at.is_not(None),
            Earning.eligible_for_payout_at <= now,
            Earning.is_gifted.is_(False),
        )
        .values(
            status=EarningStatus.APPROVED,
            approved_at=now,
            approved_by=ledger.SYSTEM_HOLD_SWEEP,
            updated_at=now,
        )
        .returning(Earning.beneficiary_id, Earning.currency, Earning.commission_amount)
        .execution_options(synchronize_session=False)
    )
    rows = result.all()
    if not rows:
        await db.commit()
        return 0

    grouped = {}
    for beneficiary_id, currency, amount in rows:
        count, total = grouped.get((beneficiary_id, currency), (0, 0))
        grouped[(beneficiary_id, currency)] = (count + 1, total + amount)

    for (beneficiary_id, currency), (count, total) in grouped.items():
        outbox.enqueue_event(db, outbox.EARNINGS_APPROVED, beneficiary_id, {
            "count": count,
            "total": total,
            "currency": currency,
        })

    await ledger.recompute_summaries(db, {beneficiary_id for beneficiary_id, _ in grouped})
    await db.commit()
    logger.info(f"Hold sweep approved {len(rows)} earnings for {len(grouped)} beneficiaries")
    return len(rows)
