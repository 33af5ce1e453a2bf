"""Payout batcher: claims approved earnings into payouts and drives their lifecycle.

A payout owns its earnings through ``earnings.payout_id`` while it is
pending, processing, in transit or paid. ``paid`` settles them; ``failed``,
``cancelled`` and ``returned`` hand them back to the eligible pool with their
status left at approved, except lines whose reversal was deferred while the
payout was in flight, which are cancelled.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, update, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    BelowMinimumPayout,
    InvalidPayoutSettings,
    InvalidTransition,
    NoEligibleFunds,
    PayoutDestinationMissing,
    PayoutNotFound,
)
from app.models.earning import Earning, EarningStatus
from app.models.payout import Payout, PayoutItem, PayoutMethod, PayoutStatus
from app.models.user import User
from app.services import ledger, outbox
from app.services.commission import floor_amount

logger = logging.getLogger(__name__)

# Prior states each outcome may be applied from
ALLOWED_FROM = {
    PayoutStatus.PROCESSING: (PayoutStatus.PENDING,),
    PayoutStatus.IN_TRANSIT: (PayoutStatus.PENDING, PayoutStatus.PROCESSING),
    PayoutStatus.PAID: PayoutStatus.OPEN,
    PayoutStatus.FAILED: PayoutStatus.OPEN,
    PayoutStatus.CANCELLED: PayoutStatus.OPEN,
    PayoutStatus.RETURNED: PayoutStatus.OPEN,
}

TIMESTAMP_COLUMN = {
    PayoutStatus.PROCESSING: "processed_at",
    PayoutStatus.IN_TRANSIT: "in_transit_at",
    PayoutStatus.PAID: "paid_at",
    PayoutStatus.FAILED: "failed_at",
    PayoutStatus.CANCELLED: "cancelled_at",
    PayoutStatus.RETURNED: "returned_at",
}


def minimum_payout(currency: str) -> int:
    return settings.MINIMUM_PAYOUT_AMOUNTS.get(currency.upper(), settings.DEFAULT_MINIMUM_PAYOUT)


def compute_fees(amount: int, method: str, destination_type: str) -> Tuple[int, int, int]:
    """
    Fees for a payout of ``amount`` minor units.

    Instant payouts cost 1.5% with a 50 minimum. Standard payouts are free to
    a bank account and 50 flat to a debit card. The platform fee is
    PAYOUT_PLATFORM_FEE_RATE of the amount, floored.

    Returns:
        (processor_fee, platform_fee, total_fee)
    """
    if method == PayoutMethod.INSTANT:
        processor = max(settings.INSTANT_PAYOUT_MIN_FEE, floor_amount(amount, Decimal(str(settings.INSTANT_PAYOUT_FEE_RATE))))
    elif destination_type == "debit_card":
        processor = settings.DEBIT_CARD_PAYOUT_FEE
    else:
        processor = 0
    platform = floor_amount(amount, Decimal(str(settings.PAYOUT_PLATFORM_FEE_RATE)))
    return processor, platform, processor + platform


async def eligible_pool(db: AsyncSession, beneficiary_id: str, currency: str, now: datetime) -> List[Earning]:
    """Payable earnings for a beneficiary, oldest first."""
    result = await db.execute(
        select(Earning)
        .where(ledger.payable_filter(beneficiary_id, currency, now))
        .order_by(Earning.eligible_for_payout_at, Earning.created_at)
    )
    return list(result.scalars().all())


async def request_payout(
    db: AsyncSession,
    user: User,
    *,
    currency: Optional[str] = None,
    method: Optional[str] = None,
    min_amount: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Payout:
    """
    Batch every payable earning of ``user`` in ``currency`` into a new payout.

    The earnings are claimed with one conditional UPDATE; only the rows that
    update joins the payout, so two concurrent requests never share a line.
    Payout, items and links commit together.

    Raises:
        NoEligibleFunds: Nothing payable.
        BelowMinimumPayout: Payable total (or net after fees) under the minimum.
        PayoutDestinationMissing: No connected payout account.
    """
    now = now or datetime.utcnow()
    currency = (currency or user.payout_currency or settings.DEFAULT_CURRENCY).upper()
    method = method or user.payout_method or PayoutMethod.STANDARD
    # Caller and user thresholds can only raise the currency minimum
    minimum = max(minimum_payout(currency), user.minimum_payout_amount or 0, min_amount or 0)

    pool = await eligible_pool(db, user.uuid, currency, now)
    if not pool:
        raise NoEligibleFunds(
            f"No earnings available for payout in {currency}",
            details={"currency": currency},
        )
    available = sum(e.commission_amount for e in pool)
    if available < minimum:
        raise BelowMinimumPayout(
            f"Available balance {available} is below the minimum payout of {minimum} {currency}",
            details={"available": available, "minimum": minimum, "currency": currency},
        )
    if not user.stripe_connect_account_id:
        raise PayoutDestinationMissing(
            "Connect a payout account before requesting a payout",
            details={"beneficiary_id": user.uuid},
        )

    payout = Payout(
        uuid=str(uuid4()),
        beneficiary_id=user.uuid,
        destination_account_ref=user.stripe_connect_account_id,
        destination_type=user.payout_destination_type or "bank_account",
        method=method,
        currency=currency,
        status=PayoutStatus.PENDING,
        requested_at=now,
        items=[],
    )
    db.add(payout)
    await db.flush()

    claim = await db.execute(
        update(Earning)
        .where(
            Earning.uuid.in_([e.uuid for e in pool]),
            Earning.status == EarningStatus.APPROVED,
            Earning.payout_id.is_(None),
            Earning.reversal_requested_at.is_(None),
        )
        .values(payout_id=payout.uuid, updated_at=now)
        .returning(Earning.uuid, Earning.commission_amount)
        .execution_options(synchronize_session=False)
    )
    claimed = dict(claim.all())

    amount = sum(claimed.values())
    if not claimed:
        await db.rollback()
        raise NoEligibleFunds(
            f"No earnings available for payout in {currency}",
            details={"currency": currency},
        )
    if amount < minimum:
        await db.rollback()
        raise BelowMinimumPayout(
            f"Available balance {amount} is below the minimum payout of {minimum} {currency}",
            details={"available": amount, "minimum": minimum, "currency": currency},
        )

    processor_fee, platform_fee, fee_total = compute_fees(amount, method, payout.destination_type)
    if amount - fee_total <= 0:
        await db.rollback()
        raise BelowMinimumPayout(
            f"Fees of {fee_total} leave nothing to pay out of {amount} {currency}",
            details={"available": amount, "fees": fee_total, "currency": currency},
        )

    payout.amount = amount
    payout.fee_processor = processor_fee
    payout.fee_platform = platform_fee
    payout.fee_total = fee_total
    payout.net_amount = amount - fee_total
    # Keep pool order (oldest first) for the items
    for earning in pool:
        if earning.uuid in claimed:
            payout.items.append(PayoutItem(earning_id=earning.uuid, amount=claimed[earning.uuid], created_at=now))

    outbox.enqueue_event(
        db, outbox.PAYOUT_REQUESTED, user.uuid, ledger.payout_event_payload(payout),
    )
    await db.commit()
    logger.info(
        f"Payout {payout.uuid} requested by {user.uuid}: {len(claimed)} earnings, "
        f"amount={amount} fees={fee_total} net={payout.net_amount} {currency}"
    )
    return payout


async def get_payout(db: AsyncSession, payout_id: str, beneficiary_id: Optional[str] = None) -> Payout:
    payout = await db.get(Payout, payout_id)
    if payout is None or (beneficiary_id is not None and payout.beneficiary_id != beneficiary_id):
        raise PayoutNotFound(f"Payout {payout_id} not found", details={"payout_id": payout_id})
    return payout


def payout_settings(user: User) -> dict:
    """The user's payout preferences and the minimum that applies to them."""
    currency = (user.payout_currency or settings.DEFAULT_CURRENCY).upper()
    return {
        "connected": bool(user.stripe_connect_account_id),
        "stripe_connect_account_id": user.stripe_connect_account_id,
        "method": user.payout_method or PayoutMethod.STANDARD,
        "destination_type": user.payout_destination_type or "bank_account",
        "currency": currency,
        "minimum_amount": user.minimum_payout_amount,
        "effective_minimum": max(minimum_payout(currency), user.minimum_payout_amount or 0),
    }


async def update_payout_settings(
    db: AsyncSession,
    user: User,
    *,
    method: Optional[str] = None,
    destination_type: Optional[str] = None,
    currency: Optional[str] = None,
    minimum_amount: Optional[int] = None,
) -> dict:
    """
    Change a user's payout preferences. Only the given fields change.

    Raises:
        PayoutDestinationMissing: No connected payout account yet.
        InvalidPayoutSettings: ``minimum_amount`` under the currency minimum.
    """
    if not user.stripe_connect_account_id:
        raise PayoutDestinationMissing(
            "Connect a payout account before changing payout settings",
            details={"beneficiary_id": user.uuid},
        )

    currency = (currency or user.payout_currency or settings.DEFAULT_CURRENCY).upper()
    if minimum_amount is not None and minimum_amount < minimum_payout(currency):
        raise InvalidPayoutSettings(
            f"Minimum payout amount must be at least {minimum_payout(currency)} {currency}",
            details={"minimum_amount": minimum_amount, "minimum": minimum_payout(currency), "currency": currency},
        )

    user.payout_currency = currency
    if method:
        user.payout_method = method
    if destination_type:
        user.payout_destination_type = destination_type
    if minimum_amount is not None:
        user.minimum_payout_amount = minimum_amount
    user.updated_at = datetime.utcnow()
    await db.commit()
    logger.info(f"Payout settings updated for {user.uuid}: {method or user.payout_method}, {currency}")
    return payout_settings(user)


async def link_payout_account(db: AsyncSession, user: User, account_id: str) -> User:
    """Record the connected account payouts are sent to."""
    if user.stripe_connect_account_id != account_id:
        logger.info(f"User {user.uuid} payout account {user.stripe_connect_account_id} -> {account_id}")
        user.stripe_connect_account_id = account_id
        user.updated_at = datetime.utcnow()
        await db.commit()
    return user


async def apply_dispatch_outcome(
    db: AsyncSession,
    payout_id: str,
    outcome: str,
    *,
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    external_payout_id: Optional[str] = None,
    external_transfer_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Payout:
    """
    Apply an outcome reported by the payout rail.

    Outcomes may arrive late, twice or out of order. One that is no longer
    applicable (the payout already reached it or moved past it) is
    acknowledged and leaves the payout unchanged. The one exception is
    ``returned`` after ``paid``, which needs manual reconciliation and
    raises InvalidTransition.

    Raises:
        PayoutNotFound: Unknown payout.
        InvalidTransition: ``returned`` reported for a paid payout.
    """
    if outcome not in ALLOWED_FROM:
        raise InvalidTransition(f"Unknown payout outcome {outcome}", details={"outcome": outcome})

    now = occurred_at or datetime.utcnow()
    payout = await db.get(Payout, payout_id, populate_existing=True)
    if payout is None:
        raise PayoutNotFound(f"Payout {payout_id} not found", details={"payout_id": payout_id})

    allowed = ALLOWED_FROM[outcome]
    if payout.status not in allowed:
        if outcome == PayoutStatus.RETURNED and payout.status == PayoutStatus.PAID:
            logger.error(f"Payout {payout_id} reported returned after paid; needs manual reconciliation")
            raise InvalidTransition(
                f"Payout {payout_id} is paid and cannot be marked returned",
                details={"payout_id": payout_id, "status": payout.status},
            )
        logger.warning(f"Ignoring late outcome {outcome} for payout {payout_id} in status {payout.status}")
        return payout

    values = {"status": outcome, TIMESTAMP_COLUMN[outcome]: now, "updated_at": datetime.utcnow()}
    if failure_code:
        values["failure_code"] = failure_code
    if failure_message:
        if outcome == PayoutStatus.CANCELLED:
            values["cancellation_reason"] = failure_message
        else:
            values["failure_message"] = failure_message
    if external_payout_id:
        values["external_payout_id"] = external_payout_id
    if external_transfer_id:
        values["external_transfer_id"] = external_transfer_id
    if actor_id:
        values["processed_by"] = actor_id

    result = await db.execute(
        update(Payout)
        .where(Payout.uuid == payout_id, Payout.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        payout = await db.get(Payout, payout_id, populate_existing=True)
        logger.warning(f"Outcome {outcome} for payout {payout_id} lost a race; now {payout.status}")
        return payout

    if outcome == PayoutStatus.PAID:
        settled = await db.execute(
            update(Earning)
            .where(Earning.payout_id == payout_id, Earning.status == EarningStatus.APPROVED)
            .values(status=EarningStatus.PAID, paid_at=now, updated_at=datetime.utcnow())
            .returning(Earning.uuid, Earning.reversal_requested_at)
            .execution_options(synchronize_session=False)
        )
        rows = settled.all()
        reversed_ids = [earning_id for earning_id, requested_at in rows if requested_at is not None]
        if reversed_ids:
            logger.error(
                f"Payout {payout_id} paid {len(reversed_ids)} earnings with deferred reversals; "
                f"needs manual reconciliation: {reversed_ids}"
            )
        logger.info(f"Payout {payout_id} paid; {len(rows)} earnings settled")
    elif outcome in PayoutStatus.RELEASING:
        await ledger.release_payout_links(db, payout_id)

    payout = await db.get(Payout, payout_id, populate_existing=True)
    if outcome in PayoutStatus.TERMINAL:
        outbox.enqueue_event(
            db, outbox.payout_event_type(outcome), payout.beneficiary_id,
            ledger.payout_event_payload(payout, failure_message),
        )
        await ledger.recompute_summaries(db, [payout.beneficiary_id])

    await db.commit()
    logger.info(f"Payout {payout_id} -> {outcome}")
    return payout


async def cancel_payout(
    db: AsyncSession,
    payout_id: str,
    actor_id: str,
    reason: str,
    beneficiary_id: Optional[str] = None,
) -> Payout:
    """Cancel a payout that has not been dispatched yet, releasing its earnings."""
    payout = await get_payout(db, payout_id, beneficiary_id)
    if not await ledger.cancel_pending_payout(db, payout_id, reason, actor_id):
        payout = await db.get(Payout, payout_id, populate_existing=True)
        raise InvalidTransition(
            f"Payout {payout_id} is {payout.status} and can no longer be cancelled",
            details={"payout_id": payout_id, "status": payout.status},
        )
    await db.commit()
    return await db.get(Payout, payout.uuid, populate_existing=True)


async def release_orphaned_links(db: AsyncSession) -> int:
    """
    Unlink approved earnings still pointing at a failed, cancelled or returned payout.

    Outcomes release their earnings in the same transaction, so this only
    finds work after a partial failure. Lines with a deferred reversal are
    cancelled rather than released. Safe to run at any time.
    """
    orphaned = select(Payout.uuid).where(Payout.status.in_(PayoutStatus.RELEASING))
    released, cancelled = await ledger.release_links(db, Earning.payout_id.in_(orphaned))
    rows = released + cancelled
    if rows:
        await ledger.recompute_summaries(db, {beneficiary_id for _, beneficiary_id in rows})
        logger.warning(f"Released {len(rows)} orphaned payout links")
    await db.commit()
    return len(rows)


async def list_payouts(
    db: AsyncSession,
    *,
    beneficiary_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Payout], int]:
    """Newest-first page of payouts plus the total match count."""
    filters = []
    if beneficiary_id:
        filters.append(Payout.beneficiary_id == beneficiary_id)
    if status:
        filters.append(Payout.status == status)

    count_result = await db.execute(select(func.count(Payout.uuid)).where(*filters))
    total = count_result.scalar()

    offset = (page - 1) * page_size
    result = await db.execute(
        select(Payout)
        .where(*filters)
        .order_by(desc(Payout.requested_at))
        .offset(offset)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def payout_history(
    db: AsyncSession,
    beneficiary_id: str,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Payout], int]:
    return await list_payouts(db, beneficiary_id=beneficiary_id, status=status, page=page, page_size=page_size)


async def payout_stats(
    db: AsyncSession,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, dict]:
    """Count, amount and fees per payout status, for payouts requested in [start, end)."""
    filters = []
    if start:
        filters.append(Payout.requested_at >= start)
    if end:
        filters.append(Payout.requested_at < end)

    result = await db.execute(
        select(
            Payout.status,
            func.count(Payout.uuid),
            func.coalesce(func.sum(Payout.amount), 0),
            func.coalesce(func.sum(Payout.fee_total), 0),
        )
        .where(*filters)
        .group_by(Payout.status)
    )
    stats = {s: {"count": 0, "total_amount": 0, "total_fees": 0} for s in PayoutStatus.ALL}
    for status, count, amount, fees in result.all():
        stats[status] = {"count": count, "total_amount": int(amount), "total_fees": int(fees)}
    return stats
