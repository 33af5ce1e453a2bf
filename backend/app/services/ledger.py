"""Earning ledger: persistence and state machine for commission lines.

Status moves forward only::

    pending -> approved -> paid
    pending | approved -> disputed
    pending | approved -> cancelled

Every status or payout link change is a single conditional UPDATE scoped on
the expected prior state. When it matches no row the current row is re-read
and the caller gets :class:`InvalidTransition` (or :class:`EarningNotFound`).
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import select, update, func, desc, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import EarningNotFound, InvalidTransition
from app.models.earning import Earning, EarningStatus, EarningSource
from app.models.earnings_summary import EarningsSummary
from app.models.payout import Payout, PayoutStatus
from app.services import outbox

logger = logging.getLogger(__name__)

SYSTEM_HOLD_SWEEP = "system:hold-sweep"


# ── Creation ─────────────────────────────────────────────────────────────────

async def find_origin_earning(db: AsyncSession, billing_subject_ref: str, tier_level: int) -> Optional[Earning]:
    """The first purchase line for a subscription at a given tier, if any."""
    result = await db.execute(
        select(Earning)
        .where(
            Earning.billing_subject_ref == billing_subject_ref,
            Earning.tier_level == tier_level,
            Earning.source == EarningSource.PURCHASE,
        )
        .order_by(Earning.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def add_earnings(db: AsyncSession, drafts: Sequence, origin_ids: Optional[Dict[int, str]] = None) -> List[Earning]:
    """
    Insert pending earnings for a set of drafts from one billing fact.

    Tier n >= 2 lines point at the tier n-1 line through ``parent_earning_id``.
    One ``earning.created`` event is queued per line. Nothing is committed.
    """
    origin_ids = origin_ids or {}
    earnings: List[Earning] = []
    parent_id = None

    for draft in drafts:
        earning = Earning(
            uuid=str(uuid4()),
            beneficiary_id=draft.beneficiary_id,
            counterparty_user_id=draft.counterparty_user_id,
            billing_subject_ref=draft.billing_subject_ref,
            external_payment_id=draft.external_payment_id,
            source=draft.source,
            tier_level=draft.tier_level,
            plan=draft.plan,
            origin_earning_id=origin_ids.get(draft.tier_level),
            parent_earning_id=parent_id if draft.tier_level > 1 else None,
            gross_amount=draft.gross_amount,
            base_amount=draft.base_amount,
            commission_rate=draft.commission_rate,
            commission_amount=draft.commission_amount,
            currency=draft.currency,
            status=EarningStatus.PENDING,
            is_gifted=False,
            hold_policy=draft.hold_policy,
            hold_period_days=draft.hold_period_days,
            payment_completed_at=draft.payment_completed_at,
            eligible_for_payout_at=draft.eligible_for_payout_at,
            description=draft.description,
        )
        db.add(earning)
        earnings.append(earning)
        parent_id = earning.uuid

        outbox.enqueue_event(db, outbox.EARNING_CREATED, earning.beneficiary_id, {
            "earning_id": earning.uuid,
            "amount": earning.commission_amount,
            "currency": earning.currency,
            "plan": earning.plan,
            "tier_level": earning.tier_level,
            "eligible_for_payout_at": earning.eligible_for_payout_at.isoformat() if earning.eligible_for_payout_at else None,
        })

    return earnings


# ── Transitions ──────────────────────────────────────────────────────────────

async def _transition(
    db: AsyncSession,
    earning_id: str,
    from_states: Tuple[str, ...],
    values: dict,
    action: str,
    *conditions,
) -> Earning:
    stmt = (
        update(Earning)
        .where(Earning.uuid == earning_id, Earning.status.in_(from_states), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)

    earning = await db.get(Earning, earning_id, populate_existing=True)
    if earning is None:
        raise EarningNotFound(f"Earning {earning_id} not found", details={"earning_id": earning_id})
    if result.rowcount == 0:
        raise InvalidTransition(
            f"Cannot {action} earning {earning_id} in status {earning.status}",
            details={"earning_id": earning_id, "status": earning.status},
        )
    return earning


async def release_links(db: AsyncSession, link_condition, now: Optional[datetime] = None) -> Tuple[list, list]:
    """
    Hand approved earnings matching ``link_condition`` back to the pool.

    Earnings whose reversal was deferred while their payout was in flight
    are cancelled instead, with the recorded actor and reason. Nothing is
    committed.

    Returns:
        (released, cancelled): ``(uuid, beneficiary_id)`` rows.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        update(Earning)
        .where(
            link_condition,
            Earning.status == EarningStatus.APPROVED,
            Earning.reversal_requested_at.is_not(None),
        )
        .values(
            status=EarningStatus.CANCELLED,
            payout_id=None,
            cancelled_at=now,
            cancelled_by=Earning.reversal_requested_by,
            cancellation_reason=Earning.reversal_reason,
            updated_at=now,
        )
        .returning(
            Earning.uuid, Earning.beneficiary_id, Earning.commission_amount,
            Earning.currency, Earning.reversal_reason,
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = []
    for earning_id, beneficiary_id, amount, currency, reason in result.all():
        outbox.enqueue_event(db, outbox.EARNING_CANCELLED, beneficiary_id, {
            "earning_id": earning_id,
            "amount": amount,
            "currency": currency,
            "reason": reason,
        })
        logger.info(f"Earning {earning_id} -> cancelled on payout release: {reason}")
        cancelled.append((earning_id, beneficiary_id))

    result = await db.execute(
        update(Earning)
        .where(link_condition, Earning.status == EarningStatus.APPROVED)
        .values(payout_id=None, updated_at=now)
        .returning(Earning.uuid, Earning.beneficiary_id)
        .execution_options(synchronize_session=False)
    )
    released = [tuple(row) for row in result.all()]
    return released, cancelled


async def release_payout_links(db: AsyncSession, payout_id: str) -> List[str]:
    """Unlink every approved earning from a payout, applying deferred reversals."""
    released, cancelled = await release_links(db, Earning.payout_id == payout_id)
    if released or cancelled:
        logger.info(
            f"Released {len(released)} earnings from payout {payout_id}, "
            f"cancelled {len(cancelled)} with deferred reversals"
        )
    return [earning_id for earning_id, _ in released]


async def defer_reversal(db: AsyncSession, earning_id: str, actor_id: str, reason: str, now: datetime) -> bool:
    """
    Record a reversal on an earning held by an in-flight payout.

    It is applied when that payout is released. Returns True when the line
    carries a deferred reversal (recorded now or earlier). Nothing is committed.
    """
    if not reason or not reason.strip():
        return False
    result = await db.execute(
        update(Earning)
        .where(
            Earning.uuid == earning_id,
            Earning.status.in_(EarningStatus.REVERSIBLE),
            Earning.payout_id.is_not(None),
            Earning.reversal_requested_at.is_(None),
        )
        .values(
            reversal_requested_at=now,
            reversal_requested_by=actor_id,
            reversal_reason=reason.strip(),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    earning = await db.get(Earning, earning_id, populate_existing=True)
    if result.rowcount:
        logger.warning(f"Earning {earning_id} is in payout {earning.payout_id}; reversal deferred: {reason}")
        return True
    return (
        earning is not None
        and earning.status in EarningStatus.REVERSIBLE
        and earning.reversal_requested_at is not None
    )


def payout_event_payload(payout: Payout, message: Optional[str] = None) -> dict:
    payload = {
        "payout_id": payout.uuid,
        "amount": payout.amount,
        "net_amount": payout.net_amount,
        "currency": payout.currency,
    }
    if message:
        payload["message"] = message
    return payload


async def cancel_pending_payout(
    db: AsyncSession,
    payout_id: str,
    reason: str,
    actor_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Cancel a payout that has not been dispatched yet and release its earnings.

    Returns False when the payout is no longer pending. Nothing is committed.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        update(Payout)
        .where(Payout.uuid == payout_id, Payout.status == PayoutStatus.PENDING)
        .values(
            status=PayoutStatus.CANCELLED,
            cancelled_at=now,
            cancellation_reason=reason,
            processed_by=actor_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    await release_payout_links(db, payout_id)
    payout = await db.get(Payout, payout_id, populate_existing=True)
    outbox.enqueue_event(
        db, outbox.payout_event_type(PayoutStatus.CANCELLED), payout.beneficiary_id,
        payout_event_payload(payout, reason),
    )
    logger.info(f"Payout {payout_id} cancelled by {actor_id}: {reason}")
    return True


async def _detach_for_reversal(db: AsyncSession, earning: Earning, actor_id: str, now: datetime) -> None:
    """Free an earning from its payout before it is disputed or cancelled.

    A pending payout is cancelled as a whole. A payout already handed to the
    rail cannot be touched until its outcome arrives.
    """
    if earning.payout_id is None:
        return

    payout = await db.get(Payout, earning.payout_id, populate_existing=True)
    if payout is None or payout.status in PayoutStatus.RELEASING:
        # Stale link left behind by a released payout
        await db.execute(
            update(Earning)
            .where(Earning.uuid == earning.uuid, Earning.payout_id == earning.payout_id)
            .values(payout_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return

    if payout.status == PayoutStatus.PENDING:
        reason = f"earning {earning.uuid} reversed"
        if await cancel_pending_payout(db, payout.uuid, reason, actor_id, now):
            return
        payout = await db.get(Payout, earning.payout_id, populate_existing=True)

    raise InvalidTransition(
        f"Earning {earning.uuid} is part of payout {payout.uuid} which is {payout.status}",
        details={"earning_id": earning.uuid, "payout_id": payout.uuid, "payout_status": payout.status},
    )


async def reverse_earning(
    db: AsyncSession,
    earning_id: str,
    target: str,
    actor_id: str,
    reason: str,
    now: datetime,
    extra_values: Optional[dict] = None,
) -> Earning:
    """
    Move a pending or approved earning to disputed or cancelled.

    A link to a pending payout is undone first by cancelling that payout; a
    link to a payout already in flight raises InvalidTransition. Queues the
    matching event. Nothing is committed.
    """
    if not reason or not reason.strip():
        raise InvalidTransition(
            f"A reason is required to move earning {earning_id} to {target}",
            details={"earning_id": earning_id},
        )
    reason = reason.strip()

    earning = await db.get(Earning, earning_id, populate_existing=True)
    if earning is None:
        raise EarningNotFound(f"Earning {earning_id} not found", details={"earning_id": earning_id})
    if earning.status not in EarningStatus.REVERSIBLE:
        raise InvalidTransition(
            f"Cannot move earning {earning_id} from {earning.status} to {target}",
            details={"earning_id": earning_id, "status": earning.status},
        )

    await _detach_for_reversal(db, earning, actor_id, now)

    if target == EarningStatus.DISPUTED:
        values = {"disputed_at": now, "disputed_by": actor_id, "dispute_reason": reason}
        event_type = outbox.EARNING_DISPUTED
    else:
        values = {"cancelled_at": now, "cancelled_by": actor_id, "cancellation_reason": reason}
        event_type = outbox.EARNING_CANCELLED
    values.update(extra_values or {})
    values.update(status=target, updated_at=now)

    earning = await _transition(
        db, earning_id, EarningStatus.REVERSIBLE, values, f"move to {target}",
        Earning.payout_id.is_(None),
    )
    outbox.enqueue_event(db, event_type, earning.beneficiary_id, {
        "earning_id": earning.uuid,
        "amount": earning.commission_amount,
        "currency": earning.currency,
        "reason": reason,
    })
    logger.info(f"Earning {earning_id} -> {target} by {actor_id}: {reason}")
    return earning


async def _approve(db: AsyncSession, earning_id: str, actor_id: str, now: datetime) -> Earning:
    return await _transition(
        db, earning_id, (EarningStatus.PENDING,),
        {"status": EarningStatus.APPROVED, "approved_at": now, "approved_by": actor_id, "updated_at": now},
        "approve",
        Earning.is_gifted.is_(False),
    )


def _enqueue_approved(db: AsyncSession, earnings: Iterable[Earning]) -> None:
    grouped = defaultdict(list)
    for earning in earnings:
        grouped[(earning.beneficiary_id, earning.currency)].append(earning.commission_amount)
    for (beneficiary_id, currency), amounts in grouped.items():
        outbox.enqueue_event(db, outbox.EARNINGS_APPROVED, beneficiary_id, {
            "count": len(amounts),
            "total": sum(amounts),
            "currency": currency,
        })


async def approve_earning(db: AsyncSession, earning_id: str, actor_id: str, now: Optional[datetime] = None) -> Earning:
    """Manually approve a pending earning (pending -> approved)."""
    now = now or datetime.utcnow()
    earning = await _approve(db, earning_id, actor_id, now)
    _enqueue_approved(db, [earning])
    await recompute_summaries(db, [earning.beneficiary_id])
    await db.commit()
    logger.info(f"Earning {earning_id} approved by {actor_id}")
    return earning


async def dispute_earning(
    db: AsyncSession, earning_id: str, actor_id: str, reason: str, now: Optional[datetime] = None
) -> Earning:
    """Dispute a pending or approved earning. Terminal; a reason is required."""
    now = now or datetime.utcnow()
    earning = await reverse_earning(db, earning_id, EarningStatus.DISPUTED, actor_id, reason, now)
    await recompute_summaries(db, [earning.beneficiary_id])
    await db.commit()
    return earning


async def cancel_earning(
    db: AsyncSession,
    earning_id: str,
    actor_id: str,
    reason: str,
    now: Optional[datetime] = None,
    gifted: bool = False,
) -> Earning:
    """Cancel a pending or approved earning. Terminal; a reason is required."""
    now = now or datetime.utcnow()
    extra = {"is_gifted": True} if gifted else None
    earning = await reverse_earning(db, earning_id, EarningStatus.CANCELLED, actor_id, reason, now, extra)
    await recompute_summaries(db, [earning.beneficiary_id])
    await db.commit()
    return earning


async def _bulk(db: AsyncSession, earning_ids: Sequence[str], apply, action: str) -> Tuple[List[Earning], List[str]]:
    """Apply a per-earning transition to each id once; bad ids are collected, not raised."""
    updated: List[Earning] = []
    skipped: List[str] = []
    for earning_id in dict.fromkeys(earning_ids):
        try:
            updated.append(await apply(earning_id))
        except (InvalidTransition, EarningNotFound) as e:
            logger.warning(f"Bulk {action} skipped earning {earning_id}: {e.message}")
            skipped.append(earning_id)

    await recompute_summaries(db, {e.beneficiary_id for e in updated})
    return updated, skipped


async def bulk_approve(
    db: AsyncSession, earning_ids: Sequence[str], actor_id: str, now: Optional[datetime] = None
) -> Tuple[List[Earning], List[str]]:
    """Approve many earnings. Ids in the wrong state or unknown are skipped, not fatal."""
    now = now or datetime.utcnow()
    updated, skipped = await _bulk(
        db, earning_ids, lambda earning_id: _approve(db, earning_id, actor_id, now), "approve"
    )
    _enqueue_approved(db, updated)
    await db.commit()
    logger.info(f"Bulk approve by {actor_id}: {len(updated)} approved, {len(skipped)} skipped")
    return updated, skipped


async def bulk_dispute(
    db: AsyncSession, earning_ids: Sequence[str], actor_id: str, reason: str, now: Optional[datetime] = None
) -> Tuple[List[Earning], List[str]]:
    now = now or datetime.utcnow()
    updated, skipped = await _bulk(
        db, earning_ids,
        lambda earning_id: reverse_earning(db, earning_id, EarningStatus.DISPUTED, actor_id, reason, now),
        "dispute",
    )
    await db.commit()
    return updated, skipped


async def bulk_cancel(
    db: AsyncSession, earning_ids: Sequence[str], actor_id: str, reason: str, now: Optional[datetime] = None
) -> Tuple[List[Earning], List[str]]:
    now = now or datetime.utcnow()
    updated, skipped = await _bulk(
        db, earning_ids,
        lambda earning_id: reverse_earning(db, earning_id, EarningStatus.CANCELLED, actor_id, reason, now),
        "cancel",
    )
    await db.commit()
    return updated, skipped


# ── Queries ──────────────────────────────────────────────────────────────────

async def get_earning(db: AsyncSession, earning_id: str, beneficiary_id: Optional[str] = None) -> Earning:
    """Fetch one earning, optionally scoped to its beneficiary."""
    earning = await db.get(Earning, earning_id)
    if earning is None or (beneficiary_id is not None and earning.beneficiary_id != beneficiary_id):
        raise EarningNotFound(f"Earning {earning_id} not found", details={"earning_id": earning_id})
    return earning


async def list_earnings(
    db: AsyncSession,
    *,
    beneficiary_id: Optional[str] = None,
    status: Optional[str] = None,
    source: Optional[str] = None,
    tier_level: Optional[int] = None,
    currency: Optional[str] = None,
    billing_subject_ref: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Earning], int]:
    """Filtered, newest-first page of earnings plus the total match count."""
    filters = []
    if beneficiary_id:
        filters.append(Earning.beneficiary_id == beneficiary_id)
    if status:
        filters.append(Earning.status == status)
    if source:
        filters.append(Earning.source == source)
    if tier_level:
        filters.append(Earning.tier_level == tier_level)
    if currency:
        filters.append(Earning.currency == currency.upper())
    if billing_subject_ref:
        filters.append(Earning.billing_subject_ref == billing_subject_ref)

    count_result = await db.execute(select(func.count(Earning.uuid)).where(*filters))
    total = count_result.scalar()

    offset = (page - 1) * page_size
    result = await db.execute(
        select(Earning)
        .where(*filters)
        .order_by(desc(Earning.created_at), Earning.tier_level)
        .offset(offset)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


def payable_filter(beneficiary_id: str, currency: str, now: datetime):
    """Approved, unlinked, past the hold window, not gifted and not awaiting reversal."""
    return and_(
        Earning.beneficiary_id == beneficiary_id,
        Earning.currency == currency,
        Earning.status == EarningStatus.APPROVED,
        Earning.payout_id.is_(None),
        Earning.is_gifted.is_(False),
        Earning.reversal_requested_at.is_(None),
        Earning.eligible_for_payout_at <= now,
    )


async def earnings_summary(
    db: AsyncSession, beneficiary_id: str, currency: str, now: Optional[datetime] = None
) -> dict:
    """Live per-status counts and totals for one beneficiary and currency."""
    now = now or datetime.utcnow()
    currency = currency.upper()
    summary = {
        "beneficiary_id": beneficiary_id,
        "currency": currency,
        **{s: {"count": 0, "total": 0} for s in EarningStatus.ALL},
    }

    result = await db.execute(
        select(Earning.status, func.count(Earning.uuid), func.coalesce(func.sum(Earning.commission_amount), 0))
        .where(Earning.beneficiary_id == beneficiary_id, Earning.currency == currency)
        .group_by(Earning.status)
    )
    for status, count, total in result.all():
        summary[status] = {"count": count, "total": int(total)}

    payable = await db.execute(
        select(func.count(Earning.uuid), func.coalesce(func.sum(Earning.commission_amount), 0))
        .where(payable_filter(beneficiary_id, currency, now))
    )
    count, total = payable.one()
    summary["payable"] = {"count": count, "total": int(total)}
    return summary


async def recompute_summaries(db: AsyncSession, beneficiary_ids: Iterable[str]) -> int:
    """
    Rebuild summary snapshots for the given beneficiaries from the ledger.

    Snapshots are always recomputed from scratch, never adjusted in place.
    Nothing is committed. Returns the number of snapshot rows written.
    """
    beneficiary_ids = sorted(set(beneficiary_ids))
    if not beneficiary_ids:
        return 0

    await db.flush()
    result = await db.execute(
        select(
            Earning.beneficiary_id,
            Earning.currency,
            Earning.status,
            func.count(Earning.uuid),
            func.coalesce(func.sum(Earning.commission_amount), 0),
        )
        .where(Earning.beneficiary_id.in_(beneficiary_ids))
        .group_by(Earning.beneficiary_id, Earning.currency, Earning.status)
    )

    totals: Dict[Tuple[str, str], Dict[str, Tuple[int, int]]] = defaultdict(dict)
    for beneficiary_id, currency, status, count, total in result.all():
        totals[(beneficiary_id, currency)][status] = (count, int(total))

    now = datetime.utcnow()
    for (beneficiary_id, currency), by_status in totals.items():
        snapshot = await db.get(EarningsSummary, (beneficiary_id, currency))
        if snapshot is None:
            snapshot = EarningsSummary(beneficiary_id=beneficiary_id, currency=currency)
            db.add(snapshot)
        for status in EarningStatus.ALL:
            count, total = by_status.get(status, (0, 0))
            setattr(snapshot, f"{status}_count", count)
            setattr(snapshot, f"{status}_total", total)
        snapshot.refreshed_at = now

    return len(totals)


async def list_summaries(
    db: AsyncSession,
    currency: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[EarningsSummary], int]:
    """Snapshots ordered by approved total, largest first."""
    filters = [EarningsSummary.currency == currency.upper()] if currency else []
    count_result = await db.execute(select(func.count()).select_from(EarningsSummary).where(*filters))
    total = count_result.scalar()

    offset = (page - 1) * page_size
    result = await db.execute(
        select(EarningsSummary)
        .where(*filters)
        .order_by(desc(EarningsSummary.approved_total), EarningsSummary.beneficiary_id)
        .offset(offset)
        .limit(page_size)
    )
    return list(result.scalars().all()), total
