"""Ledger event outbox.

Ledger mutations call :func:`enqueue_event` inside their own transaction;
:func:`deliver_pending_events` runs later from the scheduler and turns the
rows into emails. Delivery state lives only on ``ledger_events``.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.ledger_event import LedgerEvent, LedgerEventStatus
from app.models.user import User
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)

EARNING_CREATED = "earning.created"
EARNINGS_APPROVED = "earnings.approved"
EARNING_CANCELLED = "earning.cancelled"
EARNING_DISPUTED = "earning.disputed"
PAYOUT_REQUESTED = "payout.requested"


def payout_event_type(status: str) -> str:
    return f"payout.{status}"


def enqueue_event(db: AsyncSession, event_type: str, beneficiary_id: str, payload: dict) -> LedgerEvent:
    """Add a pending event to the caller's transaction. Does not flush or commit."""
    event = LedgerEvent(
        event_type=event_type,
        beneficiary_id=beneficiary_id,
        payload=payload,
        status=LedgerEventStatus.PENDING,
        attempts=0,
    )
    db.add(event)
    return event


async def deliver_pending_events(db: AsyncSession, limit: Optional[int] = None) -> Dict[str, int]:
    """
    Deliver a batch of pending events, oldest first.

    Rows are locked with SKIP LOCKED so concurrent workers split the batch.
    A send that fails is retried on the next run until OUTBOX_MAX_ATTEMPTS,
    then marked failed. Events for unknown users, users without an email, or
    with email disabled are marked skipped.

    Returns:
        Counts of events per resulting status.
    """
    limit = limit or settings.OUTBOX_BATCH_SIZE
    query = (
        select(LedgerEvent)
        .where(LedgerEvent.status == LedgerEventStatus.PENDING)
        .order_by(LedgerEvent.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    result = await db.execute(query)
    events = result.scalars().all()

    counts = {
        LedgerEventStatus.SENT: 0,
        LedgerEventStatus.PENDING: 0,
        LedgerEventStatus.FAILED: 0,
        LedgerEventStatus.SKIPPED: 0,
    }

    for event in events:
        user = await db.get(User, event.beneficiary_id)
        if user is None or not user.email:
            event.status = LedgerEventStatus.SKIPPED
            event.last_error = "beneficiary has no email address"
        elif not settings.RESEND_API_KEY:
            event.status = LedgerEventStatus.SKIPPED
            event.last_error = "email delivery not configured"
        elif EmailService.send_ledger_event_email(user, event.event_type, event.payload):
            event.status = LedgerEventStatus.SENT
            event.sent_at = datetime.utcnow()
        else:
            event.attempts += 1
            event.last_error = f"send failed (attempt {event.attempts})"
            if event.attempts >= settings.OUTBOX_MAX_ATTEMPTS:
                event.status = LedgerEventStatus.FAILED
                logger.error(f"Giving up on event {event.uuid} ({event.event_type}) after {event.attempts} attempts")
        counts[event.status] += 1

    await db.commit()
    if events:
        logger.info(f"Delivered ledger events: {counts}")
    return counts
