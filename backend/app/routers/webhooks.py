"""Stripe Connect webhook: payout outcomes and account deauthorization."""
import logging
from typing import Optional
import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.exceptions import InvalidTransition, PayoutNotFound
from app.models.payout import Payout, PayoutStatus
from app.models.user import User
from app.services import ledger
from app.services.idempotency import remember_event, seen_recently
from app.services.payouts import apply_dispatch_outcome

logger = logging.getLogger(__name__)

router = APIRouter()

STRIPE_ACTOR = "system:stripe"

# Stripe payout status -> ledger outcome. "pending" carries no news.
STRIPE_PAYOUT_STATUS = {
    "in_transit": PayoutStatus.IN_TRANSIT,
    "paid": PayoutStatus.PAID,
    "failed": PayoutStatus.FAILED,
    "canceled": PayoutStatus.CANCELLED,
}


async def _find_payout(db: AsyncSession, obj: dict, transfer: bool = False) -> Optional[Payout]:
    """Match a Stripe object to our payout via metadata, then via the stored Stripe id."""
    payout_id = (obj.get("metadata") or {}).get("payout_id")
    if payout_id:
        payout = await db.get(Payout, payout_id)
        if payout is not None:
            return payout

    column = Payout.external_transfer_id if transfer else Payout.external_payout_id
    result = await db.execute(select(Payout).where(column == obj.get("id")))
    return result.scalar_one_or_none()


async def _apply(db: AsyncSession, payout: Payout, outcome: str, obj: dict) -> dict:
    try:
        updated = await apply_dispatch_outcome(
            db,
            payout.uuid,
            outcome,
            failure_code=obj.get("failure_code"),
            failure_message=obj.get("failure_message"),
            external_payout_id=obj.get("id") if obj.get("object") == "payout" else None,
            actor_id=STRIPE_ACTOR,
        )
    except InvalidTransition as e:
        logger.error(f"Stripe outcome {outcome} refused for payout {payout.uuid}: {e.message}")
        await db.rollback()
        return {"status": "needs_reconciliation", "payout_id": payout.uuid}
    return {"status": "processed", "payout_id": updated.uuid, "payout_status": updated.status}


async def _handle_payout_event(db: AsyncSession, event_type: str, obj: dict) -> dict:
    payout = await _find_payout(db, obj)
    if payout is None:
        logger.warning(f"{event_type} for unknown payout {obj.get('id')}")
        return {"status": "ignored"}

    if event_type == "payout.paid":
        outcome = PayoutStatus.PAID
    elif event_type == "payout.failed":
        # Stripe fails a payout it already paid when the bank sends it back
        outcome = PayoutStatus.RETURNED if payout.status == PayoutStatus.PAID else PayoutStatus.FAILED
    elif event_type == "payout.canceled":
        outcome = PayoutStatus.CANCELLED
    else:
        outcome = STRIPE_PAYOUT_STATUS.get(obj.get("status"))
        if outcome is None:
            return {"status": "ignored"}

    return await _apply(db, payout, outcome, obj)


async def _handle_transfer_reversed(db: AsyncSession, obj: dict) -> dict:
    payout = await _find_payout(db, obj, transfer=True)
    if payout is None:
        logger.warning(f"transfer.reversed for unknown transfer {obj.get('id')}")
        return {"status": "ignored"}
    return await _apply(db, payout, PayoutStatus.RETURNED, obj)


async def _handle_deauthorized(db: AsyncSession, account_id: Optional[str]) -> dict:
    """Forget a disconnected account and cancel the payouts still waiting to go to it."""
    if not account_id:
        return {"status": "ignored"}

    await db.execute(
        update(User)
        .where(User.stripe_connect_account_id == account_id)
        .values(stripe_connect_account_id=None)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(Payout.uuid).where(
            Payout.destination_account_ref == account_id,
            Payout.status == PayoutStatus.PENDING,
        )
    )
    cancelled = 0
    for payout_id in result.scalars().all():
        if await ledger.cancel_pending_payout(db, payout_id, "payout account disconnected", STRIPE_ACTOR):
            cancelled += 1
    await db.commit()
    logger.info(f"Connect account {account_id} deauthorized; {cancelled} pending payouts cancelled")
    return {"status": "processed", "cancelled_payouts": cancelled}


@router.post("/api/webhooks/stripe-connect")
async def stripe_connect_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe Connect webhook events.

    - Verifies webhook signature
    - payout.* events drive the payout state machine
    - transfer.reversed marks the payout returned
    - account.application.deauthorized clears the payout destination
    - Database errors answer 503 so Stripe redelivers
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header"
        )

    # Verify webhook signature
    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_CONNECT_WEBHOOK_SECRET
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )
    except stripe.error.SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    event_id = event.get("id")
    event_type = event["type"]
    if await seen_recently(event_id):
        return {"status": "duplicate"}

    obj = event["data"]["object"]
    try:
        if event_type.startswith("payout."):
            result = await _handle_payout_event(db, event_type, obj)
        elif event_type == "transfer.reversed":
            result = await _handle_transfer_reversed(db, obj)
        elif event_type == "account.application.deauthorized":
            result = await _handle_deauthorized(db, event.get("account"))
        else:
            result = {"status": "ignored"}
    except PayoutNotFound:
        result = {"status": "ignored"}
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Database error handling Stripe event {event_id} ({event_type}): {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unable to process event"
        )

    await remember_event(event_id)
    return result
