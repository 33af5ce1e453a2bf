"""Billing service feed: billing facts in, reversals in."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.auth.dependencies import internal_service_required
from app.schemas.earnings import EarningResponse
from app.schemas.ledger import BillingFact, IngestResponse, SubscriptionReversalEvent, ReversalResponse
from app.services.billing import ingest_billing_fact
from app.services.reversal import reverse_for_subscription

router = APIRouter()


@router.post("/api/ledger/billing-facts", response_model=IngestResponse)
async def post_billing_fact(
    fact: BillingFact,
    service: str = Depends(internal_service_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Record commissions for a successful payment.

    - Redeliveries of the same (subscription_ref, external_payment_id) return "duplicate"
    - Gifted subscriptions return "gifted" and record nothing
    """
    result = await ingest_billing_fact(db, fact)
    return IngestResponse(
        status=result.status,
        earnings=[EarningResponse.model_validate(e) for e in result.earnings],
    )


@router.post("/api/ledger/reversals", response_model=ReversalResponse)
async def post_reversal(
    event: SubscriptionReversalEvent,
    service: str = Depends(internal_service_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel the unpaid earnings of a cancelled, refunded, deauthorized or gifted subscription.

    Earnings in a payout that is already being processed are listed as deferred
    and cancelled once that payout fails, is cancelled or is returned.
    """
    result = await reverse_for_subscription(
        db,
        event.subscription_ref,
        f"{event.kind}: {event.reason}",
        actor_id=service,
        gifted=event.kind == "gifted",
    )
    return ReversalResponse(
        subscription_ref=result.subscription_ref,
        cancelled=result.cancelled,
        deferred=result.deferred,
        skipped=result.skipped,
    )
