"""Hand payouts to Stripe Connect.

The ledger only sees the outcome: a dispatched payout moves to
``processing``, a rejected one to ``failed`` (releasing its earnings), and a
transient error leaves it ``pending`` for a retry.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import InvalidTransition, UpstreamDispatchFailure
from app.models.payout import Payout, PayoutStatus
from app.services.payouts import apply_dispatch_outcome, get_payout

logger = logging.getLogger(__name__)


@dataclass
class DispatchReceipt:
    external_payout_id: str
    external_transfer_id: Optional[str] = None


class StripeConnectDispatcher:
    """Moves a payout's net amount to the beneficiary's connected account and pays it out.

    The payout uuid is the idempotency key for both calls, so retrying a
    dispatch after a timeout never sends money twice.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY

    def send(self, payout: Payout) -> DispatchReceipt:
        stripe.api_key = self.api_key
        metadata = {"payout_id": payout.uuid, "beneficiary_id": payout.beneficiary_id}

        transfer = stripe.Transfer.create(
            amount=payout.net_amount,
            currency=payout.currency.lower(),
            destination=payout.destination_account_ref,
            metadata=metadata,
            idempotency_key=f"transfer-{payout.uuid}",
        )
        connect_payout = stripe.Payout.create(
            amount=payout.net_amount,
            currency=payout.currency.lower(),
            method=payout.method,
            metadata=metadata,
            stripe_account=payout.destination_account_ref,
            idempotency_key=f"payout-{payout.uuid}",
        )
        return DispatchReceipt(external_payout_id=connect_payout.id, external_transfer_id=transfer.id)


async def dispatch_payout(
    db: AsyncSession,
    payout_id: str,
    actor_id: str,
    dispatcher: Optional[StripeConnectDispatcher] = None,
) -> Payout:
    """
    Send a pending payout to the rail and record the outcome.

    Raises:
        PayoutNotFound: Unknown payout.
        InvalidTransition: The payout is not pending.
        UpstreamDispatchFailure: The rail could not be reached; retry later.
    """
    dispatcher = dispatcher or StripeConnectDispatcher()
    payout = await get_payout(db, payout_id)
    if payout.status != PayoutStatus.PENDING:
        raise InvalidTransition(
            f"Payout {payout_id} is {payout.status}; only pending payouts can be processed",
            details={"payout_id": payout_id, "status": payout.status},
        )

    try:
        receipt = dispatcher.send(payout)
    except (stripe.error.APIConnectionError, stripe.error.RateLimitError, stripe.error.APIError) as e:
        logger.error(f"Transient Stripe error dispatching payout {payout_id}: {e}")
        raise UpstreamDispatchFailure(
            "Payout provider unavailable, try again later",
            details={"payout_id": payout_id},
        )
    except stripe.error.StripeError as e:
        logger.error(f"Stripe rejected payout {payout_id}: {e}")
        return await apply_dispatch_outcome(
            db, payout_id, PayoutStatus.FAILED,
            failure_code=e.code or "dispatch_rejected",
            failure_message=e.user_message or str(e),
            actor_id=actor_id,
        )

    logger.info(f"Payout {payout_id} dispatched as {receipt.external_payout_id}")
    return await apply_dispatch_outcome(
        db, payout_id, PayoutStatus.PROCESSING,
        external_payout_id=receipt.external_payout_id,
        external_transfer_id=receipt.external_transfer_id,
        actor_id=actor_id,
    )
