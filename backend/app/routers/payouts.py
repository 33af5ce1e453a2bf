"""Beneficiary payouts router."""
import logging
from typing import Optional
import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.auth.dependencies import get_current_active_user, actor_id
from app.schemas.payouts import (
    PayoutCreateRequest, PayoutResponse, PayoutListResponse, PayoutCancelRequest,
    PayoutSettingsUpdate, PayoutSettingsResponse, ConnectOnboardResponse
)
from app.services import payouts as payout_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def request_payout(
    request: Optional[PayoutCreateRequest] = None,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Request a payout of every approved earning past its hold period.

    - Oldest earnings first, all of them in the chosen currency
    - Refused below the currency minimum or without a connected payout account
    """
    request = request or PayoutCreateRequest()
    return await payout_service.request_payout(
        db,
        current_user,
        currency=request.currency,
        method=request.method,
        min_amount=request.min_amount,
    )


@router.get("/api/payouts", response_model=PayoutListResponse)
async def list_my_payouts(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Payout history for the authenticated user (newest first)."""
    payouts, total = await payout_service.payout_history(
        db, current_user.uuid, status=status, page=page, page_size=page_size
    )
    return PayoutListResponse(
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size
    )


@router.get("/api/payouts/settings", response_model=PayoutSettingsResponse)
async def get_payout_settings(
    current_user: User = Depends(get_current_active_user)
):
    return payout_service.payout_settings(current_user)


@router.put("/api/payouts/settings", response_model=PayoutSettingsResponse)
async def update_payout_settings(
    request: PayoutSettingsUpdate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Update payout method, destination type, currency and personal minimum.

    - Requires a connected payout account
    - The personal minimum can never be below the currency minimum
    """
    return await payout_service.update_payout_settings(
        db,
        current_user,
        method=request.method,
        destination_type=request.destination_type,
        currency=request.currency,
        minimum_amount=request.minimum_amount,
    )


@router.post("/api/payouts/connect", response_model=ConnectOnboardResponse)
async def connect_payout_account(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a Stripe Express account for payouts and return its onboarding link.

    - Reuses the account already on file
    - The account id is recorded before the link is returned
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    try:
        account_id = current_user.stripe_connect_account_id
        if not account_id:
            account = stripe.Account.create(
                type="express",
                email=current_user.email,
                capabilities={"transfers": {"requested": True}},
                metadata={"user_id": current_user.uuid},
            )
            account_id = account.id
            await payout_service.link_payout_account(db, current_user, account_id)

        account_link = stripe.AccountLink.create(
            account=account_id,
            type="account_onboarding",
            return_url=f"{settings.FRONTEND_URL}/dashboard/payouts/connect/return",
            refresh_url=f"{settings.FRONTEND_URL}/dashboard/payouts",
        )
        return ConnectOnboardResponse(url=account_link.url, account_id=account_id)

    except stripe.error.StripeError as e:
        logger.error(f"Stripe Connect onboarding failed for {current_user.uuid}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Failed to create onboarding link: {str(e)}"
        )


@router.get("/api/payouts/{payout_id}", response_model=PayoutResponse)
async def get_my_payout(
    payout_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    return await payout_service.get_payout(db, payout_id, beneficiary_id=current_user.uuid)


@router.post("/api/payouts/{payout_id}/cancel", response_model=PayoutResponse)
async def cancel_my_payout(
    payout_id: str,
    request: Optional[PayoutCancelRequest] = None,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Cancel a payout that has not been sent yet; its earnings become available again."""
    request = request or PayoutCancelRequest()
    return await payout_service.cancel_payout(
        db, payout_id, actor_id(current_user), request.reason, beneficiary_id=current_user.uuid
    )
