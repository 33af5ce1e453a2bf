"""Beneficiary earnings router."""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.auth.dependencies import get_current_active_user
from app.schemas.earnings import EarningResponse, EarningListResponse, EarningsSummaryResponse
from app.services import ledger

router = APIRouter()


@router.get("/api/earnings", response_model=EarningListResponse)
async def list_my_earnings(
    status: Optional[str] = Query(None, description="pending, approved, paid, disputed or cancelled"),
    source: Optional[str] = Query(None),
    tier_level: Optional[int] = Query(None, ge=1),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    List the authenticated user's commission lines (paginated, newest first).
    """
    earnings, total = await ledger.list_earnings(
        db,
        beneficiary_id=current_user.uuid,
        status=status,
        source=source,
        tier_level=tier_level,
        currency=currency,
        page=page,
        page_size=page_size,
    )
    total_pages = (total + page_size - 1) // page_size

    return EarningListResponse(
        earnings=[EarningResponse.model_validate(e) for e in earnings],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages
    )


@router.get("/api/earnings/summary", response_model=EarningsSummaryResponse)
async def get_my_earnings_summary(
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Counts and totals per status, plus what can be paid out right now.
    """
    currency = currency or current_user.payout_currency
    return await ledger.earnings_summary(db, current_user.uuid, currency)


@router.get("/api/earnings/{earning_id}", response_model=EarningResponse)
async def get_my_earning(
    earning_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Get one of the authenticated user's earnings."""
    return await ledger.get_earning(db, earning_id, beneficiary_id=current_user.uuid)
