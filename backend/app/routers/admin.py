"""Admin endpoints for ledger review and payout operations."""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.auth.dependencies import admin_required, actor_id
from app.schemas.earnings import (
    EarningResponse, EarningListResponse, EarningReasonRequest, EarningsSummarySnapshotResponse,
    BulkApproveRequest, BulkReasonRequest, BulkActionResponse, HoldSweepResponse,
)
from app.schemas.payouts import (
    PayoutResponse, PayoutListResponse, PayoutCancelRequest, PayoutStatsResponse
)
from app.services import ledger
from app.services import payouts as payout_service
from app.services.dispatch import dispatch_payout
from app.services.hold import mature_earnings

router = APIRouter()


# ── Earnings ─────────────────────────────────────────────────────────────────

@router.get("/earnings", response_model=EarningListResponse)
async def list_earnings(
    beneficiary_id: Optional[str] = Query(None),
    billing_subject_ref: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    tier_level: Optional[int] = Query(None, ge=1),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """
    List ledger lines across all beneficiaries.

    - Filter by beneficiary, subscription, status, source, tier or currency
    - Paginated, newest first
    """
    earnings, total = await ledger.list_earnings(
        db,
        beneficiary_id=beneficiary_id,
        billing_subject_ref=billing_subject_ref,
        status=status,
        source=source,
        tier_level=tier_level,
        currency=currency,
        page=page,
        page_size=page_size,
    )
    return EarningListResponse(
        earnings=[EarningResponse.model_validate(e) for e in earnings],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size
    )


@router.get("/earnings/summaries", response_model=list[EarningsSummarySnapshotResponse])
async def list_earnings_summaries(
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Per-beneficiary summary snapshots, largest approved balance first."""
    summaries, _ = await ledger.list_summaries(db, currency=currency, page=page, page_size=page_size)
    return summaries


@router.post("/earnings/bulk-approve", response_model=BulkActionResponse)
async def bulk_approve_earnings(
    request: BulkApproveRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Approve many pending earnings; ids that cannot be approved are reported as skipped."""
    updated, skipped = await ledger.bulk_approve(db, request.earning_ids, actor_id(current_user))
    return BulkActionResponse(updated=[EarningResponse.model_validate(e) for e in updated], skipped=skipped)


@router.post("/earnings/bulk-dispute", response_model=BulkActionResponse)
async def bulk_dispute_earnings(
    request: BulkReasonRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    updated, skipped = await ledger.bulk_dispute(db, request.earning_ids, actor_id(current_user), request.reason)
    return BulkActionResponse(updated=[EarningResponse.model_validate(e) for e in updated], skipped=skipped)


@router.post("/earnings/bulk-cancel", response_model=BulkActionResponse)
async def bulk_cancel_earnings(
    request: BulkReasonRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    updated, skipped = await ledger.bulk_cancel(db, request.earning_ids, actor_id(current_user), request.reason)
    return BulkActionResponse(updated=[EarningResponse.model_validate(e) for e in updated], skipped=skipped)


@router.post("/earnings/{earning_id}/approve", response_model=EarningResponse)
async def approve_earning(
    earning_id: str,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Approve a pending earning ahead of the hold sweep."""
    return await ledger.approve_earning(db, earning_id, actor_id(current_user))


@router.post("/earnings/{earning_id}/dispute", response_model=EarningResponse)
async def dispute_earning(
    earning_id: str,
    request: EarningReasonRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Dispute a pending or approved earning.

    - A pending payout containing it is cancelled first
    - Refused (409) while its payout is being processed
    """
    return await ledger.dispute_earning(db, earning_id, actor_id(current_user), request.reason)


@router.post("/earnings/{earning_id}/cancel", response_model=EarningResponse)
async def cancel_earning(
    earning_id: str,
    request: EarningReasonRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    return await ledger.cancel_earning(db, earning_id, actor_id(current_user), request.reason)


@router.post("/hold-sweep", response_model=HoldSweepResponse)
async def run_hold_sweep(
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Run the hold-period sweep and link reconciliation now instead of waiting for the scheduler."""
    approved = await mature_earnings(db)
    released = await payout_service.release_orphaned_links(db)
    return HoldSweepResponse(approved=approved, released_links=released)


# ── Payouts ──────────────────────────────────────────────────────────────────

@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    beneficiary_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    payouts, total = await payout_service.list_payouts(
        db, beneficiary_id=beneficiary_id, status=status, page=page, page_size=page_size
    )
    return PayoutListResponse(
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size
    )


@router.get("/payouts/stats", response_model=PayoutStatsResponse)
async def get_payout_stats(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Count, amount and fees per payout status for payouts requested in [start, end)."""
    stats = await payout_service.payout_stats(db, start=start, end=end)
    return PayoutStatsResponse(stats=stats, start=start, end=end)


@router.post("/payouts/{payout_id}/process", response_model=PayoutResponse)
async def process_payout(
    payout_id: str,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Send a pending payout to Stripe Connect.

    - Accepted: payout moves to processing
    - Rejected by Stripe: payout fails and its earnings are released
    - Stripe unreachable: 503, payout stays pending
    """
    return await dispatch_payout(db, payout_id, actor_id(current_user))


@router.post("/payouts/{payout_id}/reject", response_model=PayoutResponse)
async def reject_payout(
    payout_id: str,
    request: PayoutCancelRequest,
    current_user: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Reject a pending payout; its earnings return to the eligible pool."""
    return await payout_service.cancel_payout(db, payout_id, actor_id(current_user), request.reason)
