"""Schemas for earnings endpoints."""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class EarningResponse(BaseModel):
    """Schema for a single ledger line."""

    uuid: str
    beneficiary_id: str
    counterparty_user_id: str
    billing_subject_ref: str
    source: str
    tier_level: int
    plan: str
    gross_amount: int
    base_amount: int
    commission_rate: Decimal
    commission_amount: int
    currency: str
    status: str
    is_gifted: bool
    hold_policy: str
    hold_period_days: int
    payment_completed_at: Optional[datetime]
    eligible_for_payout_at: Optional[datetime]
    payout_id: Optional[str]
    origin_earning_id: Optional[str]
    parent_earning_id: Optional[str]
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    paid_at: Optional[datetime]
    disputed_at: Optional[datetime]
    dispute_reason: Optional[str]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    reversal_requested_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class EarningListResponse(BaseModel):
    """Schema for paginated earning list."""

    earnings: List[EarningResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class StatusTotals(BaseModel):
    count: int = 0
    total: int = 0


class EarningsSummaryResponse(BaseModel):
    """Counts and totals per status for one beneficiary and currency."""

    beneficiary_id: str
    currency: str
    pending: StatusTotals
    approved: StatusTotals
    paid: StatusTotals
    disputed: StatusTotals
    cancelled: StatusTotals
    payable: StatusTotals = Field(..., description="Approved, unlinked and past the hold window")


class EarningsSummarySnapshotResponse(BaseModel):
    beneficiary_id: str
    currency: str
    pending_count: int
    pending_total: int
    approved_count: int
    approved_total: int
    paid_count: int
    paid_total: int
    disputed_count: int
    disputed_total: int
    cancelled_count: int
    cancelled_total: int
    refreshed_at: datetime

    class Config:
        from_attributes = True


class EarningReasonRequest(BaseModel):
    """Reason required to dispute or cancel an earning."""

    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()


class BulkApproveRequest(BaseModel):
    earning_ids: List[str] = Field(..., min_length=1, max_length=500)


class BulkReasonRequest(EarningReasonRequest):
    earning_ids: List[str] = Field(..., min_length=1, max_length=500)


class BulkActionResponse(BaseModel):
    updated: List[EarningResponse]
    skipped: List[str] = Field(default_factory=list, description="Ids not in a state that allows the action")


class HoldSweepResponse(BaseModel):
    approved: int
    released_links: int = 0
