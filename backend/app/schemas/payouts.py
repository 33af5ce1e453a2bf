"""Schemas for payout endpoints."""
from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator


class PayoutCreateRequest(BaseModel):
    """Request a payout of all eligible approved earnings."""

    currency: Optional[str] = Field(None, min_length=3, max_length=3, description="Defaults to the user's payout currency")
    method: Optional[Literal["standard", "instant"]] = Field(None, description="Defaults to the user's payout method")
    min_amount: Optional[int] = Field(None, ge=1, description="Refuse unless at least this much (minor units) is payable")

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class PayoutResponse(BaseModel):
    """Schema for a payout."""

    uuid: str
    beneficiary_id: str
    destination_account_ref: str
    destination_type: str
    method: str
    amount: int
    fee_processor: int
    fee_platform: int
    fee_total: int
    net_amount: int
    currency: str
    status: str
    external_payout_id: Optional[str]
    earning_ids: List[str]
    requested_at: datetime
    processed_at: Optional[datetime]
    in_transit_at: Optional[datetime]
    paid_at: Optional[datetime]
    failed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    returned_at: Optional[datetime]
    failure_code: Optional[str]
    failure_message: Optional[str]
    cancellation_reason: Optional[str]

    class Config:
        from_attributes = True


class PayoutListResponse(BaseModel):
    payouts: List[PayoutResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class PayoutCancelRequest(BaseModel):
    reason: str = Field("Cancelled by user", min_length=1, max_length=1000)


class PayoutStatusStats(BaseModel):
    count: int = 0
    total_amount: int = 0
    total_fees: int = 0


class PayoutStatsResponse(BaseModel):
    stats: Dict[str, PayoutStatusStats]
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class PayoutSettingsUpdate(BaseModel):
    """Change payout preferences; omitted fields stay as they are."""

    method: Optional[Literal["standard", "instant"]] = None
    destination_type: Optional[Literal["bank_account", "debit_card"]] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    minimum_amount: Optional[int] = Field(None, ge=1, description="Personal payout threshold in minor units")

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class PayoutSettingsResponse(BaseModel):
    connected: bool
    stripe_connect_account_id: Optional[str]
    method: str
    destination_type: str
    currency: str
    minimum_amount: Optional[int]
    effective_minimum: int


class ConnectOnboardResponse(BaseModel):
    url: str
    account_id: str
