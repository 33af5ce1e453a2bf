"""Schemas for the billing collaborator feed: billing facts and reversals."""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from app.schemas.earnings import EarningResponse


class BeneficiaryLink(BaseModel):
    """One step up the referral chain. Index 0 is the direct referrer."""

    user_id: str = Field(..., min_length=1, max_length=36)


class BillingFact(BaseModel):
    """A successful payment reported by the billing/subscription service."""

    subscription_ref: str = Field(..., min_length=1, max_length=255)
    external_payment_id: str = Field(..., min_length=1, max_length=255)
    gross_amount: int = Field(..., ge=0, description="Gross payment in minor units")
    currency: str = Field("USD", min_length=3, max_length=3)
    plan: str = Field(..., min_length=1, max_length=50)
    billing_reason: Literal["first", "renewal"] = "first"
    counterparty_user_id: str = Field(..., min_length=1, max_length=36, description="The paying (referred) subscriber")
    beneficiary_chain: List[BeneficiaryLink] = Field(default_factory=list)
    is_gifted: bool = False
    hold_period_days: Optional[int] = Field(None, ge=0, le=365, description="Override of the default hold period")
    event_id: Optional[str] = Field(None, max_length=255, description="Provider event id, for the short-lived event cache")

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class IngestResponse(BaseModel):
    status: Literal["recorded", "duplicate", "gifted"]
    earnings: List[EarningResponse] = Field(default_factory=list)


class SubscriptionReversalEvent(BaseModel):
    """Upstream cancellation/refund/deauthorization of a subscription."""

    subscription_ref: str = Field(..., min_length=1, max_length=255)
    reason: str = Field(..., min_length=1, max_length=1000)
    kind: Literal["cancelled", "refunded", "deauthorized", "gifted"] = "cancelled"

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()


class ReversalResponse(BaseModel):
    subscription_ref: str
    cancelled: int
    deferred: List[str] = Field(default_factory=list, description="Earning ids in an in-flight payout, cancelled when that payout is released")
    skipped: List[str] = Field(default_factory=list, description="Earning ids that could not be reversed")
