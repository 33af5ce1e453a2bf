"""Earning model: one commission line in the ledger."""
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import String, Integer, Numeric, Boolean, DateTime, Text, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class EarningStatus:
    """Lifecycle states. ``paid``, ``disputed`` and ``cancelled`` are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    ALL = (PENDING, APPROVED, PAID, DISPUTED, CANCELLED)
    # States a line may be disputed or cancelled from
    REVERSIBLE = (PENDING, APPROVED)


class EarningSource:
    PURCHASE = "purchase"
    RENEWAL = "renewal"
    REFERRAL_BONUS = "referral_bonus"

    ALL = (PURCHASE, RENEWAL, REFERRAL_BONUS)


class HoldPolicy:
    """How ``eligible_for_payout_at`` was derived.

    ``timed``: payment_completed_at + hold_period_days.
    ``waived``: no hold; eligible from payment completion.
    """

    TIMED = "timed"
    WAIVED = "waived"


class Earning(Base):
    """A single commission line tied to one billing fact and one beneficiary.

    All amounts are integer minor units. Rows are never deleted; reversal is
    a status. ``eligible_for_payout_at`` is written once, at creation.
    """

    __tablename__ = "earnings"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # Parties
    beneficiary_id: Mapped[str] = mapped_column(String(36), nullable=False)
    counterparty_user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Provenance
    billing_subject_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # "purchase", "renewal", "referral_bonus"
    tier_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    plan: Mapped[str] = mapped_column(String(50), nullable=False)
    origin_earning_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("earnings.uuid"), nullable=True)
    parent_earning_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("earnings.uuid"), nullable=True)

    # Amounts
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EarningStatus.PENDING)
    is_gifted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hold_policy: Mapped[str] = mapped_column(String(10), nullable=False, default=HoldPolicy.TIMED)
    hold_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    payment_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    eligible_for_payout_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Payout linkage
    payout_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("payouts.uuid"), nullable=True)

    # Audit trail
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    disputed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Reversal requested while the line was in an in-flight payout. Applied
    # when that payout is released; a paid payout settles the line anyway.
    reversal_requested_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reversal_requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("commission_amount >= 0", name="ck_earning_commission_non_negative"),
        CheckConstraint("tier_level >= 1", name="ck_earning_tier_level"),
        Index("idx_earning_beneficiary_status", "beneficiary_id", "status"),
        Index("idx_earning_billing_subject", "billing_subject_ref"),
        Index("idx_earning_status_eligible", "status", "eligible_for_payout_at"),
        Index("idx_earning_payout_id", "payout_id"),
        Index("idx_earning_counterparty", "counterparty_user_id"),
    )

    @property
    def is_payable(self) -> bool:
        return (
            self.status == EarningStatus.APPROVED
            and self.payout_id is None
            and not self.is_gifted
            and self.reversal_requested_at is None
        )

    def __repr__(self) -> str:
        return (
            f"<Earning(uuid={self.uuid}, beneficiary_id={self.beneficiary_id}, "
            f"tier={self.tier_level}, amount={self.commission_amount}, status={self.status})>"
        )
