"""Payout and PayoutItem models."""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    IN_TRANSIT = "in_transit"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    ALL = (PENDING, PROCESSING, IN_TRANSIT, PAID, FAILED, CANCELLED, RETURNED)
    # Payout still owns its earnings and money may move
    OPEN = (PENDING, PROCESSING, IN_TRANSIT)
    # Terminal outcomes that hand the earnings back to the eligible pool
    RELEASING = (FAILED, CANCELLED, RETURNED)
    TERMINAL = (PAID, FAILED, CANCELLED, RETURNED)


class PayoutMethod:
    STANDARD = "standard"
    INSTANT = "instant"


class Payout(Base):
    """A batch of approved earnings submitted for payment to one beneficiary.

    ``amount`` always equals the sum of the items' amounts and
    ``net_amount = amount - fee_total``. Amounts in minor units.
    """

    __tablename__ = "payouts"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    beneficiary_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.uuid"), nullable=False)
    destination_account_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    destination_type: Mapped[str] = mapped_column(String(20), nullable=False, default="bank_account")
    method: Mapped[str] = mapped_column(String(20), nullable=False, default=PayoutMethod.STANDARD)

    # Amounts
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_processor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_platform: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PayoutStatus.PENDING)

    # Payout rail references
    external_payout_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    external_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    in_transit_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Failure / cancellation details
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    items: Mapped[list["PayoutItem"]] = relationship(
        "PayoutItem", back_populates="payout", lazy="selectin", order_by="PayoutItem.created_at"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payout_amount_non_negative"),
        Index("idx_payout_beneficiary_status", "beneficiary_id", "status"),
        Index("idx_payout_status_requested", "status", "requested_at"),
    )

    @property
    def earning_ids(self) -> list[str]:
        return [item.earning_id for item in self.items]

    def __repr__(self) -> str:
        return f"<Payout(uuid={self.uuid}, beneficiary_id={self.beneficiary_id}, amount={self.amount}, status={self.status})>"


class PayoutItem(Base):
    """One earning included in a payout, kept after the earning is released."""

    __tablename__ = "payout_items"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    payout_id: Mapped[str] = mapped_column(String(36), ForeignKey("payouts.uuid", ondelete="CASCADE"), nullable=False)
    earning_id: Mapped[str] = mapped_column(String(36), ForeignKey("earnings.uuid"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    payout: Mapped["Payout"] = relationship("Payout", back_populates="items")

    __table_args__ = (
        UniqueConstraint("payout_id", "earning_id", name="uq_payout_item_earning"),
        Index("idx_payout_items_payout_id", "payout_id"),
        Index("idx_payout_items_earning_id", "earning_id"),
    )
