"""Durable idempotency record for inbound billing facts."""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ProcessedPayment(Base):
    """One row per (subscription, provider payment) that has had its ledger effect.

    The unique constraint is the idempotency guard; inserts use
    ON CONFLICT DO NOTHING so a redelivery is a silent no-op.
    """

    __tablename__ = "processed_payments"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    billing_subject_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("billing_subject_ref", "external_payment_id", name="uq_processed_payment_key"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedPayment(subject={self.billing_subject_ref}, payment={self.external_payment_id})>"
