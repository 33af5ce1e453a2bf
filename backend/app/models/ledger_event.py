"""Outbox of notifications produced by ledger mutations."""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Integer, DateTime, Text, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class LedgerEventStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class LedgerEvent(Base):
    """A notification written in the same transaction as the ledger change it describes.

    Delivered later by the outbox job; delivery state never affects ledger rows.
    """

    __tablename__ = "ledger_events"

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "earning.created", "payout.paid", ...
    beneficiary_id: Mapped[str] = mapped_column(String(36), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LedgerEventStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_ledger_event_status_created", "status", "created_at"),
        Index("idx_ledger_event_beneficiary", "beneficiary_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEvent(uuid={self.uuid}, type={self.event_type}, status={self.status})>"
