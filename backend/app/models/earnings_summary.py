"""Per-beneficiary earnings aggregate snapshot."""
from datetime import datetime

from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class EarningsSummary(Base):
    """Counts and totals per status, rebuilt from the ledger after each batch mutation.

    Read by admin dashboards. Beneficiary-facing summaries are computed live.
    """

    __tablename__ = "earnings_summaries"

    beneficiary_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), primary_key=True)

    pending_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputed_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    refreshed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_earnings_summary_approved_total", "approved_total"),
    )

    def __repr__(self) -> str:
        return f"<EarningsSummary(beneficiary_id={self.beneficiary_id}, currency={self.currency})>"
