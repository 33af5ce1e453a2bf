"""User model: beneficiaries and admins known to the ledger."""
from datetime import datetime
from uuid import uuid4
from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class User(Base):
    """A platform user as seen by the ledger.

    Accounts are owned by the auth service; this table only carries what the
    ledger needs: role for admin actions, payout destination, contact email.
    """

    __tablename__ = "users"

    # Primary key
    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # User info
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    # Account info
    status: Mapped[str] = mapped_column(String(50), default="active")
    user_role: Mapped[str] = mapped_column(String(50), default="user")

    # Payout destination
    stripe_connect_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_method: Mapped[str] = mapped_column(String(20), default="standard")  # "standard", "instant"
    payout_destination_type: Mapped[str] = mapped_column(String(20), default="bank_account")  # "bank_account", "debit_card"
    payout_currency: Mapped[str] = mapped_column(String(3), default="USD")
    # Optional personal threshold; only ever raises the currency minimum
    minimum_payout_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Indexes
    __table_args__ = (
        Index("idx_user_status", "status"),
        Index("idx_user_connect_account", "stripe_connect_account_id"),
    )

    def __repr__(self) -> str:
        return f"<User(uuid={self.uuid}, email={self.email}, role={self.user_role})>"
