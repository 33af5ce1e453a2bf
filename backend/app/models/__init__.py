"""Database models for the commission ledger."""
from app.models.user import User
from app.models.earning import Earning
from app.models.payout import Payout, PayoutItem
from app.models.processed_payment import ProcessedPayment
from app.models.ledger_event import LedgerEvent
from app.models.earnings_summary import EarningsSummary

__all__ = [
    "User",
    "Earning",
    "Payout",
    "PayoutItem",
    "ProcessedPayment",
    "LedgerEvent",
    "EarningsSummary",
]
