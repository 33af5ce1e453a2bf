"""Domain errors raised by the ledger, payout and ingest services.

Routers do not translate these one by one; ``main.py`` registers a single
handler for :class:`LedgerError` that renders ``status_code``, ``code`` and
``details`` into the response body.
"""
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for commission ledger errors."""

    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class DuplicateEffect(LedgerError):
    """A billing fact was already applied. Callers treat this as a no-op."""

    status_code = 200
    code = "duplicate_effect"


class InvalidTransition(LedgerError):
    """A state machine guard rejected the requested transition."""

    status_code = 409
    code = "invalid_transition"


class BelowMinimumPayout(LedgerError):
    status_code = 400
    code = "below_minimum_payout"


class NoEligibleFunds(LedgerError):
    status_code = 400
    code = "no_eligible_funds"


class PayoutDestinationMissing(LedgerError):
    status_code = 400
    code = "payout_destination_missing"


class UpstreamDispatchFailure(LedgerError):
    """Transient failure talking to the payout rail; safe to retry."""

    status_code = 503
    code = "upstream_dispatch_failure"


class ConfigurationError(LedgerError):
    """Missing or invalid commission configuration. Never defaulted."""

    status_code = 500
    code = "configuration_error"


class EarningNotFound(LedgerError):
    status_code = 404
    code = "not_found"


class PayoutNotFound(LedgerError):
    status_code = 404
    code = "not_found"


class InvalidPayoutSettings(LedgerError):
    status_code = 400
    code = "invalid_payout_settings"
