"""Tests for ledger event delivery."""
from unittest.mock import patch, MagicMock

import pytest

from app.config import settings
from app.models.ledger_event import LedgerEvent, LedgerEventStatus
from app.services import outbox
from app.services.email_service import EmailService, format_amount
from conftest import reload


async def queue(db, beneficiary_id, event_type=outbox.EARNING_CREATED, payload=None):
    event = outbox.enqueue_event(db, event_type, beneficiary_id, payload or {
        "earning_id": "e-1", "amount": 800, "currency": "USD", "plan": "pro", "tier_level": 1,
        "eligible_for_payout_at": None,
    })
    await db.commit()
    return event


@pytest.mark.asyncio
async def test_delivers_pending_events(test_db, beneficiary):
    event = await queue(test_db, beneficiary.uuid)

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch.object(EmailService, "send_ledger_event_email", return_value=True) as mock_send:
        counts = await outbox.deliver_pending_events(test_db)

    assert counts[LedgerEventStatus.SENT] == 1
    mock_send.assert_called_once()
    event = await reload(test_db, LedgerEvent, event.uuid)
    assert event.status == LedgerEventStatus.SENT
    assert event.sent_at is not None

    # Nothing left to send
    with patch.object(settings, "RESEND_API_KEY", "re_test"):
        counts = await outbox.deliver_pending_events(test_db)
    assert sum(counts.values()) == 0


@pytest.mark.asyncio
async def test_failed_send_is_retried_then_given_up(test_db, beneficiary):
    event = await queue(test_db, beneficiary.uuid)

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch.object(settings, "OUTBOX_MAX_ATTEMPTS", 2), \
         patch.object(EmailService, "send_ledger_event_email", return_value=False):
        first = await outbox.deliver_pending_events(test_db)
        second = await outbox.deliver_pending_events(test_db)

    assert first[LedgerEventStatus.PENDING] == 1
    assert second[LedgerEventStatus.FAILED] == 1
    event = await reload(test_db, LedgerEvent, event.uuid)
    assert event.status == LedgerEventStatus.FAILED
    assert event.attempts == 2


@pytest.mark.asyncio
async def test_unknown_beneficiary_is_skipped(test_db):
    event = await queue(test_db, "no-such-user")

    with patch.object(settings, "RESEND_API_KEY", "re_test"):
        counts = await outbox.deliver_pending_events(test_db)

    assert counts[LedgerEventStatus.SKIPPED] == 1
    assert (await reload(test_db, LedgerEvent, event.uuid)).status == LedgerEventStatus.SKIPPED


@pytest.mark.asyncio
async def test_email_not_configured_is_skipped(test_db, beneficiary):
    await queue(test_db, beneficiary.uuid)

    with patch.object(settings, "RESEND_API_KEY", ""):
        counts = await outbox.deliver_pending_events(test_db)

    assert counts[LedgerEventStatus.SKIPPED] == 1


@pytest.mark.parametrize("event_type,payload,subject", [
    ("earning.created", {"amount": 80050, "currency": "USD", "plan": "pro", "tier_level": 1}, "New commission: 800.50 USD"),
    ("earnings.approved", {"count": 2, "total": 1000, "currency": "EUR"}, "10.00 EUR ready for payout"),
    ("earning.disputed", {"amount": 500, "currency": "USD", "reason": "fraud"}, "Commission placed under dispute: 5.00 USD"),
    ("payout.paid", {"payout_id": "abcdef123456", "amount": 1500, "net_amount": 1450, "currency": "USD"}, "Payout Sent: 14.50 USD"),
])
def test_ledger_event_email_templates(event_type, payload, subject):
    user = MagicMock(name="user")
    user.name = "Referrer"
    user.email = "referrer@example.com"

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch("app.services.email_service.resend.Emails.send") as mock_send:
        assert EmailService.send_ledger_event_email(user, event_type, payload) is True

    sent = mock_send.call_args[0][0]
    assert sent["subject"] == subject
    assert sent["to"] == "referrer@example.com"


def test_unknown_event_type_has_no_template():
    assert EmailService.send_ledger_event_email(MagicMock(), "something.else", {}) is False


@pytest.mark.parametrize("amount,currency,expected", [
    (123456, "USD", "1,234.56 USD"),
    (5, "EUR", "0.05 EUR"),
    (-250, "GBP", "-2.50 GBP"),
    (1500, "JPY", "1,500 JPY"),
    (12345, "KWD", "12.345 KWD"),
    (90071992547409993, "USD", "900,719,925,474,099.93 USD"),
])
def test_format_amount(amount, currency, expected):
    assert format_amount(amount, currency) == expected
