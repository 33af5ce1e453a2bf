"""Tests for the Stripe Connect webhook."""
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from app.models.earning import Earning, EarningStatus
from app.models.payout import Payout, PayoutStatus
from app.models.user import User
from app.services.payouts import apply_dispatch_outcome, request_payout
from conftest import T0, reload

WEBHOOK_URL = "/api/webhooks/stripe-connect"
SIGNED = {"stripe-signature": "t=1,v1=test"}


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1", account: str = None) -> dict:
    event = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if account:
        event["account"] = account
    return event


async def post_event(client, event: dict):
    with patch("stripe.Webhook.construct_event", return_value=event):
        return await client.post(WEBHOOK_URL, content=b"{}", headers=SIGNED)


@pytest.fixture
async def dispatched_payout(test_db, beneficiary, make_earning):
    await make_earning(beneficiary.uuid, 1500)
    payout = await request_payout(test_db, beneficiary, now=T0)
    return await apply_dispatch_outcome(
        test_db, payout.uuid, PayoutStatus.PROCESSING, external_payout_id="po_123", external_transfer_id="tr_123"
    )


def payout_object(payout_id: str = None, status: str = "paid", **extra) -> dict:
    obj = {"id": "po_123", "object": "payout", "status": status, "metadata": {}}
    if payout_id:
        obj["metadata"]["payout_id"] = payout_id
    obj.update(extra)
    return obj


@pytest.mark.asyncio
async def test_missing_signature(client):
    response = await client.post(WEBHOOK_URL, content=b"{}")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_invalid_signature(client):
    error = stripe.error.SignatureVerificationError("bad signature", "t=1,v1=test")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        response = await client.post(WEBHOOK_URL, content=b"{}", headers=SIGNED)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_payload(client):
    with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
        response = await client.post(WEBHOOK_URL, content=b"not json", headers=SIGNED)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_payout_paid(client, test_db, dispatched_payout):
    response = await post_event(client, stripe_event("payout.paid", payout_object(dispatched_payout.uuid)))

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert response.json()["payout_status"] == PayoutStatus.PAID
    payout = await reload(test_db, Payout, dispatched_payout.uuid)
    assert payout.status == PayoutStatus.PAID
    earning = await reload(test_db, Earning, payout.earning_ids[0])
    assert earning.status == EarningStatus.PAID


@pytest.mark.asyncio
async def test_payout_matched_by_external_id(client, test_db, dispatched_payout):
    response = await post_event(client, stripe_event("payout.paid", payout_object()))

    assert response.json()["payout_id"] == dispatched_payout.uuid


@pytest.mark.asyncio
async def test_payout_failed_releases_earnings(client, test_db, dispatched_payout):
    obj = payout_object(
        dispatched_payout.uuid, status="failed",
        failure_code="account_closed", failure_message="The bank account has been closed",
    )
    response = await post_event(client, stripe_event("payout.failed", obj))

    assert response.json()["payout_status"] == PayoutStatus.FAILED
    payout = await reload(test_db, Payout, dispatched_payout.uuid)
    assert payout.failure_code == "account_closed"
    earning = await reload(test_db, Earning, payout.earning_ids[0])
    assert earning.status == EarningStatus.APPROVED
    assert earning.payout_id is None


@pytest.mark.asyncio
async def test_payout_updated_in_transit(client, test_db, dispatched_payout):
    response = await post_event(
        client, stripe_event("payout.updated", payout_object(dispatched_payout.uuid, status="in_transit"))
    )

    assert response.json()["payout_status"] == PayoutStatus.IN_TRANSIT


@pytest.mark.asyncio
async def test_failure_after_paid_needs_reconciliation(client, test_db, dispatched_payout):
    await apply_dispatch_outcome(test_db, dispatched_payout.uuid, PayoutStatus.PAID)

    response = await post_event(
        client, stripe_event("payout.failed", payout_object(dispatched_payout.uuid, status="failed"), event_id="evt_2")
    )

    assert response.status_code == 200
    assert response.json()["status"] == "needs_reconciliation"
    assert (await reload(test_db, Payout, dispatched_payout.uuid)).status == PayoutStatus.PAID


@pytest.mark.asyncio
async def test_transfer_reversed_marks_returned(client, test_db, dispatched_payout):
    obj = {"id": "tr_123", "object": "transfer", "metadata": {}}
    response = await post_event(client, stripe_event("transfer.reversed", obj))

    assert response.json()["payout_status"] == PayoutStatus.RETURNED
    payout = await reload(test_db, Payout, dispatched_payout.uuid)
    assert payout.status == PayoutStatus.RETURNED
    assert (await reload(test_db, Earning, payout.earning_ids[0])).payout_id is None


@pytest.mark.asyncio
async def test_duplicate_event_is_acknowledged_once(client, test_db, dispatched_payout):
    event = stripe_event("payout.paid", payout_object(dispatched_payout.uuid))

    first = await post_event(client, event)
    second = await post_event(client, event)

    assert first.json()["status"] == "processed"
    assert second.json() == {"status": "duplicate"}


@pytest.mark.asyncio
async def test_unknown_payout_is_ignored(client):
    response = await post_event(client, stripe_event("payout.paid", payout_object("missing")))
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(client):
    response = await post_event(client, stripe_event("charge.succeeded", {"id": "ch_1"}))
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_deauthorized_account(client, test_db, beneficiary, make_earning):
    earning = await make_earning(beneficiary.uuid, 1500)
    payout = await request_payout(test_db, beneficiary, now=T0)

    response = await post_event(
        client, stripe_event("account.application.deauthorized", {"id": "ca_1"}, account="acct_referrer1")
    )

    assert response.json() == {"status": "processed", "cancelled_payouts": 1}
    assert (await reload(test_db, User, beneficiary.uuid)).stripe_connect_account_id is None
    assert (await reload(test_db, Payout, payout.uuid)).status == PayoutStatus.CANCELLED
    assert (await reload(test_db, Earning, earning.uuid)).payout_id is None


@pytest.mark.asyncio
async def test_database_error_is_retryable(client, dispatched_payout, fake_redis):
    event = stripe_event("payout.paid", payout_object(dispatched_payout.uuid), event_id="evt_db")
    error = OperationalError("UPDATE payouts", {}, Exception("database is locked"))

    with patch("app.routers.webhooks.apply_dispatch_outcome", side_effect=error):
        response = await post_event(client, event)

    assert response.status_code == 503
    # Not remembered, so Stripe's redelivery is processed
    assert "ledger:event:evt_db" not in fake_redis
    response = await post_event(client, event)
    assert response.json()["status"] == "processed"
