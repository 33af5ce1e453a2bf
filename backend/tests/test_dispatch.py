"""Tests for handing payouts to Stripe Connect."""
from unittest.mock import patch, MagicMock

import pytest
import stripe

from app.exceptions import InvalidTransition, UpstreamDispatchFailure
from app.models.earning import Earning
from app.models.payout import Payout, PayoutStatus, PayoutMethod
from app.services.dispatch import DispatchReceipt, StripeConnectDispatcher, dispatch_payout
from app.services.payouts import request_payout
from conftest import T0, reload


class FakeDispatcher:
    def __init__(self, receipt=None, error=None):
        self.receipt = receipt
        self.error = error
        self.sent = []

    def send(self, payout):
        self.sent.append(payout.uuid)
        if self.error:
            raise self.error
        return self.receipt


@pytest.fixture
async def pending_payout(test_db, beneficiary, make_earning):
    await make_earning(beneficiary.uuid, 1500)
    return await request_payout(test_db, beneficiary, now=T0)


@pytest.mark.asyncio
async def test_accepted_dispatch_moves_to_processing(test_db, pending_payout):
    dispatcher = FakeDispatcher(receipt=DispatchReceipt(external_payout_id="po_1", external_transfer_id="tr_1"))

    payout = await dispatch_payout(test_db, pending_payout.uuid, "user:admin", dispatcher)

    assert payout.status == PayoutStatus.PROCESSING
    assert payout.external_payout_id == "po_1"
    assert payout.external_transfer_id == "tr_1"
    assert payout.processed_by == "user:admin"
    assert payout.processed_at is not None


@pytest.mark.asyncio
async def test_rejected_dispatch_fails_and_releases(test_db, pending_payout):
    error = stripe.error.InvalidRequestError("No such destination", param="destination", code="resource_missing")

    payout = await dispatch_payout(test_db, pending_payout.uuid, "user:admin", FakeDispatcher(error=error))

    assert payout.status == PayoutStatus.FAILED
    assert payout.failure_code == "resource_missing"
    for earning_id in payout.earning_ids:
        assert (await reload(test_db, Earning, earning_id)).payout_id is None


@pytest.mark.asyncio
async def test_transient_error_leaves_payout_pending(test_db, pending_payout):
    error = stripe.error.APIConnectionError("Network down")

    with pytest.raises(UpstreamDispatchFailure):
        await dispatch_payout(test_db, pending_payout.uuid, "user:admin", FakeDispatcher(error=error))

    payout = await reload(test_db, Payout, pending_payout.uuid)
    assert payout.status == PayoutStatus.PENDING
    assert (await reload(test_db, Earning, payout.earning_ids[0])).payout_id == payout.uuid


@pytest.mark.asyncio
async def test_only_pending_payouts_are_dispatched(test_db, pending_payout):
    dispatcher = FakeDispatcher(receipt=DispatchReceipt(external_payout_id="po_1"))
    await dispatch_payout(test_db, pending_payout.uuid, "user:admin", dispatcher)

    with pytest.raises(InvalidTransition):
        await dispatch_payout(test_db, pending_payout.uuid, "user:admin", dispatcher)
    assert len(dispatcher.sent) == 1


def test_stripe_dispatcher_uses_idempotency_keys():
    payout = MagicMock(
        uuid="p-1", beneficiary_id="u-1", net_amount=1450, currency="USD",
        destination_account_ref="acct_1", method=PayoutMethod.STANDARD,
    )

    with patch("stripe.Transfer.create") as mock_transfer, \
         patch("stripe.Payout.create") as mock_payout:
        mock_transfer.return_value = MagicMock(id="tr_1")
        mock_payout.return_value = MagicMock(id="po_1")

        receipt = StripeConnectDispatcher(api_key="sk_test").send(payout)

    assert receipt == DispatchReceipt(external_payout_id="po_1", external_transfer_id="tr_1")
    transfer_kwargs = mock_transfer.call_args.kwargs
    assert transfer_kwargs["amount"] == 1450
    assert transfer_kwargs["currency"] == "usd"
    assert transfer_kwargs["destination"] == "acct_1"
    assert transfer_kwargs["idempotency_key"] == "transfer-p-1"
    payout_kwargs = mock_payout.call_args.kwargs
    assert payout_kwargs["stripe_account"] == "acct_1"
    assert payout_kwargs["idempotency_key"] == "payout-p-1"
    assert payout_kwargs["metadata"] == {"payout_id": "p-1", "beneficiary_id": "u-1"}
