"""Tests for the hold-period sweep."""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.config import settings
from app.models.earning import Earning, EarningStatus
from app.models.earnings_summary import EarningsSummary
from app.models.ledger_event import LedgerEvent
from app.schemas.ledger import BillingFact
from app.services import ledger
from app.services.billing import ingest_billing_fact
from app.services.hold import mature_earnings
from app.services.scheduler import acquire_lock, release_lock
from conftest import T0, reload


async def ingest(db, **overrides):
    data = {
        "subscription_ref": "sub_hold",
        "external_payment_id": "pi_hold",
        "gross_amount": 10000,
        "plan": "pro",
        "counterparty_user_id": "subscriber",
        "beneficiary_chain": [{"user_id": "referrer-1"}, {"user_id": "referrer-2"}],
    }
    data.update(overrides)
    with patch.object(settings, "COMMISSION_RATES", {"pro": Decimal("0.08")}), \
         patch.object(settings, "HOLD_PERIOD_DAYS", 30):
        result = await ingest_billing_fact(db, BillingFact(**data), now=T0)
    return result.earnings


@pytest.mark.asyncio
async def test_sweep_respects_hold_window(test_db):
    earnings = await ingest(test_db)

    assert await mature_earnings(test_db, T0 + timedelta(days=29)) == 0
    for earning in earnings:
        assert (await reload(test_db, Earning, earning.uuid)).status == EarningStatus.PENDING

    at = T0 + timedelta(days=30)
    assert await mature_earnings(test_db, at) == 2
    for earning in earnings:
        earning = await reload(test_db, Earning, earning.uuid)
        assert earning.status == EarningStatus.APPROVED
        assert earning.approved_at == at
        assert earning.approved_by == ledger.SYSTEM_HOLD_SWEEP


@pytest.mark.asyncio
async def test_sweep_is_idempotent(test_db):
    await ingest(test_db)
    at = T0 + timedelta(days=31)

    assert await mature_earnings(test_db, at) == 2
    assert await mature_earnings(test_db, at) == 0


@pytest.mark.asyncio
async def test_waived_hold_is_approved_on_next_sweep(test_db):
    await ingest(test_db, hold_period_days=0)

    assert await mature_earnings(test_db, T0) == 2


@pytest.mark.asyncio
async def test_sweep_ignores_gifted_and_reversed_lines(test_db, beneficiary, make_earning):
    gifted = await make_earning(beneficiary.uuid, 100, EarningStatus.PENDING, is_gifted=True)
    cancelled = await make_earning(beneficiary.uuid, 200, EarningStatus.CANCELLED)
    due = await make_earning(beneficiary.uuid, 300, EarningStatus.PENDING)

    assert await mature_earnings(test_db, T0) == 1

    assert (await reload(test_db, Earning, gifted.uuid)).status == EarningStatus.PENDING
    assert (await reload(test_db, Earning, cancelled.uuid)).status == EarningStatus.CANCELLED
    assert (await reload(test_db, Earning, due.uuid)).status == EarningStatus.APPROVED


@pytest.mark.asyncio
async def test_sweep_queues_one_event_per_beneficiary(test_db, beneficiary, upline, make_earning):
    await make_earning(beneficiary.uuid, 100, EarningStatus.PENDING)
    await make_earning(beneficiary.uuid, 250, EarningStatus.PENDING)
    await make_earning(upline.uuid, 40, EarningStatus.PENDING)

    await mature_earnings(test_db, T0)

    result = await test_db.execute(select(LedgerEvent).where(LedgerEvent.event_type == "earnings.approved"))
    payloads = {e.beneficiary_id: e.payload for e in result.scalars().all()}
    assert payloads == {
        beneficiary.uuid: {"count": 2, "total": 350, "currency": "USD"},
        upline.uuid: {"count": 1, "total": 40, "currency": "USD"},
    }

    snapshot = await reload(test_db, EarningsSummary, (beneficiary.uuid, "USD"))
    assert snapshot.approved_count == 2
    assert snapshot.approved_total == 350
    assert snapshot.pending_count == 0


@pytest.mark.asyncio
async def test_job_lock_is_exclusive(fake_redis):
    assert await acquire_lock("mature_held_earnings") is True
    assert await acquire_lock("mature_held_earnings") is False
    await release_lock("mature_held_earnings")
    assert await acquire_lock("mature_held_earnings") is True
