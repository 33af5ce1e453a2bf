"""Tests for billing fact ingest and its idempotency guard."""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, func

from app.config import settings
from app.exceptions import ConfigurationError
from app.models.earning import Earning, EarningStatus, EarningSource
from app.models.earnings_summary import EarningsSummary
from app.models.ledger_event import LedgerEvent
from app.models.processed_payment import ProcessedPayment
from app.schemas.ledger import BillingFact
from app.services.billing import ingest_billing_fact, RECORDED, DUPLICATE, GIFTED
from app.services.idempotency import record_if_new, remember_event, seen_recently
from conftest import T0


@pytest.fixture(autouse=True)
def commission_settings():
    with patch.object(settings, "COMMISSION_RATES", {"pro": Decimal("0.08")}), \
         patch.object(settings, "SUB_AFFILIATE_RATE", Decimal("0.10")), \
         patch.object(settings, "MAX_REFERRAL_DEPTH", 2), \
         patch.object(settings, "HOLD_PERIOD_DAYS", 30):
        yield


def make_fact(**overrides) -> BillingFact:
    data = {
        "subscription_ref": "sub_123",
        "external_payment_id": "pi_123",
        "gross_amount": 10000,
        "plan": "pro",
        "counterparty_user_id": "subscriber",
        "beneficiary_chain": [{"user_id": "referrer-1"}, {"user_id": "referrer-2"}],
        "event_id": "evt_123",
    }
    data.update(overrides)
    return BillingFact(**data)


async def count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar()


@pytest.mark.asyncio
async def test_record_if_new_is_true_once(test_db):
    assert await record_if_new(test_db, "sub_1", "pi_1") is True
    assert await record_if_new(test_db, "sub_1", "pi_1") is False
    assert await record_if_new(test_db, "sub_1", "pi_2") is True
    assert await record_if_new(test_db, "sub_2", "pi_1") is True
    await test_db.commit()

    assert await count(test_db, ProcessedPayment) == 3


@pytest.mark.asyncio
async def test_event_cache(fake_redis):
    assert await seen_recently("evt_1") is False
    await remember_event("evt_1")
    assert await seen_recently("evt_1") is True
    assert "ledger:event:evt_1" in fake_redis
    assert await seen_recently(None) is False


@pytest.mark.asyncio
async def test_event_cache_outage_means_not_seen():
    with patch("app.services.idempotency.get_redis_client", AsyncMock(side_effect=ConnectionError("down"))):
        assert await seen_recently("evt_1") is False
        # Does not raise
        await remember_event("evt_1")


@pytest.mark.asyncio
async def test_ingest_records_pending_earnings(test_db):
    result = await ingest_billing_fact(test_db, make_fact(), now=T0)

    assert result.status == RECORDED
    tier1, tier2 = result.earnings
    assert (tier1.commission_amount, tier2.commission_amount) == (800, 80)
    assert tier1.status == EarningStatus.PENDING
    assert tier2.parent_earning_id == tier1.uuid
    assert tier1.parent_earning_id is None
    assert tier1.payment_completed_at == T0

    assert await count(test_db, Earning) == 2
    assert await count(test_db, ProcessedPayment) == 1

    events = (await test_db.execute(select(LedgerEvent))).scalars().all()
    assert sorted(e.event_type for e in events) == ["earning.created", "earning.created"]

    snapshot = await test_db.get(EarningsSummary, ("referrer-1", "USD"))
    assert snapshot.pending_count == 1
    assert snapshot.pending_total == 800


@pytest.mark.asyncio
async def test_redelivered_fact_is_a_no_op(test_db, fake_redis):
    first = await ingest_billing_fact(test_db, make_fact(), now=T0)
    # Same payment again with a different provider event id, and with the cache cleared
    fake_redis.clear()
    second = await ingest_billing_fact(test_db, make_fact(event_id="evt_other"), now=T0)

    assert first.status == RECORDED
    assert second.status == DUPLICATE
    assert second.duplicate
    assert second.earnings == []
    assert await count(test_db, Earning) == 2
    assert await count(test_db, LedgerEvent) == 2


@pytest.mark.asyncio
async def test_recently_seen_event_short_circuits(test_db):
    await ingest_billing_fact(test_db, make_fact(), now=T0)

    with patch("app.services.billing.record_if_new") as mock_record:
        result = await ingest_billing_fact(test_db, make_fact(), now=T0)

    assert result.status == DUPLICATE
    mock_record.assert_not_called()


@pytest.mark.asyncio
async def test_gifted_fact_records_nothing(test_db):
    result = await ingest_billing_fact(test_db, make_fact(is_gifted=True), now=T0)

    assert result.status == GIFTED
    assert await count(test_db, Earning) == 0
    # Not marked processed: a later non-gifted delivery is still applied
    assert await count(test_db, ProcessedPayment) == 0


@pytest.mark.asyncio
async def test_configuration_error_leaves_fact_unprocessed(test_db):
    with pytest.raises(ConfigurationError):
        await ingest_billing_fact(test_db, make_fact(plan="enterprise"), now=T0)

    assert await count(test_db, ProcessedPayment) == 0
    assert await count(test_db, Earning) == 0

    # Redelivery after the plan is configured goes through
    with patch.object(settings, "COMMISSION_RATES", {"pro": Decimal("0.08"), "enterprise": Decimal("0.10")}):
        result = await ingest_billing_fact(test_db, make_fact(plan="enterprise", event_id="evt_retry"), now=T0)
    assert result.status == RECORDED
    assert result.earnings[0].commission_amount == 1000


@pytest.mark.asyncio
async def test_renewal_links_to_origin_earning(test_db):
    first = await ingest_billing_fact(test_db, make_fact(), now=T0)
    renewal = await ingest_billing_fact(
        test_db,
        make_fact(external_payment_id="pi_456", billing_reason="renewal", event_id="evt_456"),
        now=T0,
    )

    assert renewal.status == RECORDED
    assert [e.source for e in renewal.earnings] == [EarningSource.RENEWAL, EarningSource.RENEWAL]
    assert renewal.earnings[0].origin_earning_id == first.earnings[0].uuid
    assert renewal.earnings[1].origin_earning_id == first.earnings[1].uuid
    assert await count(test_db, Earning) == 4
