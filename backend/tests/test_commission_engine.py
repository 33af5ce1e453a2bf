"""Unit tests for the commission engine and hold window."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.exceptions import ConfigurationError
from app.models.earning import EarningSource, HoldPolicy
from app.schemas.ledger import BillingFact
from app.services.commission import compute_earnings, floor_amount, rate_for_plan
from app.services.hold import hold_window

NOW = datetime(2026, 1, 1, 12, 0, 0)
RATES = {"pro": Decimal("0.08"), "starter": Decimal("0.40")}


def make_fact(**overrides) -> BillingFact:
    data = {
        "subscription_ref": "sub_123",
        "external_payment_id": "pi_123",
        "gross_amount": 10000,
        "currency": "usd",
        "plan": "pro",
        "counterparty_user_id": "subscriber",
        "beneficiary_chain": [{"user_id": "referrer-1"}, {"user_id": "referrer-2"}],
    }
    data.update(overrides)
    return BillingFact(**data)


def compute(fact, **kwargs):
    params = {"rates": RATES, "sub_rate": Decimal("0.10"), "max_depth": 2, "hold_period_days": 30}
    params.update(kwargs)
    return compute_earnings(fact, NOW, **params)


def test_two_tier_commission_on_first_payment():
    drafts = compute(make_fact())

    assert [d.commission_amount for d in drafts] == [800, 80]
    tier1, tier2 = drafts
    assert tier1.beneficiary_id == "referrer-1"
    assert tier1.base_amount == 10000
    assert tier1.commission_rate == Decimal("0.08")
    assert tier1.source == EarningSource.PURCHASE
    assert tier2.beneficiary_id == "referrer-2"
    assert tier2.tier_level == 2
    assert tier2.base_amount == 800
    assert tier2.gross_amount == 10000
    assert tier1.currency == "USD"
    assert tier2.description == "Sub-affiliate commission (tier 2) for pro plan"


def test_commission_is_floored():
    drafts = compute(make_fact(gross_amount=999, plan="starter"))

    # floor(999 * 0.40) = 399, floor(399 * 0.10) = 39
    assert [d.commission_amount for d in drafts] == [399, 39]


@pytest.mark.parametrize("amount,rate,expected", [
    (10000, Decimal("0.08"), 800),
    (1, Decimal("0.40"), 0),
    (2999, Decimal("0.333333"), 999),
    (0, Decimal("0.5"), 0),
])
def test_floor_amount(amount, rate, expected):
    assert floor_amount(amount, rate) == expected


def test_zero_commission_tier_ends_the_walk():
    # floor(20 * 0.40) = 8, floor(8 * 0.10) = 0 -> no tier 2 line
    drafts = compute(make_fact(gross_amount=20, plan="starter"))

    assert len(drafts) == 1
    assert drafts[0].commission_amount == 8


def test_depth_is_bounded():
    fact = make_fact(beneficiary_chain=[{"user_id": f"referrer-{i}"} for i in range(1, 6)])

    assert len(compute(fact, max_depth=1)) == 1
    assert len(compute(fact, max_depth=3)) == 3


def test_empty_chain_yields_nothing():
    assert compute(make_fact(beneficiary_chain=[])) == []


def test_gifted_fact_yields_nothing():
    assert compute(make_fact(is_gifted=True)) == []


def test_referral_loop_stops_the_walk():
    fact = make_fact(beneficiary_chain=[
        {"user_id": "referrer-1"},
        {"user_id": "referrer-1"},
    ])
    assert len(compute(fact)) == 1

    self_referral = make_fact(beneficiary_chain=[{"user_id": "subscriber"}])
    assert compute(self_referral) == []


def test_unknown_plan_is_a_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        compute(make_fact(plan="enterprise"))
    assert exc.value.details["plan"] == "enterprise"


def test_rate_out_of_range_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        rate_for_plan("pro", {"pro": Decimal("1.5")})


def test_renewal_lines_are_marked_renewal():
    drafts = compute(make_fact(billing_reason="renewal"))

    assert all(d.source == EarningSource.RENEWAL for d in drafts)
    assert drafts[0].description == "Renewal commission for pro plan"


def test_hold_window_is_stamped_at_creation():
    drafts = compute(make_fact())

    for draft in drafts:
        assert draft.payment_completed_at == NOW
        assert draft.eligible_for_payout_at == NOW + timedelta(days=30)
        assert draft.hold_policy == HoldPolicy.TIMED
        assert draft.hold_period_days == 30


def test_fact_can_override_hold_period():
    drafts = compute(make_fact(hold_period_days=0))

    assert drafts[0].hold_policy == HoldPolicy.WAIVED
    assert drafts[0].eligible_for_payout_at == NOW


def test_hold_window():
    assert hold_window(NOW, 14) == (HoldPolicy.TIMED, NOW + timedelta(days=14))
    assert hold_window(NOW, 0) == (HoldPolicy.WAIVED, NOW)
    with pytest.raises(ValueError):
        hold_window(NOW, -1)
