"""Commission engine: turns one billing fact into draft ledger lines.

Tier 1 (the direct referrer) earns ``floor(gross * rate(plan))``. Every
further tier earns ``floor(previous tier's commission * SUB_AFFILIATE_RATE)``,
i.e. a share of the commission and not of the gross payment. The walk up the
beneficiary chain is bounded by ``MAX_REFERRAL_DEPTH``.

Nothing here touches the database.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import List, Mapping, Optional

from app.config import settings
from app.exceptions import ConfigurationError
from app.models.earning import EarningSource
from app.schemas.ledger import BillingFact
from app.services.hold import hold_window

logger = logging.getLogger(__name__)


@dataclass
class EarningDraft:
    """A ledger line that has been computed but not yet persisted."""

    beneficiary_id: str
    counterparty_user_id: str
    billing_subject_ref: str
    external_payment_id: str
    source: str
    tier_level: int
    plan: str
    gross_amount: int
    base_amount: int
    commission_rate: Decimal
    commission_amount: int
    currency: str
    hold_policy: str
    hold_period_days: int
    payment_completed_at: datetime
    eligible_for_payout_at: datetime
    description: str


def floor_amount(amount: int, rate: Decimal) -> int:
    """``floor(amount * rate)`` in exact decimal arithmetic."""
    return int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_FLOOR))


def rate_for_plan(plan: str, rates: Mapping[str, Decimal]) -> Decimal:
    """Look up the tier-1 rate for a plan. Unknown plans are a configuration error."""
    rate = rates.get(plan)
    if rate is None:
        raise ConfigurationError(
            f"No commission rate configured for plan '{plan}'",
            details={"plan": plan},
        )
    rate = Decimal(str(rate))
    if rate < 0 or rate > 1:
        raise ConfigurationError(
            f"Commission rate for plan '{plan}' must be between 0 and 1, got {rate}",
            details={"plan": plan},
        )
    return rate


def level_rate(level: int, plan: str, rates: Mapping[str, Decimal], sub_rate: Decimal) -> Decimal:
    """Rate applied at a given tier. Tier 1 applies to gross, deeper tiers to the tier above."""
    if level == 1:
        return rate_for_plan(plan, rates)
    return Decimal(str(sub_rate))


def _describe(source: str, level: int, plan: str) -> str:
    if level > 1:
        return f"Sub-affiliate commission (tier {level}) for {plan} plan"
    if source == EarningSource.RENEWAL:
        return f"Renewal commission for {plan} plan"
    return f"Subscription commission for {plan} plan"


def compute_earnings(
    fact: BillingFact,
    now: Optional[datetime] = None,
    *,
    rates: Optional[Mapping[str, Decimal]] = None,
    sub_rate: Optional[Decimal] = None,
    max_depth: Optional[int] = None,
    hold_period_days: Optional[int] = None,
) -> List[EarningDraft]:
    """
    Compute the draft earnings for a billing fact.

    Args:
        fact: The billing fact. A gifted fact yields no drafts, whatever else it says.
        now: Payment completion time stamped on every draft (defaults to utcnow).
        rates: Plan -> tier-1 rate table (defaults to settings.COMMISSION_RATES).
        sub_rate: Share of the tier above paid to each deeper tier.
        max_depth: Deepest tier to pay.
        hold_period_days: Default hold when the fact does not override it.

    Returns:
        One draft per paid tier, tier 1 first. A tier whose commission floors
        to zero ends the walk.

    Raises:
        ConfigurationError: The plan has no configured rate.
    """
    if fact.is_gifted:
        return []

    now = now or datetime.utcnow()
    rates = settings.COMMISSION_RATES if rates is None else rates
    sub_rate = settings.SUB_AFFILIATE_RATE if sub_rate is None else sub_rate
    max_depth = settings.MAX_REFERRAL_DEPTH if max_depth is None else max_depth
    if fact.hold_period_days is not None:
        hold_days = fact.hold_period_days
    elif hold_period_days is not None:
        hold_days = hold_period_days
    else:
        hold_days = settings.HOLD_PERIOD_DAYS

    source = EarningSource.RENEWAL if fact.billing_reason == "renewal" else EarningSource.PURCHASE
    policy, eligible_at = hold_window(now, hold_days)

    drafts: List[EarningDraft] = []
    seen = {fact.counterparty_user_id}
    base = fact.gross_amount

    for level, link in enumerate(fact.beneficiary_chain[:max_depth], start=1):
        if link.user_id in seen:
            logger.warning(
                f"Referral chain for {fact.subscription_ref} loops back to {link.user_id} at tier {level}; stopping"
            )
            break
        seen.add(link.user_id)

        rate = level_rate(level, fact.plan, rates, sub_rate)
        amount = floor_amount(base, rate)
        if amount <= 0:
            break

        drafts.append(EarningDraft(
            beneficiary_id=link.user_id,
            counterparty_user_id=fact.counterparty_user_id,
            billing_subject_ref=fact.subscription_ref,
            external_payment_id=fact.external_payment_id,
            source=source,
            tier_level=level,
            plan=fact.plan,
            gross_amount=fact.gross_amount,
            base_amount=base,
            commission_rate=rate,
            commission_amount=amount,
            currency=fact.currency,
            hold_policy=policy,
            hold_period_days=hold_days,
            payment_completed_at=now,
            eligible_for_payout_at=eligible_at,
            description=_describe(source, level, fact.plan),
        ))
        base = amount

    return drafts
