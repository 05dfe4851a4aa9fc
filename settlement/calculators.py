"""Processing fee, tier revenue split and chargeback reserve calculators."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union

from .errors import InvalidAmount
from .money import Number, round_money, to_decimal
from .tiers import RevenueSplitPercent, Tier, TierCatalog

PROCESSOR_FEE_RATE = Decimal("0.029")
PROCESSOR_FIXED_FEE = Decimal("0.30")
RESERVE_RATE = Decimal("0.05")
RESERVE_HOLD_DAYS = 90


@dataclass(frozen=True)
class RevenueSplit:
    gross_amount: Decimal
    processor_fee: Decimal
    net_amount: Decimal
    creator_share: Decimal
    platform_share: Decimal


@dataclass(frozen=True)
class ReserveBreakdown:
    total_creator_share: Decimal
    reserve_amount: Decimal
    immediate_payout: Decimal
    reserve_release_date: datetime


def _non_negative(value: Number, label: str) -> Decimal:
    try:
        amount = to_decimal(value)
    except (ArithmeticError, ValueError) as exc:
        raise InvalidAmount(f"{label} must be a valid number") from exc
    if not amount.is_finite():
        raise InvalidAmount(f"{label} must be a valid number")
    if amount < 0:
        raise InvalidAmount(f"{label} cannot be negative, got {amount}")
    return amount


def _fee(gross: Decimal) -> Decimal:
    return gross * PROCESSOR_FEE_RATE + PROCESSOR_FIXED_FEE


def compute_fee(gross_amount: Number) -> Decimal:
    """Processor fee: 2.9% + $0.30, rounded to cents. A zero amount still pays $0.30."""
    gross = _non_negative(gross_amount, "Gross amount")
    return round_money(_fee(gross))


def split(gross_amount: Number,
          revenue_split: Union[RevenueSplitPercent, Tier]) -> RevenueSplit:
    """Split a gross amount into fee, net, creator and platform shares."""
    if isinstance(revenue_split, Tier):
        revenue_split = revenue_split.revenue_split
    gross = _non_negative(gross_amount, "Gross amount")
    revenue_split.validate()

    fee = round_money(_fee(gross))
    net = gross - fee
    creator = net * revenue_split.creator / 100
    platform = net * revenue_split.platform / 100

    return RevenueSplit(
        gross_amount=round_money(gross),
        processor_fee=fee,
        net_amount=round_money(net),
        creator_share=round_money(creator),
        platform_share=round_money(platform),
    )


def split_all_tiers(gross_amount: Number, catalog: TierCatalog) -> dict[str, RevenueSplit]:
    """Side-by-side splits for every tier, used for upgrade comparisons."""
    _non_negative(gross_amount, "Gross amount")
    return {tier.name: split(gross_amount, tier) for tier in catalog}


def reserve(creator_share: Number, now: Optional[datetime] = None) -> ReserveBreakdown:
    """Hold 5% of a creator share for 90 days against chargebacks."""
    share = _non_negative(creator_share, "Creator share")
    now = now or datetime.now(timezone.utc)
    held = share * RESERVE_RATE

    return ReserveBreakdown(
        total_creator_share=round_money(share),
        reserve_amount=round_money(held),
        immediate_payout=round_money(share - held),
        reserve_release_date=now + timedelta(days=RESERVE_HOLD_DAYS),
    )
