"""Pool (collection) revenue distribution across member businesses."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from .calculators import RevenueSplit, reserve, split
from .errors import DistributionMismatch, InvalidAmount, InvalidPoolContribution
from .money import Number, TOLERANCE, ZERO, round_money, to_decimal
from .tiers import RevenueSplitPercent, Tier


@dataclass(frozen=True)
class PoolMember:
    business_id: str
    contribution_percent: Decimal

    def __post_init__(self):
        if not self.business_id:
            raise InvalidPoolContribution("Pool member is missing business_id")
        try:
            percent = to_decimal(self.contribution_percent)
        except (ArithmeticError, ValueError) as exc:
            raise InvalidPoolContribution(
                f"Member {self.business_id} contribution must be a number"
            ) from exc
        if not percent.is_finite() or percent < 0 or percent > 100:
            raise InvalidPoolContribution(
                f"Member {self.business_id} contribution must be between 0 and 100, got {percent}"
            )
        object.__setattr__(self, "business_id", str(self.business_id))
        object.__setattr__(self, "contribution_percent", percent)


@dataclass(frozen=True)
class PoolMembership:
    """A validated set of pool members whose contributions total 100%."""
    members: tuple[PoolMember, ...]

    def __post_init__(self):
        members = tuple(_coerce_member(m) for m in self.members)
        if not members:
            raise InvalidPoolContribution("Pool must have at least one member")
        total = sum((m.contribution_percent for m in members), ZERO)
        if abs(total - 100) > TOLERANCE:
            raise InvalidPoolContribution(
                f"Member contributions must sum to 100%. Current sum: {total}%"
            )
        object.__setattr__(self, "members", members)

    @classmethod
    def of(cls, members: Iterable[Union[PoolMember, Mapping[str, Any]]]) -> "PoolMembership":
        return cls(tuple(members))

    def __iter__(self):
        return iter(self.members)

    def __len__(self):
        return len(self.members)


def _coerce_member(member: Union[PoolMember, Mapping[str, Any]]) -> PoolMember:
    if isinstance(member, PoolMember):
        return member
    business_id = member.get("business_id", member.get("businessId"))
    percent = member.get("contribution_percent", member.get("contributionPercent"))
    if percent is None:
        raise InvalidPoolContribution(f"Member {business_id} has no contribution percentage")
    return PoolMember(business_id=business_id, contribution_percent=percent)


@dataclass(frozen=True)
class MemberDistribution:
    business_id: str
    contribution_percent: Decimal
    member_share: Decimal
    reserve_amount: Decimal
    immediate_payout: Decimal
    reserve_release_date: datetime

    def as_metadata(self) -> dict[str, Any]:
        return {
            "businessId": self.business_id,
            "contributionPercent": str(self.contribution_percent),
            "memberShare": str(self.member_share),
            "reserveAmount": str(self.reserve_amount),
            "immediatePayout": str(self.immediate_payout),
        }


@dataclass(frozen=True)
class PoolDistribution:
    base_split: RevenueSplit
    member_distributions: tuple[MemberDistribution, ...]
    total_distributed: Decimal


def member_share(total_pool_share: Number, contribution_percent: Number) -> Decimal:
    """A single member's cut of the pool creator share, rounded to cents."""
    total = to_decimal(total_pool_share)
    if total < 0:
        raise InvalidAmount(f"Total pool share cannot be negative, got {total}")
    member = PoolMember(business_id="-", contribution_percent=contribution_percent)
    return round_money(total * member.contribution_percent / 100)


def distribute(gross_amount: Number,
               tier: Union[Tier, RevenueSplitPercent],
               members: Union[PoolMembership, Sequence[Union[PoolMember, Mapping[str, Any]]]],
               now: Optional[datetime] = None) -> PoolDistribution:
    if not isinstance(members, PoolMembership):
        members = PoolMembership.of(members)

    base = split(gross_amount, tier)
    # One release date for every member of the distribution.
    now = now or datetime.now(timezone.utc)

    distributions = []
    for member in members:
        share = member_share(base.creator_share, member.contribution_percent)
        held = reserve(share, now=now)
        distributions.append(MemberDistribution(
            business_id=member.business_id,
            contribution_percent=member.contribution_percent,
            member_share=share,
            reserve_amount=held.reserve_amount,
            immediate_payout=held.immediate_payout,
            reserve_release_date=held.reserve_release_date,
        ))

    total = sum((d.member_share for d in distributions), ZERO)
    if abs(total - base.creator_share) > TOLERANCE:
        raise DistributionMismatch(
            f"Distribution error: total distributed ({total}) != creator share ({base.creator_share})"
        )

    return PoolDistribution(
        base_split=base,
        member_distributions=tuple(distributions),
        total_distributed=round_money(total),
    )


@dataclass
class PoolSummary:
    collection_id: str
    transaction_count: int = 0
    total_gross_amount: Decimal = ZERO
    total_processor_fee: Decimal = ZERO
    total_net_amount: Decimal = ZERO
    total_creator_share: Decimal = ZERO
    total_platform_share: Decimal = ZERO
    transaction_ids: list = field(default_factory=list)


def group_by_pool(transactions: Iterable[Any]) -> dict[str, PoolSummary]:
    """Per-pool totals for transactions tagged with a ``collectionId``. Read-only."""
    pools: dict[str, PoolSummary] = {}
    for txn in transactions:
        collection_id = (txn.metadata or {}).get("collectionId")
        if not collection_id:
            continue
        collection_id = str(collection_id)
        pool = pools.setdefault(collection_id, PoolSummary(collection_id=collection_id))
        pool.transaction_count += 1
        pool.total_gross_amount += txn.gross_amount
        pool.total_processor_fee += txn.processor_fee
        pool.total_net_amount += txn.net_amount
        pool.total_creator_share += txn.creator_share
        pool.total_platform_share += txn.platform_share
        pool.transaction_ids.append(txn.id)

    for pool in pools.values():
        pool.total_gross_amount = round_money(pool.total_gross_amount)
        pool.total_processor_fee = round_money(pool.total_processor_fee)
        pool.total_net_amount = round_money(pool.total_net_amount)
        pool.total_creator_share = round_money(pool.total_creator_share)
        pool.total_platform_share = round_money(pool.total_platform_share)
    return pools
