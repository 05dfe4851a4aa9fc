from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from .errors import InvalidTierSplit
from .money import TOLERANCE, to_decimal


class TierName(str, Enum):
    FREE = "free"
    CONTRIBUTOR = "contributor"
    PARTNER = "partner"
    EQUITY_PARTNER = "equityPartner"


@dataclass(frozen=True)
class RevenueSplitPercent:
    creator: Decimal
    platform: Decimal

    def __post_init__(self):
        object.__setattr__(self, "creator", to_decimal(self.creator))
        object.__setattr__(self, "platform", to_decimal(self.platform))

    def validate(self) -> None:
        total = self.creator + self.platform
        if abs(total - 100) > TOLERANCE:
            raise InvalidTierSplit(f"Revenue split must total 100%, got {total}%")


@dataclass(frozen=True)
class TierLimits:
    """None means unlimited."""
    upload: Optional[int] = None
    download_per_month: Optional[int] = None
    active_licenses: Optional[int] = None


@dataclass(frozen=True)
class Tier:
    name: str
    display_name: str
    price_per_month: Decimal
    revenue_split: RevenueSplitPercent
    limits: TierLimits = TierLimits()
    features: frozenset = field(default_factory=frozenset)


class TierCatalog:
    def __init__(self, tiers: Mapping[str, Tier], default: str = TierName.FREE.value):
        if default not in tiers:
            raise KeyError(f"Default tier '{default}' missing from catalog")
        self._tiers = MappingProxyType(dict(tiers))
        self.default = default

    def get(self, tier: Optional[str]) -> Tier:
        """Unknown or missing tiers fall back to the default tier."""
        if not tier or tier not in self._tiers:
            return self._tiers[self.default]
        return self._tiers[tier]

    def __contains__(self, tier: str) -> bool:
        return tier in self._tiers

    def __iter__(self):
        return iter(self._tiers.values())


def default_catalog() -> TierCatalog:
    return TierCatalog({
        TierName.FREE.value: Tier(
            name=TierName.FREE.value,
            display_name="Free",
            price_per_month=Decimal("0"),
            revenue_split=RevenueSplitPercent(80, 20),
            limits=TierLimits(upload=25, download_per_month=50, active_licenses=3),
        ),
        TierName.CONTRIBUTOR.value: Tier(
            name=TierName.CONTRIBUTOR.value,
            display_name="Contributor",
            price_per_month=Decimal("15"),
            revenue_split=RevenueSplitPercent(85, 15),
            features=frozenset({"prioritySupport", "analytics", "featuredListing"}),
        ),
        TierName.PARTNER.value: Tier(
            name=TierName.PARTNER.value,
            display_name="Partner",
            price_per_month=Decimal("50"),
            revenue_split=RevenueSplitPercent(90, 10),
            features=frozenset({
                "apiAccess", "prioritySupport", "poolCreation", "analytics", "featuredListing",
            }),
        ),
        TierName.EQUITY_PARTNER.value: Tier(
            name=TierName.EQUITY_PARTNER.value,
            display_name="Equity Partner",
            price_per_month=Decimal("100"),
            revenue_split=RevenueSplitPercent(95, 5),
            features=frozenset({
                "apiAccess", "prioritySupport", "poolCreation", "analytics", "featuredListing",
                "customBranding", "bulkUpload", "ownershipStake", "boardVoting",
            }),
        ),
    })
