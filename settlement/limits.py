"""Tier resource limits: lifetime uploads, monthly downloads, active licenses."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import ActiveLicenseLimitReached, DownloadLimitReached, UploadLimitReached
from .models import Business, utcnow
from .tiers import TierCatalog

UPGRADE_HINT = "Upgrade to Contributor for unlimited {resource}."


@dataclass(frozen=True)
class LimitStatus:
    allowed: bool
    current: int
    limit: Optional[int]
    reset_due: bool = False
    message: Optional[str] = None


def _months_between(earlier: datetime, later: datetime) -> int:
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def download_reset_due(business: Business, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    last_reset = business.last_download_reset or business.created_at
    return _months_between(last_reset, now) >= 1


def check_upload_limit(business: Business, catalog: TierCatalog) -> LimitStatus:
    limit = catalog.get(business.tier).limits.upload
    current = business.upload_count
    if limit is not None and current >= limit:
        return LimitStatus(False, current, limit, message=(
            f"Upload limit reached ({current}/{limit}). " + UPGRADE_HINT.format(resource="uploads")
        ))
    return LimitStatus(True, current, limit)


def check_download_limit(business: Business, catalog: TierCatalog,
                         now: Optional[datetime] = None) -> LimitStatus:
    limit = catalog.get(business.tier).limits.download_per_month
    reset_due = download_reset_due(business, now)
    current = 0 if reset_due else business.download_count
    if limit is not None and current >= limit:
        return LimitStatus(False, current, limit, reset_due, message=(
            f"Download limit reached ({current}/{limit} per month). "
            + UPGRADE_HINT.format(resource="downloads")
        ))
    return LimitStatus(True, current, limit, reset_due)


def check_active_license_limit(business: Business, catalog: TierCatalog) -> LimitStatus:
    limit = catalog.get(business.tier).limits.active_licenses
    current = business.active_license_count
    if limit is not None and current >= limit:
        return LimitStatus(False, current, limit, message=(
            f"Active license limit reached ({current}/{limit}). "
            + UPGRADE_HINT.format(resource="active licenses")
        ))
    return LimitStatus(True, current, limit)


def require_upload_capacity(business: Business, catalog: TierCatalog) -> LimitStatus:
    status = check_upload_limit(business, catalog)
    if not status.allowed:
        raise UploadLimitReached(status.message, status.current, status.limit,
                                 UPGRADE_HINT.format(resource="uploads"))
    return status


def require_download_capacity(business: Business, catalog: TierCatalog,
                              now: Optional[datetime] = None) -> LimitStatus:
    status = check_download_limit(business, catalog, now)
    if not status.allowed:
        raise DownloadLimitReached(status.message, status.current, status.limit,
                                   UPGRADE_HINT.format(resource="downloads"))
    return status


def active_license_limit_error(current: int, limit: Optional[int]) -> ActiveLicenseLimitReached:
    message = (f"Active license limit reached ({current}/{limit}). "
               + UPGRADE_HINT.format(resource="active licenses"))
    return ActiveLicenseLimitReached(message, current, limit, UPGRADE_HINT.format(resource="active licenses"))


def require_active_license_capacity(business: Business, catalog: TierCatalog) -> LimitStatus:
    status = check_active_license_limit(business, catalog)
    if not status.allowed:
        raise active_license_limit_error(status.current, status.limit)
    return status
