"""
License lifecycle.

    pending -> active            (licensor approval)
    pending -> approved          (settled payment)
    approved -> active           (licensor activation of a paid license)
    pending -> rejected
    pending -> payment_failed
    active | approved -> cancelled
    active -> expired
    active | expired -> active   (renewal)

Every transition that occupies or frees an active-license slot moves the
licensee's ``active_license_count`` and the media's active set in the same
unit of work, through atomic increments.
"""

import calendar
import re
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog

from .errors import (
    BusinessNotFound,
    InvalidTransition,
    LicenseNotFound,
    LicenseNotPending,
    MediaNotFound,
    NotLicenseParty,
    NotLicensor,
    ValidationFailure,
)
from .limits import active_license_limit_error, require_active_license_capacity, require_download_capacity
from .models import Business, License, LicenseStatus, LicenseTerms, LicenseType, Media, utcnow
from .money import ZERO, round_money
from .storage import SettlementStore
from .tiers import TierCatalog

logger = structlog.get_logger(__name__)

DEFAULT_DURATION_MONTHS = 12

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(year|month)s?\s*$", re.IGNORECASE)


def add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_expiry(duration: Optional[str], start: datetime) -> datetime:
    """``"2 years"`` / ``"6 months"``; anything else means one year."""
    match = _DURATION_PATTERN.match(duration or "")
    if not match or int(match.group(1)) == 0:
        return add_months(start, DEFAULT_DURATION_MONTHS)
    count = int(match.group(1))
    if match.group(2).lower() == "year":
        return add_months(start, count * 12)
    return add_months(start, count)


def license_key(license_id: UUID) -> str:
    return f"license:{license_id}"


class LicenseLifecycle:
    def __init__(self, storage: SettlementStore, catalog: TierCatalog,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.catalog = catalog
        self.clock = clock

    def request_license(self, media_id: UUID, licensee_id: UUID, license_type: LicenseType,
                        terms: Optional[LicenseTerms] = None, price=None) -> License:
        license_type = LicenseType(license_type)
        now = self.clock()
        with self.storage.atomic(f"business:{licensee_id}"):
            media = self._media(media_id)
            if not media.is_licensable:
                raise ValidationFailure("This media is not available for licensing")
            if license_type not in media.license_types:
                raise ValidationFailure(
                    f"License type {license_type.value} is not available for this media"
                )
            if media.owner_id == licensee_id:
                raise ValidationFailure("You cannot create a license request for your own media")

            licensee = self._business(licensee_id)
            capacity = require_download_capacity(licensee, self.catalog, now)
            if capacity.reset_due:
                self.storage.increment(licensee_id, "download_count", -licensee.download_count)
                self.storage.update_business(licensee_id, last_download_reset=now)

            if price is None:
                price = media.prices.get(license_type, ZERO)
            license = License(
                licensor_id=media.owner_id,
                licensee_id=licensee_id,
                media_id=media.id,
                license_type=license_type,
                terms=terms or LicenseTerms(),
                price=round_money(price),
                currency=media.currency,
                created_at=now,
            )
            self.storage.save_license(license)
            self.storage.increment(licensee_id, "download_count", 1)

        logger.info("license_requested", license_id=str(license.id), media_id=str(media_id),
                    licensee_id=str(licensee_id), price=str(license.price))
        return license

    def approve(self, license_id: UUID, actor_id: UUID) -> License:
        """Licensor approval: pending -> active."""
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            media = self._media(license.media_id)
            if actor_id != media.owner_id:
                raise NotLicensor("Only the media owner can approve this license")
            if license.status != LicenseStatus.PENDING:
                raise LicenseNotPending("license", license.status.value, LicenseStatus.PENDING.value,
                                        f"License is {license.status.value}, not pending")
            self._occupy_slot(license, self.clock())

        logger.info("license_approved", license_id=str(license_id), actor_id=str(actor_id),
                    expires_at=license.expires_at.isoformat())
        return license

    def activate(self, license_id: UUID, actor_id: UUID) -> License:
        """Licensor activation of a license whose payment already settled."""
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            if actor_id != license.licensor_id:
                raise NotLicensor("Only the licensor can activate this license")
            if license.status != LicenseStatus.APPROVED:
                raise InvalidTransition("license", license.status.value, LicenseStatus.APPROVED.value)
            self._occupy_slot(license, self.clock())

        logger.info("license_activated", license_id=str(license_id))
        return license

    def reject(self, license_id: UUID, actor_id: UUID, reason: str) -> License:
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            if actor_id != license.licensor_id:
                raise NotLicensor("Only the licensor can reject this license")
            if license.status != LicenseStatus.PENDING:
                raise LicenseNotPending("license", license.status.value, LicenseStatus.PENDING.value,
                                        f"License is {license.status.value}, not pending")
            license.status = LicenseStatus.REJECTED
            license.rejected_at = self.clock()
            license.rejection_reason = reason
            self.storage.save_license(license)

        logger.info("license_rejected", license_id=str(license_id), reason=reason)
        return license

    def cancel(self, license_id: UUID, actor_id: UUID) -> License:
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            if not license.is_party(actor_id):
                raise NotLicenseParty("Only the licensor or licensee can cancel this license")
            self._cancel(license)

        logger.info("license_cancelled", license_id=str(license_id), actor_id=str(actor_id))
        return license

    def expire(self, license_id: UUID, now: Optional[datetime] = None) -> bool:
        """Expire an active license past its ``expires_at``. Safe to repeat."""
        now = now or self.clock()
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            if license.status != LicenseStatus.ACTIVE or not license.is_past_expiry(now):
                return False
            license.status = LicenseStatus.EXPIRED
            license.expired_at = now
            self.storage.save_license(license)
            self._release_slot(license)

        logger.info("license_expired", license_id=str(license_id))
        return True

    def expire_due(self, now: Optional[datetime] = None) -> list[UUID]:
        now = now or self.clock()
        expired = []
        for license in self.storage.list_licenses(status=LicenseStatus.ACTIVE):
            if license.is_past_expiry(now) and self.expire(license.id, now):
                expired.append(license.id)
        return expired

    def renew(self, license_id: UUID, actor_id: UUID, duration: Optional[str] = None) -> License:
        now = self.clock()
        with self.storage.atomic(license_key(license_id)):
            license = self._license(license_id)
            if not license.is_party(actor_id):
                raise NotLicenseParty("Only the licensor or licensee can renew this license")
            if license.status not in (LicenseStatus.ACTIVE, LicenseStatus.EXPIRED):
                raise InvalidTransition("license", license.status.value,
                                        [LicenseStatus.ACTIVE.value, LicenseStatus.EXPIRED.value])
            if duration:
                license.terms.duration = duration

            if license.status == LicenseStatus.EXPIRED:
                self._take_slot(license)
                license.expires_at = compute_expiry(license.terms.duration, now)
                license.status = LicenseStatus.ACTIVE
                self.storage.add_active_license(license.media_id, license.id)
            else:
                start = max(now, license.expires_at) if license.expires_at else now
                license.expires_at = compute_expiry(license.terms.duration, start)
            license.renewed_at = now
            self.storage.save_license(license)

        logger.info("license_renewed", license_id=str(license_id),
                    expires_at=license.expires_at.isoformat())
        return license

    # Payment-driven transitions; callers hold the license key.

    def record_payment(self, license_id: UUID, transaction_id: UUID) -> bool:
        """pending -> approved on a settled payment. Returns True if the status moved."""
        license = self._license(license_id)
        if license.status == LicenseStatus.PENDING:
            license.status = LicenseStatus.APPROVED
            license.approved_at = self.clock()
            license.payment_transaction_id = transaction_id
            self.storage.save_license(license)
            return True
        if license.payment_transaction_id is None and license.status in (
                LicenseStatus.APPROVED, LicenseStatus.ACTIVE):
            license.payment_transaction_id = transaction_id
            self.storage.save_license(license)
        return False

    def record_payment_failure(self, license_id: UUID) -> bool:
        license = self._license(license_id)
        if license.status != LicenseStatus.PENDING:
            return False
        license.status = LicenseStatus.PAYMENT_FAILED
        self.storage.save_license(license)
        return True

    def revoke(self, license_id: UUID) -> bool:
        """Cancel a license whose payment was reversed. No-op unless active or approved."""
        license = self._license(license_id)
        if license.status not in (LicenseStatus.ACTIVE, LicenseStatus.APPROVED):
            return False
        self._cancel(license)
        return True

    # Internals

    def _cancel(self, license: License) -> None:
        if license.status not in (LicenseStatus.ACTIVE, LicenseStatus.APPROVED):
            raise InvalidTransition("license", license.status.value,
                                    [LicenseStatus.ACTIVE.value, LicenseStatus.APPROVED.value])
        was_active = license.status == LicenseStatus.ACTIVE
        license.status = LicenseStatus.CANCELLED
        license.cancelled_at = self.clock()
        self.storage.save_license(license)
        if was_active:
            self._release_slot(license)

    def _take_slot(self, license: License) -> None:
        # Approvals of different licenses share no lock; the store enforces the bound.
        capacity = require_active_license_capacity(self._business(license.licensee_id), self.catalog)
        if not self.storage.increment(license.licensee_id, "active_license_count", 1,
                                      maximum=capacity.limit):
            raise active_license_limit_error(capacity.limit, capacity.limit)

    def _occupy_slot(self, license: License, now: datetime) -> None:
        self._take_slot(license)
        license.status = LicenseStatus.ACTIVE
        license.approved_at = license.approved_at or now
        license.expires_at = compute_expiry(license.terms.duration, now)
        self.storage.save_license(license)
        self.storage.increment_media(license.media_id, "license_count", 1)
        self.storage.add_active_license(license.media_id, license.id)

    def _release_slot(self, license: License) -> None:
        if not self.storage.increment(license.licensee_id, "active_license_count", -1, minimum=0):
            logger.warning("active_license_count_already_zero", license_id=str(license.id),
                           licensee_id=str(license.licensee_id))
        self.storage.remove_active_license(license.media_id, license.id)

    def _license(self, license_id: UUID) -> License:
        license = self.storage.get_license(license_id)
        if license is None:
            raise LicenseNotFound(f"License {license_id} not found")
        return license

    def _media(self, media_id: UUID) -> Media:
        media = self.storage.get_media(media_id)
        if media is None:
            raise MediaNotFound(f"Media {media_id} not found")
        return media

    def _business(self, business_id: UUID) -> Business:
        business = self.storage.get_business(business_id)
        if business is None:
            raise BusinessNotFound(f"Business {business_id} not found")
        return business
