"""
Ledger postings against business balances.

A completed license payment credits each creator's immediate payout to
``revenue_balance`` and the full creator share to ``total_earnings``; the
5% reserve is credited later by ``release_reserve``. The payer's
``total_spent`` grows by the gross amount. Refunds and disputes reverse
exactly what was credited and forfeit any reserve still held.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from .calculators import reserve, split
from .models import Business, Collection, License, TransactionKind, TransactionRecord, TransactionStatus
from .money import ZERO, to_decimal
from .pools import distribute
from .storage import SettlementStore
from .tiers import TierCatalog

logger = structlog.get_logger(__name__)


def transaction_key(transaction_id: UUID) -> str:
    return f"transaction:{transaction_id}"


def license_payment_record(license: License, licensor: Business, catalog: TierCatalog,
                           gross_amount: Decimal, collection: Optional[Collection] = None,
                           now: Optional[datetime] = None, **fields) -> TransactionRecord:
    """Build a pending ``license_payment`` split by the licensor's tier.

    Media that belongs to a pool is distributed across the pool members and
    the per-member breakdown is stored under ``metadata["distribution"]``.
    """
    tier = catalog.get(licensor.tier)
    metadata = {
        "licenseId": str(license.id),
        "licenseType": license.license_type.value,
        "tier": tier.name,
    }

    if collection is not None:
        pool = distribute(gross_amount, tier, collection.membership, now=now)
        base = pool.base_split
        members = pool.member_distributions
        metadata["collectionId"] = str(collection.id)
        metadata["distribution"] = [m.as_metadata() for m in members]
        metadata["reserveAmount"] = str(sum((m.reserve_amount for m in members), ZERO))
        metadata["immediatePayout"] = str(sum((m.immediate_payout for m in members), ZERO))
        release_date = members[0].reserve_release_date
    else:
        base = split(gross_amount, tier)
        held = reserve(base.creator_share, now=now)
        metadata["reserveAmount"] = str(held.reserve_amount)
        metadata["immediatePayout"] = str(held.immediate_payout)
        release_date = held.reserve_release_date

    metadata["reserveReleaseDate"] = release_date.isoformat()
    metadata["reserveReleased"] = False

    return TransactionRecord.create(
        TransactionKind.LICENSE_PAYMENT,
        gross_amount=base.gross_amount,
        processor_fee=base.processor_fee,
        net_amount=base.net_amount,
        creator_share=base.creator_share,
        platform_share=base.platform_share,
        payer=license.licensee_id,
        payee=license.licensor_id,
        related_license=license.id,
        description=f"License payment for {license.license_type.value} license",
        metadata=metadata,
        **fields,
    )


def _creator_credits(record: TransactionRecord) -> list[tuple[UUID, Decimal, Decimal, Decimal]]:
    """(business_id, immediate payout, reserve, earnings) for each credited creator."""
    if record.kind != TransactionKind.LICENSE_PAYMENT:
        return []
    distribution = record.metadata.get("distribution")
    if distribution:
        return [
            (
                UUID(str(member["businessId"])),
                to_decimal(member["immediatePayout"]),
                to_decimal(member["reserveAmount"]),
                to_decimal(member["memberShare"]),
            )
            for member in distribution
        ]
    if record.payee is None:
        return []
    held = to_decimal(record.metadata.get("reserveAmount", ZERO))
    immediate = to_decimal(record.metadata.get("immediatePayout", record.creator_share - held))
    return [(record.payee, immediate, held, record.creator_share)]


def apply_settlement(storage: SettlementStore, record: TransactionRecord) -> None:
    """Credit the balances moved by a payment that just completed."""
    if record.payer is not None:
        storage.increment(record.payer, "total_spent", record.gross_amount)
    for business_id, immediate, _, earnings in _creator_credits(record):
        storage.increment(business_id, "revenue_balance", immediate)
        storage.increment(business_id, "total_earnings", earnings)
    logger.info("settlement_applied", transaction_id=str(record.id), kind=record.kind.value,
                gross_amount=str(record.gross_amount))


def reverse_settlement(storage: SettlementStore, record: TransactionRecord) -> Decimal:
    """
    Reverse the credits of a refunded or disputed payment. Updates the
    record's metadata; the caller saves it. Returns the amount clawed back
    from creator balances.
    """
    released = bool(record.metadata.get("reserveReleased"))
    if record.payer is not None:
        storage.increment(record.payer, "total_spent", -record.gross_amount)

    clawed_back = ZERO
    for business_id, immediate, held, earnings in _creator_credits(record):
        amount = immediate + held if released else immediate
        storage.increment(business_id, "revenue_balance", -amount)
        storage.increment(business_id, "total_earnings", -earnings)
        clawed_back += amount

    if not released and record.kind == TransactionKind.LICENSE_PAYMENT:
        record.metadata["reserveForfeited"] = True
    logger.info("settlement_reversed", transaction_id=str(record.id), clawed_back=str(clawed_back),
                reserve_forfeited=not released)
    return clawed_back


def reserve_release_due(record: TransactionRecord, now: datetime) -> bool:
    metadata = record.metadata
    if record.status != TransactionStatus.COMPLETED or record.kind != TransactionKind.LICENSE_PAYMENT:
        return False
    if metadata.get("reserveReleased") or metadata.get("reserveForfeited"):
        return False
    release_date = metadata.get("reserveReleaseDate")
    if not release_date:
        return False
    return datetime.fromisoformat(release_date) <= now


def release_reserve(storage: SettlementStore, record: TransactionRecord, now: datetime) -> Decimal:
    """Credit a matured reserve to its creators, once. The caller saves the record."""
    if not reserve_release_due(record, now):
        return ZERO
    released = ZERO
    for business_id, _, held, _ in _creator_credits(record):
        if held > 0:
            storage.increment(business_id, "revenue_balance", held)
            released += held
    record.metadata["reserveReleased"] = True
    record.metadata["reserveReleasedAt"] = now.isoformat()
    return released
