from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog

from .accounting import (
    license_payment_record,
    release_reserve,
    reserve_release_due,
    reverse_settlement,
    transaction_key,
)
from .errors import (
    BelowMinimumPayout,
    BusinessNotFound,
    InsufficientBalance,
    InvalidAmount,
    LicenseNotFound,
    LicenseNotPending,
    NoConnectAccount,
    NotLicensee,
    NotRefundable,
    PermissionDenied,
    TransactionNotFound,
)
from .gateway import PaymentGateway, UnconfiguredGateway
from .licenses import LicenseLifecycle, license_key
from .limits import require_upload_capacity
from .models import (
    Business,
    ConnectStatus,
    LicenseStatus,
    PaymentInitiation,
    PayoutReceipt,
    RefundReceipt,
    RevenueSummary,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    connect_status_for,
    utcnow,
)
from .money import ZERO, Number, round_money, to_minor_units
from .reconciler import EventReconciler
from .storage import InMemoryStorage, SettlementStore
from .tiers import TierCatalog, default_catalog

logger = structlog.get_logger(__name__)

MINIMUM_PAYOUT = Decimal("25.00")


class SettlementService:
    def __init__(self, storage: Optional[SettlementStore] = None,
                 catalog: Optional[TierCatalog] = None,
                 gateway: Optional[PaymentGateway] = None,
                 minimum_payout: Number = MINIMUM_PAYOUT,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage or InMemoryStorage()
        self.catalog = catalog or default_catalog()
        self.gateway = gateway or UnconfiguredGateway()
        self.minimum_payout = round_money(minimum_payout)
        self.clock = clock
        self.lifecycle = LicenseLifecycle(self.storage, self.catalog, clock)
        self.reconciler = EventReconciler(self.storage, self.catalog, self.lifecycle, clock)

    def settle_payment_event(self, event) -> None:
        self.reconciler.settle_payment_event(event)

    def initiate_license_payment(self, license_id: UUID, payer_id: UUID) -> PaymentInitiation:
        with self.storage.atomic(license_key(license_id)):
            license = self.storage.get_license(license_id)
            if license is None:
                raise LicenseNotFound(f"License {license_id} not found")
            if payer_id != license.licensee_id:
                raise NotLicensee("Only the licensee can pay for this license")
            if license.status != LicenseStatus.PENDING:
                raise LicenseNotPending(
                    "license", license.status.value, LicenseStatus.PENDING.value,
                    f"License must be pending to initiate payment; it is {license.status.value}",
                )

            payer = self._business(payer_id)
            licensor = self._business(license.licensor_id)
            media = self.storage.get_media(license.media_id)
            collection = None
            if media is not None and media.collection_id is not None:
                collection = self.storage.get_collection(media.collection_id)

            # Built before the provider call so a bad amount never reaches it.
            record = license_payment_record(license, licensor, self.catalog, license.price,
                                            collection=collection, now=self.clock())

            customer_id = payer.customer_id
            if not customer_id:
                customer_id = self.gateway.create_customer(str(payer.id))
                self.storage.update_business(payer.id, customer_id=customer_id)

            intent = self.gateway.create_payment_intent(
                to_minor_units(record.gross_amount),
                customer_id,
                metadata={
                    "licenseId": str(license.id),
                    "businessId": str(payer.id),
                    "licensorId": str(license.licensor_id),
                },
                idempotency_key=f"license-payment-{license.id}",
            )

            existing = self.storage.find_transaction(payment_intent=intent.id)
            if existing is not None:
                logger.info("license_payment_reused", license_id=str(license.id),
                            transaction_id=str(existing.id), payment_intent_id=intent.id)
                return PaymentInitiation(transaction_id=existing.id, payment_reference=intent.id,
                                         client_secret=intent.client_secret,
                                         amount=existing.gross_amount)

            record.payment_intent_id = intent.id
            self.storage.save_transaction(record)

        logger.info("license_payment_initiated", license_id=str(license_id),
                    transaction_id=str(record.id), payment_intent_id=intent.id,
                    amount=str(record.gross_amount))
        return PaymentInitiation(transaction_id=record.id, payment_reference=intent.id,
                                 client_secret=intent.client_secret, amount=record.gross_amount)

    def request_payout(self, business_id: UUID, amount: Number) -> PayoutReceipt:
        amount = round_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Payout amount must be positive, got {amount}")

        with self.storage.atomic(f"business:{business_id}"):
            business = self._business(business_id)
            if not business.connect_account_id:
                raise NoConnectAccount("Stripe Connect account not set up",
                                       suggested_action="Complete payout account onboarding")
            if business.connect_status != ConnectStatus.ACTIVE or not business.payouts_enabled:
                business = self._refresh_connect_account(business)
            if not business.payouts_enabled:
                raise NoConnectAccount("Payouts are not enabled for this Stripe Connect account",
                                       suggested_action="Complete payout account onboarding")
            if amount < self.minimum_payout:
                raise BelowMinimumPayout(f"Minimum payout amount is ${self.minimum_payout}",
                                         current=amount, limit=self.minimum_payout,
                                         suggested_action="Request at least the minimum payout")
            if not self.storage.increment(business.id, "revenue_balance", -amount, minimum=ZERO):
                raise InsufficientBalance("Insufficient balance for payout",
                                          current=business.revenue_balance, limit=amount,
                                          suggested_action="Request an amount within your balance")

            record = TransactionRecord.create(
                TransactionKind.PAYOUT,
                gross_amount=amount,
                creator_share=amount,
                payee=business.id,
                description=f"Payout request for ${amount}",
            )
            payout = self.gateway.create_payout(
                business.connect_account_id,
                to_minor_units(amount),
                metadata={"businessId": str(business.id), "transactionId": str(record.id)},
                idempotency_key=f"payout-{record.id}",
            )
            record.payout_id = payout.id
            record.metadata["payoutStatus"] = payout.status
            self.storage.save_transaction(record)

        logger.info("payout_requested", business_id=str(business_id), transaction_id=str(record.id),
                    payout_id=payout.id, amount=str(amount))
        return PayoutReceipt(transaction_id=record.id, payout_reference=payout.id, amount=amount,
                             status=payout.status or record.status.value)

    def refund_transaction(self, transaction_id: UUID, reason: str = "requested_by_customer",
                           actor_id: Optional[UUID] = None) -> RefundReceipt:
        record = self.get_transaction(transaction_id)
        if actor_id is not None and actor_id != record.payee:
            raise PermissionDenied("Only the payee can refund this transaction")
        related = license_key(record.related_license) if record.related_license else None

        with self.storage.atomic(transaction_key(transaction_id), related):
            record = self.get_transaction(transaction_id)
            if not record.can_refund:
                raise NotRefundable(
                    "transaction", record.status.value, TransactionStatus.COMPLETED.value,
                    f"Cannot refund {record.kind.value} transaction with status '{record.status.value}'",
                )
            if not record.payment_intent_id:
                raise NotRefundable("transaction", record.status.value, TransactionStatus.COMPLETED.value,
                                    "Transaction has no payment reference to refund")

            now = self.clock()
            refund = self.gateway.create_refund(record.payment_intent_id, reason,
                                                idempotency_key=f"refund-{record.id}")
            record.mark_refunded(now)
            record.refund_id = refund.id
            reverse_settlement(self.storage, record)
            self.storage.save_transaction(record)

            refund_record = TransactionRecord.create(
                TransactionKind.REFUND,
                gross_amount=record.gross_amount,
                status=TransactionStatus.COMPLETED,
                completed_at=now,
                payer=record.payer,
                payee=record.payee,
                related_license=record.related_license,
                description=f"Refund of {record.kind.value}",
                metadata={
                    "originalTransactionId": str(record.id),
                    "refundId": refund.id,
                    "reason": reason,
                },
            )
            self.storage.save_transaction(refund_record)

            if record.related_license and self.storage.get_license(record.related_license):
                if self.lifecycle.revoke(record.related_license):
                    logger.info("license_revoked_after_refund", license_id=str(record.related_license))

        logger.info("transaction_refunded", transaction_id=str(transaction_id),
                    refund_id=refund.id, amount=str(record.gross_amount))
        return RefundReceipt(transaction=record, refund_transaction=refund_record,
                             refund_reference=refund.id)

    def release_reserves(self, now: Optional[datetime] = None) -> list[UUID]:
        """Credit every matured chargeback reserve. Returns the released transaction ids."""
        now = now or self.clock()
        released = []
        candidates = self.storage.list_transactions(kind=TransactionKind.LICENSE_PAYMENT,
                                                    status=TransactionStatus.COMPLETED)
        for candidate in candidates:
            if not reserve_release_due(candidate, now):
                continue
            with self.storage.atomic(transaction_key(candidate.id)):
                record = self.storage.get_transaction(candidate.id)
                amount = release_reserve(self.storage, record, now)
                if record.metadata.get("reserveReleased"):
                    self.storage.save_transaction(record)
                    released.append(record.id)
                    logger.info("reserve_released", transaction_id=str(record.id), amount=str(amount))
        return released

    def record_upload(self, business_id: UUID) -> Business:
        with self.storage.atomic(f"business:{business_id}"):
            business = self._business(business_id)
            require_upload_capacity(business, self.catalog)
            self.storage.increment(business.id, "upload_count", 1)
        return self._business(business_id)

    def get_transaction(self, transaction_id: UUID) -> TransactionRecord:
        record = self.storage.get_transaction(transaction_id)
        if record is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return record

    def transactions_for_business(self, business_id: UUID,
                                  kind: Optional[TransactionKind] = None,
                                  status: Optional[TransactionStatus] = None) -> list[TransactionRecord]:
        self._business(business_id)
        filters = {}
        if kind is not None:
            filters["kind"] = TransactionKind(kind)
        if status is not None:
            filters["status"] = TransactionStatus(status)
        records = {r.id: r for r in self.storage.list_transactions(payer=business_id, **filters)}
        records.update({r.id: r for r in self.storage.list_transactions(payee=business_id, **filters)})
        return sorted(records.values(), key=lambda r: r.created_at, reverse=True)

    def revenue_summary(self, business_id: UUID) -> RevenueSummary:
        business = self._business(business_id)
        earned = self.storage.list_transactions(payee=business_id, kind=TransactionKind.LICENSE_PAYMENT,
                                                status=TransactionStatus.COMPLETED)
        spent = [
            r for r in self.storage.list_transactions(payer=business_id,
                                                      status=TransactionStatus.COMPLETED)
            if r.is_payment
        ]
        return RevenueSummary(
            business_id=business_id,
            total_earnings=round_money(sum((r.creator_share for r in earned), ZERO)),
            earnings_count=len(earned),
            total_spent=round_money(sum((r.gross_amount for r in spent), ZERO)),
            spent_count=len(spent),
            revenue_balance=business.revenue_balance,
        )

    def _refresh_connect_account(self, business: Business) -> Business:
        account = self.gateway.retrieve_account(business.connect_account_id)
        status = connect_status_for(account.details_submitted, account.charges_enabled)
        logger.info("connect_account_refreshed", business_id=str(business.id), connect_status=status.value,
                    payouts_enabled=account.payouts_enabled)
        return self.storage.update_business(business.id, connect_status=status,
                                            payouts_enabled=account.payouts_enabled)

    def _business(self, business_id: UUID) -> Business:
        business = self.storage.get_business(business_id)
        if business is None:
            raise BusinessNotFound(f"Business {business_id} not found")
        return business
