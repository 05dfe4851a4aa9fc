"""
Applies payment provider events at most once. Events that can never apply
raise ``EventDropped`` and are acknowledged; other failures roll back and propagate.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog

from .accounting import apply_settlement, license_payment_record, reverse_settlement, transaction_key
from .calculators import compute_fee
from .errors import EventDropped
from .events import (
    AccountUpdated,
    DisputeCreated,
    InvoiceFailed,
    InvoicePaid,
    PaymentFailed,
    PaymentSucceeded,
    ProviderEvent,
    ProviderObject,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnrecognizedEvent,
    epoch_to_datetime,
    parse_event,
)
from .licenses import LicenseLifecycle, license_key
from .models import (
    Business,
    SubscriptionStatus,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    connect_status_for,
    utcnow,
)
from .money import ZERO, from_minor_units
from .storage import SettlementStore
from .tiers import TierCatalog

logger = structlog.get_logger(__name__)

# Provider subscription status -> (our status, downgrade to the default tier)
SUBSCRIPTION_STATUS_MAP = {
    "active": (SubscriptionStatus.ACTIVE, False),
    "trialing": (SubscriptionStatus.ACTIVE, False),
    "past_due": (SubscriptionStatus.PAST_DUE, False),
    "canceled": (SubscriptionStatus.CANCELLED, True),
    "unpaid": (SubscriptionStatus.CANCELLED, True),
}


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class EventReconciler:
    def __init__(self, storage: SettlementStore, catalog: TierCatalog,
                 lifecycle: Optional[LicenseLifecycle] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.catalog = catalog
        self.clock = clock
        self.lifecycle = lifecycle or LicenseLifecycle(storage, catalog, clock)
        self._handlers: dict[type, Callable[[Any], None]] = {
            SubscriptionCreated: self._subscription_created,
            SubscriptionUpdated: self._subscription_updated,
            SubscriptionDeleted: self._subscription_deleted,
            InvoicePaid: self._invoice_paid,
            InvoiceFailed: self._invoice_failed,
            PaymentSucceeded: self._payment_succeeded,
            PaymentFailed: self._payment_failed,
            AccountUpdated: self._account_updated,
            DisputeCreated: self._dispute_created,
        }

    def settle_payment_event(self, event: Union[dict[str, Any], ProviderEvent]) -> None:
        parsed = parse_event(event)
        log = logger.bind(event_id=parsed.id, event_type=parsed.type)

        if isinstance(parsed, UnrecognizedEvent):
            log.info("event_ignored", reason=parsed.reason)
            return

        handler = self._handlers[type(parsed)]
        try:
            with self.storage.atomic(f"event:{parsed.id}", *self._serialization_keys(parsed)):
                if self.storage.is_event_processed(parsed.id):
                    log.info("event_already_processed")
                    return
                handler(parsed)
                self.storage.mark_event_processed(parsed.id, parsed.type)
        except EventDropped as exc:
            log.warning("event_dropped", reason=str(exc))
            with self.storage.atomic(f"event:{parsed.id}"):
                if not self.storage.is_event_processed(parsed.id):
                    self.storage.mark_event_processed(parsed.id, parsed.type)
            return

        log.info("event_settled")

    def _serialization_keys(self, event: ProviderEvent) -> list[str]:
        obj = event.data
        if isinstance(event, (PaymentSucceeded, PaymentFailed)):
            keys = [f"payment:{obj.id}"]
            license_id = _as_uuid(obj.meta("licenseId"))
            if license_id is not None:
                keys.append(license_key(license_id))
            return keys
        if isinstance(event, DisputeCreated):
            return [f"charge:{obj.charge}"]
        # Every event that writes business fields serialises on the business itself.
        business_id = _as_uuid(obj.meta("businessId"))
        if isinstance(event, (InvoicePaid, InvoiceFailed)):
            keys = [f"customer:{obj.customer}"] if obj.customer else []
            business = self.storage.find_business(customer_id=obj.customer)
            if business is not None:
                keys.append(f"business:{business.id}")
            return keys
        if isinstance(event, AccountUpdated) and business_id is None:
            business = self.storage.find_business(connect_account_id=obj.id)
            business_id = business.id if business is not None else None
        return [f"business:{business_id}"] if business_id else []

    # Lookups

    def _business_from_metadata(self, obj: ProviderObject) -> Business:
        raw = obj.meta("businessId")
        if raw is None:
            raise EventDropped(f"{obj.id} carries no businessId metadata")
        business_id = _as_uuid(raw)
        business = self.storage.get_business(business_id) if business_id else None
        if business is None:
            raise EventDropped(f"Business {raw} not found for {obj.id}")
        return business

    def _business_for_customer(self, customer_id: Optional[str]) -> Business:
        if not customer_id:
            raise EventDropped("Invoice carries no customer")
        business = self.storage.find_business(customer_id=customer_id)
        if business is None:
            raise EventDropped(f"Business not found for customer {customer_id}")
        return business

    # Subscriptions

    def _subscription_created(self, event: SubscriptionCreated) -> None:
        subscription = event.data
        business = self._business_from_metadata(subscription)
        fields = {
            "tier": self._tier_from_metadata(subscription, business.tier),
            "subscription_status": SubscriptionStatus.ACTIVE,
            "subscription_id": subscription.id,
        }
        if subscription.current_period_end:
            fields["subscription_expiry"] = epoch_to_datetime(subscription.current_period_end)
        self.storage.update_business(business.id, **fields)
        logger.info("subscription_created", business_id=str(business.id), tier=fields["tier"])

    def _subscription_updated(self, event: SubscriptionUpdated) -> None:
        subscription = event.data
        business = self._business_from_metadata(subscription)
        fields = {}
        mapped = SUBSCRIPTION_STATUS_MAP.get(subscription.status or "")
        if mapped is not None:
            status, downgrade = mapped
            fields["subscription_status"] = status
            if downgrade:
                fields["tier"] = self.catalog.default
            elif status == SubscriptionStatus.ACTIVE:
                fields["tier"] = self._tier_from_metadata(subscription, business.tier)
        if subscription.current_period_end:
            fields["subscription_expiry"] = epoch_to_datetime(subscription.current_period_end)
        if not fields:
            logger.info("subscription_update_ignored", business_id=str(business.id),
                        provider_status=subscription.status)
            return
        self.storage.update_business(business.id, **fields)
        logger.info("subscription_updated", business_id=str(business.id),
                    provider_status=subscription.status)

    def _subscription_deleted(self, event: SubscriptionDeleted) -> None:
        business = self._business_from_metadata(event.data)
        # Counters are left alone: existing uploads and licenses are not revoked.
        self.storage.update_business(
            business.id,
            tier=self.catalog.default,
            subscription_status=SubscriptionStatus.CANCELLED,
            subscription_id=None,
            subscription_expiry=None,
        )
        logger.info("subscription_deleted", business_id=str(business.id))

    def _tier_from_metadata(self, subscription: ProviderObject, current: str) -> str:
        tier = subscription.meta("tier")
        if tier is None:
            return current
        if tier not in self.catalog:
            logger.warning("unknown_tier_in_metadata", tier=tier, subscription_id=subscription.id)
            return current
        return tier

    # Invoices

    def _invoice_paid(self, event: InvoicePaid) -> None:
        invoice = event.data
        business = self._business_for_customer(invoice.customer)
        now = self.clock()

        if invoice.period_end:
            self.storage.update_business(business.id,
                                         subscription_expiry=epoch_to_datetime(invoice.period_end))

        gross = from_minor_units(invoice.amount_paid)
        if gross == ZERO:
            logger.info("zero_amount_invoice", invoice_id=invoice.id, business_id=str(business.id))
            return

        record = self.storage.find_transaction(payment_intent=invoice.payment_intent)
        if record is None:
            record = self.storage.find_transaction(charge=invoice.charge)
        if record is not None:
            if record.is_pending:
                record.mark_completed(now)
                self.storage.save_transaction(record)
                apply_settlement(self.storage, record)
            else:
                logger.info("invoice_already_recorded", invoice_id=invoice.id,
                            transaction_id=str(record.id), status=record.status.value)
            return

        record = self._subscription_payment(business, gross, invoice.id,
                                            description="Subscription payment",
                                            payment_intent_id=invoice.payment_intent,
                                            charge_id=invoice.charge,
                                            subscription_id=invoice.subscription)
        record.mark_completed(now)
        self.storage.save_transaction(record)
        apply_settlement(self.storage, record)
        logger.info("invoice_paid", invoice_id=invoice.id, business_id=str(business.id),
                    transaction_id=str(record.id), gross_amount=str(gross))

    def _invoice_failed(self, event: InvoiceFailed) -> None:
        invoice = event.data
        business = self._business_for_customer(invoice.customer)
        self.storage.update_business(business.id, subscription_status=SubscriptionStatus.PAST_DUE)

        gross = from_minor_units(invoice.amount_due)
        if gross == ZERO:
            return
        # The provider retries the same payment intent, so a failed attempt keeps
        # it in metadata only and leaves the reference free for the paid record.
        record = self._subscription_payment(business, gross, invoice.id,
                                            description="Subscription payment failed",
                                            subscription_id=invoice.subscription)
        if invoice.payment_intent:
            record.metadata["paymentIntentId"] = invoice.payment_intent
        record.mark_failed(self.clock())
        self.storage.save_transaction(record)
        logger.info("invoice_payment_failed", invoice_id=invoice.id, business_id=str(business.id),
                    transaction_id=str(record.id))

    def _subscription_payment(self, business: Business, gross, invoice_id: str, description: str,
                              subscription_id: Optional[str] = None, **references) -> TransactionRecord:
        # Very small invoices cannot cover the fixed fee; the fee is capped at the gross.
        fee = min(compute_fee(gross), gross)
        net = gross - fee
        metadata = {"invoiceId": invoice_id}
        if subscription_id:
            metadata["subscriptionId"] = subscription_id
        return TransactionRecord.create(
            TransactionKind.SUBSCRIPTION_PAYMENT,
            gross_amount=gross,
            processor_fee=fee,
            net_amount=net,
            platform_share=net,
            payer=business.id,
            description=description,
            metadata=metadata,
            **references,
        )

    # License payments

    def _payment_succeeded(self, event: PaymentSucceeded) -> None:
        intent = event.data
        license_id = _as_uuid(intent.meta("licenseId"))
        if license_id is None:
            raise EventDropped(f"Payment intent {intent.id} carries no licenseId metadata")
        license = self.storage.get_license(license_id)
        if license is None:
            raise EventDropped(f"License {license_id} not found for payment intent {intent.id}")
        now = self.clock()

        record = self.storage.find_transaction(payment_intent=intent.id)
        if record is None:
            licensor = self.storage.get_business(license.licensor_id)
            if licensor is None:
                raise EventDropped(f"Licensor {license.licensor_id} not found")
            record = license_payment_record(
                license, licensor, self.catalog, from_minor_units(intent.amount),
                collection=self._collection_for(license.media_id), now=now,
                payment_intent_id=intent.id,
                charge_id=intent.latest_charge,
            )
            logger.info("license_payment_recorded_from_event", transaction_id=str(record.id),
                        payment_intent_id=intent.id)

        if record.status == TransactionStatus.FAILED:
            raise EventDropped(f"Transaction {record.id} already failed; success for {intent.id} ignored")

        if record.is_pending:
            if record.gross_amount != from_minor_units(intent.amount):
                logger.warning("payment_amount_mismatch", transaction_id=str(record.id),
                               recorded=str(record.gross_amount), provider_amount=intent.amount)
            if record.charge_id is None and intent.latest_charge:
                record.charge_id = intent.latest_charge
            record.mark_completed(now)
            self.storage.save_transaction(record)
            apply_settlement(self.storage, record)
        else:
            logger.info("payment_already_settled", transaction_id=str(record.id),
                        status=record.status.value)

        if self.lifecycle.record_payment(license.id, record.id):
            logger.info("license_payment_settled", license_id=str(license.id),
                        transaction_id=str(record.id))

    def _payment_failed(self, event: PaymentFailed) -> None:
        intent = event.data
        license_id = _as_uuid(intent.meta("licenseId"))
        if license_id is None:
            raise EventDropped(f"Payment intent {intent.id} carries no licenseId metadata")

        record = self.storage.find_transaction(payment_intent=intent.id)
        license = self.storage.get_license(license_id)
        if record is None and license is None:
            raise EventDropped(f"License {license_id} not found for payment intent {intent.id}")

        if record is not None and record.is_pending:
            record.mark_failed(self.clock())
            error = intent.last_payment_error or {}
            if error.get("message"):
                record.metadata["failureMessage"] = error["message"]
            self.storage.save_transaction(record)
        if license is not None and self.lifecycle.record_payment_failure(license.id):
            logger.info("license_payment_failed", license_id=str(license.id))

    def _collection_for(self, media_id: UUID):
        media = self.storage.get_media(media_id)
        if media is None or media.collection_id is None:
            return None
        return self.storage.get_collection(media.collection_id)

    # Connect accounts

    def _account_updated(self, event: AccountUpdated) -> None:
        account = event.data
        if account.meta("businessId") is not None:
            business = self._business_from_metadata(account)
        else:
            business = self.storage.find_business(connect_account_id=account.id)
            if business is None:
                raise EventDropped(f"Business not found for account {account.id}")

        status = connect_status_for(account.details_submitted, account.charges_enabled)
        fields = {"connect_status": status, "payouts_enabled": account.payouts_enabled}
        if business.connect_account_id is None:
            fields["connect_account_id"] = account.id
        self.storage.update_business(business.id, **fields)
        logger.info("connect_account_updated", business_id=str(business.id),
                    connect_status=status.value)

    # Disputes

    def _dispute_created(self, event: DisputeCreated) -> None:
        dispute = event.data
        original = self.storage.find_transaction(charge=dispute.charge)
        if original is None:
            original = self.storage.find_transaction(payment_intent=dispute.payment_intent)
        if original is None:
            raise EventDropped(f"Transaction not found for charge {dispute.charge}")

        now = self.clock()
        related = license_key(original.related_license) if original.related_license else None
        with self.storage.atomic(transaction_key(original.id), related):
            original = self.storage.get_transaction(original.id)
            amount = from_minor_units(dispute.amount)
            chargeback = TransactionRecord.create(
                TransactionKind.CHARGEBACK,
                gross_amount=amount,
                net_amount=amount,
                platform_share=amount,
                status=TransactionStatus.COMPLETED,
                completed_at=now,
                payer=original.payer,
                payee=original.payee,
                related_license=original.related_license,
                description=f"Chargeback dispute for {original.kind.value}",
                metadata={
                    "disputeId": dispute.id,
                    "reason": dispute.reason,
                    "chargeId": dispute.charge,
                    "originalTransactionId": str(original.id),
                },
            )
            self.storage.save_transaction(chargeback)

            if original.status == TransactionStatus.COMPLETED:
                original.mark_disputed(now)
                reverse_settlement(self.storage, original)
                self.storage.save_transaction(original)
                if original.related_license and self.storage.get_license(original.related_license):
                    if self.lifecycle.revoke(original.related_license):
                        logger.info("license_revoked_after_dispute", license_id=str(original.related_license))
            else:
                logger.info("dispute_original_not_transitioned", transaction_id=str(original.id),
                            status=original.status.value)

        logger.info("dispute_recorded", dispute_id=dispute.id, transaction_id=str(original.id),
                    chargeback_id=str(chargeback.id), amount=str(amount))
