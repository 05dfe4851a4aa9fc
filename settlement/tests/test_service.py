"""
Unit Tests for the settlement service

Tests cover:
1. Initiating license payments
2. Payout requests and balance debits
3. Refunds and license revocation
4. Reserve release
5. Revenue summaries, uploads and transaction history
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from settlement.errors import (
    BelowMinimumPayout,
    BusinessNotFound,
    InsufficientBalance,
    InvalidAmount,
    LicenseNotFound,
    LicenseNotPending,
    NoConnectAccount,
    NotLicensee,
    NotRefundable,
    PaymentProviderError,
    PermissionDenied,
    TransactionNotFound,
    UploadLimitReached,
)
from settlement.gateway import AccountState
from settlement.models import (
    Business,
    ConnectStatus,
    LicenseStatus,
    LicenseType,
    TransactionKind,
    TransactionStatus,
)
from settlement.tests import factories


def request(market, license_type=LicenseType.COMMERCIAL):
    return market.service.lifecycle.request_license(market.media.id, market.licensee.id, license_type)


def settled_sale(market):
    """A $100 commercial license, paid and settled. Returns the payment record."""
    license = request(market)
    initiation = market.service.initiate_license_payment(license.id, market.licensee.id)
    market.service.settle_payment_event(
        factories.payment_succeeded(initiation.payment_reference, 10000, license.id)
    )
    return market.storage.get_transaction(initiation.transaction_id)


class TestInitiateLicensePayment:
    """Tests for initiate_license_payment."""

    def test_creates_pending_record_and_intent(self, market, gateway):
        license = request(market)

        initiation = market.service.initiate_license_payment(license.id, market.licensee.id)

        assert initiation.amount == Decimal("100.00")
        assert initiation.payment_reference == "pi_test_1"
        assert initiation.client_secret == "pi_test_1_secret"

        (call,) = gateway.calls_to("create_payment_intent")
        assert call["amount"] == 10000
        assert call["customer_id"] == "cus_licensee"
        assert call["metadata"] == {
            "licenseId": str(license.id),
            "businessId": str(market.licensee.id),
            "licensorId": str(market.licensor.id),
        }

        record = market.storage.get_transaction(initiation.transaction_id)
        assert record.status == TransactionStatus.PENDING
        assert record.payment_intent_id == "pi_test_1"
        assert record.creator_share == Decimal("87.12")
        assert record.metadata["reserveAmount"] == "4.36"
        assert record.metadata["immediatePayout"] == "82.76"

    def test_customer_created_once(self, market, gateway):
        buyer = market.storage.add_business(Business(name="New Agency", created_at=market.clock()))
        license = market.service.lifecycle.request_license(market.media.id, buyer.id, LicenseType.EDITORIAL)

        market.service.initiate_license_payment(license.id, buyer.id)

        assert gateway.calls_to("create_customer") == [{"business_id": str(buyer.id), "email": None}]
        assert market.storage.get_business(buyer.id).customer_id == "cus_test_1"
        assert gateway.calls_to("create_payment_intent")[0]["amount"] == 4000

    def test_repeat_initiation_reuses_transaction(self, market):
        license = request(market)

        first = market.service.initiate_license_payment(license.id, market.licensee.id)
        second = market.service.initiate_license_payment(license.id, market.licensee.id)

        assert second.transaction_id == first.transaction_id
        assert second.payment_reference == first.payment_reference
        assert len(market.storage.list_transactions(related_license=license.id)) == 1

    def test_unknown_license(self, market):
        with pytest.raises(LicenseNotFound):
            market.service.initiate_license_payment(uuid4(), market.licensee.id)

    def test_only_licensee_may_pay(self, market, gateway):
        license = request(market)
        with pytest.raises(NotLicensee):
            market.service.initiate_license_payment(license.id, market.licensor.id)
        assert gateway.calls == []

    def test_license_must_be_pending(self, market):
        license = request(market)
        market.service.lifecycle.approve(license.id, market.licensor.id)

        with pytest.raises(LicenseNotPending):
            market.service.initiate_license_payment(license.id, market.licensee.id)

    def test_provider_failure_leaves_no_record(self, market, gateway):
        license = request(market)
        gateway.fail_next = PaymentProviderError("card network unavailable")

        with pytest.raises(PaymentProviderError):
            market.service.initiate_license_payment(license.id, market.licensee.id)

        assert market.storage.list_transactions() == []


class TestRequestPayout:
    """Tests for request_payout."""

    def test_non_positive_amount(self, market):
        with pytest.raises(InvalidAmount):
            market.service.request_payout(market.licensor.id, 0)

    def test_requires_connect_account(self, market):
        with pytest.raises(NoConnectAccount):
            market.service.request_payout(market.licensee.id, 50)

    def test_minimum_checked_before_balance(self, market):
        with pytest.raises(BelowMinimumPayout) as exc:
            market.service.request_payout(market.licensor.id, 10)
        assert exc.value.limit == Decimal("25.00")

    def test_insufficient_balance(self, market):
        with pytest.raises(InsufficientBalance):
            market.service.request_payout(market.licensor.id, 50)

    def test_successful_payout_debits_balance(self, market, gateway):
        settled_sale(market)

        receipt = market.service.request_payout(market.licensor.id, Decimal("50.00"))

        assert receipt.amount == Decimal("50.00")
        assert receipt.status == "pending"
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("32.76")

        (call,) = gateway.calls_to("create_payout")
        assert call["account_id"] == "acct_licensor"
        assert call["amount"] == 5000

        record = market.storage.get_transaction(receipt.transaction_id)
        assert record.kind == TransactionKind.PAYOUT
        assert record.payout_id == receipt.payout_reference
        assert record.payee == market.licensor.id

    def test_whole_balance_can_be_paid_out(self, market):
        settled_sale(market)
        market.service.request_payout(market.licensor.id, Decimal("82.76"))

        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("0.00")
        with pytest.raises(InsufficientBalance):
            market.service.request_payout(market.licensor.id, 25)

    def test_pending_account_refreshed_before_payout(self, market, gateway):
        settled_sale(market)
        market.storage.update_business(market.licensor.id, connect_status=ConnectStatus.PENDING,
                                       payouts_enabled=False)

        market.service.request_payout(market.licensor.id, Decimal("50.00"))

        assert gateway.calls_to("retrieve_account") == [{"account_id": "acct_licensor"}]
        licensor = market.storage.get_business(market.licensor.id)
        assert licensor.connect_status == ConnectStatus.ACTIVE
        assert licensor.payouts_enabled is True
        assert len(gateway.calls_to("create_payout")) == 1

    def test_active_account_not_refreshed(self, market, gateway):
        settled_sale(market)
        market.service.request_payout(market.licensor.id, Decimal("50.00"))
        assert gateway.calls_to("retrieve_account") == []

    def test_payouts_disabled_at_provider(self, market, gateway):
        settled_sale(market)
        market.storage.update_business(market.licensor.id, payouts_enabled=False)
        gateway.accounts["acct_licensor"] = AccountState(
            id="acct_licensor", details_submitted=True, charges_enabled=True, payouts_enabled=False,
        )

        with pytest.raises(NoConnectAccount):
            market.service.request_payout(market.licensor.id, Decimal("50.00"))

        assert gateway.calls_to("create_payout") == []
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("82.76")

    def test_provider_failure_restores_balance(self, market, gateway):
        settled_sale(market)
        gateway.fail_next = PaymentProviderError("payouts paused")

        with pytest.raises(PaymentProviderError):
            market.service.request_payout(market.licensor.id, 50)

        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("82.76")
        assert market.storage.list_transactions(kind=TransactionKind.PAYOUT) == []


class TestRefundTransaction:
    """Tests for refund_transaction."""

    def test_refund_reverses_settlement(self, market, gateway):
        record = settled_sale(market)

        receipt = market.service.refund_transaction(record.id, actor_id=market.licensor.id)

        assert receipt.transaction.status == TransactionStatus.REFUNDED
        assert receipt.transaction.refund_id == receipt.refund_reference
        assert receipt.transaction.metadata["reserveForfeited"] is True
        assert receipt.refund_transaction.kind == TransactionKind.REFUND
        assert receipt.refund_transaction.status == TransactionStatus.COMPLETED
        assert receipt.refund_transaction.metadata["originalTransactionId"] == str(record.id)
        assert gateway.calls_to("create_refund")[0]["payment_intent_id"] == record.payment_intent_id

        licensor = market.storage.get_business(market.licensor.id)
        assert licensor.revenue_balance == Decimal("0.00")
        assert licensor.total_earnings == Decimal("0.00")
        assert market.storage.get_business(market.licensee.id).total_spent == Decimal("0.00")

    def test_refund_revokes_license(self, market):
        record = settled_sale(market)

        market.service.refund_transaction(record.id)

        assert market.storage.get_license(record.related_license).status == LicenseStatus.CANCELLED

    def test_only_payee_may_refund(self, market):
        record = settled_sale(market)
        with pytest.raises(PermissionDenied):
            market.service.refund_transaction(record.id, actor_id=market.licensee.id)

    def test_pending_transaction_not_refundable(self, market):
        license = request(market)
        initiation = market.service.initiate_license_payment(license.id, market.licensee.id)

        with pytest.raises(NotRefundable):
            market.service.refund_transaction(initiation.transaction_id)

    def test_refund_happens_once(self, market, gateway):
        record = settled_sale(market)
        market.service.refund_transaction(record.id)

        with pytest.raises(NotRefundable):
            market.service.refund_transaction(record.id)
        assert len(gateway.calls_to("create_refund")) == 1

    def test_unknown_transaction(self, market):
        with pytest.raises(TransactionNotFound):
            market.service.refund_transaction(uuid4())

    def test_provider_failure_changes_nothing(self, market, gateway):
        record = settled_sale(market)
        gateway.fail_next = PaymentProviderError("refund declined")

        with pytest.raises(PaymentProviderError):
            market.service.refund_transaction(record.id)

        assert market.storage.get_transaction(record.id).status == TransactionStatus.COMPLETED
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("82.76")


class TestReleaseReserves:
    """The 5% reserve is credited after the 90 day hold."""

    def test_release_after_hold(self, market):
        record = settled_sale(market)

        released = market.service.release_reserves(now=market.clock.advance(days=91))

        assert released == [record.id]
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("87.12")
        assert market.storage.get_transaction(record.id).metadata["reserveReleased"] is True

    def test_release_happens_once(self, market):
        settled_sale(market)
        market.clock.advance(days=91)

        market.service.release_reserves()
        assert market.service.release_reserves() == []
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("87.12")

    def test_nothing_released_during_hold(self, market):
        settled_sale(market)
        assert market.service.release_reserves(now=market.clock.advance(days=30)) == []
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("82.76")

    def test_refunded_reserve_is_forfeited(self, market):
        record = settled_sale(market)
        market.service.refund_transaction(record.id)

        assert market.service.release_reserves(now=market.clock.advance(days=91)) == []
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("0.00")

    def test_refund_after_release_claws_back_reserve(self, market):
        record = settled_sale(market)
        market.service.release_reserves(now=market.clock.advance(days=91))

        market.service.refund_transaction(record.id)

        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("0.00")


class TestBusinessQueries:
    """Revenue summaries, upload counting and transaction history."""

    def test_revenue_summary(self, market):
        settled_sale(market)

        earned = market.service.revenue_summary(market.licensor.id)
        assert earned.total_earnings == Decimal("87.12")
        assert earned.earnings_count == 1
        assert earned.revenue_balance == Decimal("82.76")

        spent = market.service.revenue_summary(market.licensee.id)
        assert spent.total_spent == Decimal("100.00")
        assert spent.spent_count == 1
        assert spent.total_earnings == Decimal("0.00")

    def test_record_upload_enforces_tier_limit(self, market):
        market.storage.increment(market.licensee.id, "upload_count", 24)

        assert market.service.record_upload(market.licensee.id).upload_count == 25
        with pytest.raises(UploadLimitReached):
            market.service.record_upload(market.licensee.id)
        assert market.storage.get_business(market.licensee.id).upload_count == 25

    def test_transactions_for_business(self, market):
        payment = settled_sale(market)
        receipt = market.service.request_payout(market.licensor.id, 30)

        history = market.service.transactions_for_business(market.licensor.id)
        assert {r.id for r in history} == {payment.id, receipt.transaction_id}

        payouts = market.service.transactions_for_business(market.licensor.id, kind=TransactionKind.PAYOUT)
        assert [r.id for r in payouts] == [receipt.transaction_id]

        assert [r.id for r in market.service.transactions_for_business(market.licensee.id)] == [payment.id]

    def test_history_for_unknown_business(self, market):
        with pytest.raises(BusinessNotFound):
            market.service.transactions_for_business(uuid4())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
