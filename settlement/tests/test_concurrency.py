"""
Concurrency tests for the settlement engine

Tests cover:
1. Simultaneous duplicate delivery of a settlement event
2. Licensor approval racing the settlement webhook
3. Active-license limit under concurrent approvals
4. Rolled-back units never overwrite another unit's committed business write
"""

import threading
import pytest
from decimal import Decimal

import settlement.licenses as licenses_module
from settlement.errors import ActiveLicenseLimitReached, LicenseNotPending
from settlement.events import epoch_to_datetime
from settlement.models import LicenseStatus, LicenseType, TransactionStatus
from settlement.storage import StorageError
from settlement.tests import factories

TIMEOUT = 5


def run_concurrently(*calls):
    """Start every call behind a shared barrier. Returns the exceptions raised."""
    barrier = threading.Barrier(len(calls))
    errors = []

    def worker(call):
        barrier.wait(TIMEOUT)
        try:
            call()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(TIMEOUT)
        assert not thread.is_alive()
    return errors


def pending_license(market):
    return market.service.lifecycle.request_license(market.media.id, market.licensee.id,
                                                    LicenseType.COMMERCIAL)


class TestConcurrentSettlement:
    """Settlement paths racing each other on the same license."""

    def test_simultaneous_duplicate_delivery(self, market):
        license = pending_license(market)
        initiation = market.service.initiate_license_payment(license.id, market.licensee.id)
        event = factories.payment_succeeded(initiation.payment_reference, 10000, license.id)

        errors = run_concurrently(*[lambda: market.service.settle_payment_event(event)] * 4)

        assert errors == []
        (record,) = market.storage.list_transactions(related_license=license.id)
        assert record.status == TransactionStatus.COMPLETED
        assert market.storage.get_license(license.id).status == LicenseStatus.APPROVED
        assert market.storage.get_business(market.licensor.id).revenue_balance == Decimal("82.76")
        assert market.storage.get_business(market.licensee.id).total_spent == Decimal("100.00")

    def test_approval_racing_settlement(self, market):
        license = pending_license(market)
        initiation = market.service.initiate_license_payment(license.id, market.licensee.id)
        event = factories.payment_succeeded(initiation.payment_reference, 10000, license.id)

        errors = run_concurrently(
            lambda: market.service.lifecycle.approve(license.id, market.licensor.id),
            lambda: market.service.settle_payment_event(event),
        )

        settled = market.storage.get_license(license.id)
        (record,) = market.storage.list_transactions(related_license=license.id)
        assert record.status == TransactionStatus.COMPLETED
        assert settled.payment_transaction_id == record.id

        licensee = market.storage.get_business(market.licensee.id)
        if settled.status == LicenseStatus.ACTIVE:
            assert errors == []
            assert licensee.active_license_count == 1
        else:
            # Settlement won; the approval found the license no longer pending.
            assert settled.status == LicenseStatus.APPROVED
            assert [type(e) for e in errors] == [LicenseNotPending]
            assert licensee.active_license_count == 0


class TestActiveLicenseLimit:
    """The tier's active-license limit holds when approvals run in parallel."""

    def test_parallel_approvals_stop_at_limit(self, market, monkeypatch):
        market.storage.increment(market.licensee.id, "active_license_count", 2)
        first, second = pending_license(market), pending_license(market)

        checked = threading.Barrier(2)
        original_check = licenses_module.require_active_license_capacity

        def check_then_wait(business, catalog):
            status = original_check(business, catalog)
            checked.wait(TIMEOUT)
            return status

        monkeypatch.setattr(licenses_module, "require_active_license_capacity", check_then_wait)

        errors = run_concurrently(
            lambda: market.service.lifecycle.approve(first.id, market.licensor.id),
            lambda: market.service.lifecycle.approve(second.id, market.licensor.id),
        )

        assert [type(e) for e in errors] == [ActiveLicenseLimitReached]
        assert market.storage.get_business(market.licensee.id).active_license_count == 3
        statuses = sorted(market.storage.get_license(lic.id).status.value for lic in (first, second))
        assert statuses == ["active", "pending"]

    def test_limit_error_carries_limit(self, market):
        market.storage.increment(market.licensee.id, "active_license_count", 3)
        license = pending_license(market)

        with pytest.raises(ActiveLicenseLimitReached) as exc:
            market.service.lifecycle.approve(license.id, market.licensor.id)

        assert exc.value.limit == 3
        assert market.storage.get_license(license.id).status == LicenseStatus.PENDING


class TestBusinessWriteIsolation:
    """A failing unit rolls back only its own writes."""

    def test_rolled_back_invoice_keeps_concurrent_subscription_update(self, market, monkeypatch):
        storage = market.storage
        entered, release = threading.Event(), threading.Event()

        def failing_save(record):
            entered.set()
            release.wait(TIMEOUT)
            raise StorageError("ledger write failed")

        monkeypatch.setattr(storage, "save_transaction", failing_save)
        invoice = factories.invoice("payment_succeeded", "cus_licensee", 1500, period_end=1771156800)
        update = factories.subscription("updated", market.licensee.id, period_end=1800000000)
        errors = []

        def settle(event):
            try:
                market.service.settle_payment_event(event)
            except Exception as exc:
                errors.append(exc)

        invoice_thread = threading.Thread(target=settle, args=(invoice,))
        invoice_thread.start()
        assert entered.wait(TIMEOUT)

        update_thread = threading.Thread(target=settle, args=(update,))
        update_thread.start()
        update_thread.join(0.2)
        release.set()
        invoice_thread.join(TIMEOUT)
        update_thread.join(TIMEOUT)

        assert [type(e) for e in errors] == [StorageError]
        business = storage.get_business(market.licensee.id)
        assert business.subscription_expiry == epoch_to_datetime(1800000000)
        assert not storage.is_event_processed(invoice["id"])
        assert storage.is_event_processed(update["id"])

    def test_undo_skips_fields_overwritten_since(self, storage, market):
        with pytest.raises(RuntimeError):
            with storage.atomic("unit-a"):
                storage.update_business(market.licensee.id, name="Written by A", tier="contributor")
                # Stands in for a unit on another key committing in between.
                storage.businesses[market.licensee.id].name = "Written by B"
                raise RuntimeError("unit A fails")

        business = storage.get_business(market.licensee.id)
        assert business.name == "Written by B"
        assert business.tier == "free"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
