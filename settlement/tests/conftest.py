import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest

from settlement.errors import PaymentProviderError
from settlement.gateway import AccountState, GatewayResult
from settlement.models import Business, Collection, ConnectStatus, LicenseType, Media
from settlement.pools import PoolMembership
from settlement.service import SettlementService
from settlement.storage import InMemoryStorage
from settlement.tiers import default_catalog

START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeGateway:
    """Records every provider call; set ``fail_next`` to make the next call raise."""

    def __init__(self):
        self.calls = []
        self.fail_next: Optional[PaymentProviderError] = None
        self._ids = itertools.count(1)
        self._idempotent: dict[str, GatewayResult] = {}
        self.accounts: dict[str, AccountState] = {}

    def _call(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_test_{next(self._ids)}"

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_customer(self, business_id: str, email: Optional[str] = None) -> str:
        self._call("create_customer", business_id=business_id, email=email)
        return self._next_id("cus")

    def create_payment_intent(self, amount, customer_id, metadata, idempotency_key=None):
        self._call("create_payment_intent", amount=amount, customer_id=customer_id,
                   metadata=metadata, idempotency_key=idempotency_key)
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        intent_id = self._next_id("pi")
        result = GatewayResult(id=intent_id, status="requires_payment_method", amount=amount,
                               client_secret=f"{intent_id}_secret")
        if idempotency_key:
            self._idempotent[idempotency_key] = result
        return result

    def create_payout(self, account_id, amount, metadata, idempotency_key=None):
        self._call("create_payout", account_id=account_id, amount=amount, metadata=metadata)
        return GatewayResult(id=self._next_id("po"), status="pending", amount=amount)

    def create_refund(self, payment_intent_id, reason, idempotency_key=None):
        self._call("create_refund", payment_intent_id=payment_intent_id, reason=reason)
        return GatewayResult(id=self._next_id("re"), status="succeeded")

    def retrieve_account(self, account_id):
        self._call("retrieve_account", account_id=account_id)
        return self.accounts.get(account_id) or AccountState(
            id=account_id, details_submitted=True, charges_enabled=True, payouts_enabled=True,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def service(storage, catalog, gateway, clock):
    return SettlementService(storage=storage, catalog=catalog, gateway=gateway, clock=clock)


@pytest.fixture
def market(service, clock):
    """A partner-tier licensor selling one photo to a free-tier licensee."""
    storage = service.storage
    licensor = storage.add_business(Business(
        name="Northlight Studio", tier="partner", connect_account_id="acct_licensor",
        connect_status=ConnectStatus.ACTIVE, payouts_enabled=True, created_at=clock(),
    ))
    licensee = storage.add_business(Business(
        name="Harbor Press", tier="free", customer_id="cus_licensee", created_at=clock(),
    ))
    media = storage.add_media(Media(
        owner_id=licensor.id,
        title="Fjord at dawn",
        prices={LicenseType.COMMERCIAL: Decimal("100.00"), LicenseType.EDITORIAL: Decimal("40.00")},
    ))
    return SimpleNamespace(service=service, storage=storage, clock=clock,
                           licensor=licensor, licensee=licensee, media=media)


@pytest.fixture
def pooled_media(market):
    """Media owned by a 60/40 pool of the licensor and a second studio."""
    storage = market.storage
    partner = storage.add_business(Business(name="Second Studio", tier="free", created_at=market.clock()))
    collection = storage.add_collection(Collection(
        name="Arctic collection",
        owner_id=market.licensor.id,
        membership=PoolMembership.of([
            {"businessId": str(market.licensor.id), "contributionPercent": 60},
            {"businessId": str(partner.id), "contributionPercent": 40},
        ]),
    ))
    media = storage.add_media(Media(
        owner_id=market.licensor.id,
        title="Aurora series",
        collection_id=collection.id,
        prices={LicenseType.COMMERCIAL: Decimal("100.00")},
    ))
    return SimpleNamespace(partner=partner, collection=collection, media=media)
