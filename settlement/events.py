"""Typed payment provider events. Amounts stay in minor units here."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ProviderObject(BaseModel):
    id: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    def meta(self, key: str) -> Optional[str]:
        value = self.metadata.get(key)
        return str(value) if value not in (None, "") else None


class SubscriptionObject(ProviderObject):
    status: Optional[str] = None
    customer: Optional[str] = None
    current_period_end: Optional[int] = None


class InvoiceObject(ProviderObject):
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    payment_intent: Optional[str] = None
    charge: Optional[str] = None
    period_end: Optional[int] = None


class PaymentIntentObject(ProviderObject):
    amount: int = 0
    customer: Optional[str] = None
    latest_charge: Optional[str] = None
    last_payment_error: Optional[dict[str, Any]] = None


class AccountObject(ProviderObject):
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


class DisputeObject(ProviderObject):
    charge: str
    amount: int = 0
    reason: Optional[str] = None
    payment_intent: Optional[str] = None


class ProviderEvent(BaseModel):
    id: str
    type: str
    created: Optional[int] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def created_at(self) -> Optional[datetime]:
        return epoch_to_datetime(self.created)


class SubscriptionCreated(ProviderEvent):
    type: Literal["customer.subscription.created"]
    data: SubscriptionObject


class SubscriptionUpdated(ProviderEvent):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionObject


class SubscriptionDeleted(ProviderEvent):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionObject


class InvoicePaid(ProviderEvent):
    type: Literal["invoice.payment_succeeded"]
    data: InvoiceObject


class InvoiceFailed(ProviderEvent):
    type: Literal["invoice.payment_failed"]
    data: InvoiceObject


class PaymentSucceeded(ProviderEvent):
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentObject


class PaymentFailed(ProviderEvent):
    type: Literal["payment_intent.payment_failed"]
    data: PaymentIntentObject


class AccountUpdated(ProviderEvent):
    type: Literal["account.updated"]
    data: AccountObject


class DisputeCreated(ProviderEvent):
    type: Literal["charge.dispute.created"]
    data: DisputeObject


class UnrecognizedEvent(ProviderEvent):
    data: dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None


KnownEvent = Union[
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoiceFailed,
    PaymentSucceeded,
    PaymentFailed,
    AccountUpdated,
    DisputeCreated,
]

SettlementEvent = Union[KnownEvent, UnrecognizedEvent]

EVENT_TYPES: dict[str, type] = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
    "invoice.payment_succeeded": InvoicePaid,
    "invoice.payment_failed": InvoiceFailed,
    "payment_intent.succeeded": PaymentSucceeded,
    "payment_intent.payment_failed": PaymentFailed,
    "account.updated": AccountUpdated,
    "charge.dispute.created": DisputeCreated,
}


def epoch_to_datetime(seconds: Optional[int]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def parse_event(payload: Union[dict[str, Any], ProviderEvent]) -> SettlementEvent:
    """Never raises: unknown types and malformed payloads become ``UnrecognizedEvent``."""
    if isinstance(payload, ProviderEvent):
        return payload

    event_id = str(payload.get("id") or "")
    event_type = str(payload.get("type") or "")
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    raw_object = obj if isinstance(obj, dict) else {}
    created = payload.get("created")
    if not isinstance(created, int):
        created = None

    variant = EVENT_TYPES.get(event_type)
    if variant is None or not event_id:
        return UnrecognizedEvent(id=event_id, type=event_type, created=created,
                                 data=raw_object, reason="unrecognized event type")
    try:
        return variant.model_validate({
            "id": event_id,
            "type": event_type,
            "created": created,
            "data": raw_object,
        })
    except ValidationError as exc:
        return UnrecognizedEvent(id=event_id, type=event_type, created=created,
                                 data=raw_object, reason=f"malformed payload: {exc.error_count()} errors")
