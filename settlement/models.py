from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    AlreadyCompleted,
    InvalidAmount,
    InvalidTransaction,
    InvalidTransition,
    NotRefundable,
    TerminalStateConflict,
)
from .money import ZERO, Number, round_money, within_tolerance
from .pools import PoolMembership


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionKind(str, Enum):
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    LICENSE_PAYMENT = "license_payment"
    PAYOUT = "payout"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    PLATFORM_FEE = "platform_fee"


PAYMENT_KINDS = (TransactionKind.SUBSCRIPTION_PAYMENT, TransactionKind.LICENSE_PAYMENT)
PAYER_REQUIRED = PAYMENT_KINDS
PAYEE_REQUIRED = (TransactionKind.LICENSE_PAYMENT, TransactionKind.PAYOUT)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class LicenseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


class LicenseType(str, Enum):
    COMMERCIAL = "commercial"
    EDITORIAL = "editorial"
    EXCLUSIVE = "exclusive"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class ConnectStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    ACTIVE = "active"


def connect_status_for(details_submitted: bool, charges_enabled: bool) -> ConnectStatus:
    if details_submitted and charges_enabled:
        return ConnectStatus.ACTIVE
    return ConnectStatus.PENDING


class TransactionRecord(BaseModel):
    """
    One monetary movement. Append-only: status changes only through the
    ``mark_*`` transitions, corrections are new records.

        pending -> completed -> refunded | disputed
        pending -> failed
    """
    id: UUID = Field(default_factory=uuid4)
    kind: TransactionKind
    gross_amount: Decimal = Field(ge=0)
    processor_fee: Decimal = Field(default=ZERO, ge=0)
    net_amount: Decimal = Field(ge=0)
    creator_share: Decimal = Field(default=ZERO, ge=0)
    platform_share: Decimal = Field(default=ZERO, ge=0)
    status: TransactionStatus = TransactionStatus.PENDING

    payer: Optional[UUID] = None
    payee: Optional[UUID] = None
    related_license: Optional[UUID] = None

    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    payout_id: Optional[str] = None
    refund_id: Optional[str] = None
    transfer_id: Optional[str] = None

    description: Optional[str] = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def create(cls, kind: TransactionKind, gross_amount: Number, processor_fee: Number = ZERO,
               net_amount: Optional[Number] = None, creator_share: Number = ZERO,
               platform_share: Number = ZERO, **fields: Any) -> "TransactionRecord":
        """Build a new pending record, enforcing party and amount invariants."""
        kind = TransactionKind(kind)
        amounts = {
            "gross_amount": gross_amount,
            "processor_fee": processor_fee,
            "creator_share": creator_share,
            "platform_share": platform_share,
        }
        if net_amount is not None:
            amounts["net_amount"] = net_amount
        amounts = {name: round_money(value) for name, value in amounts.items()}
        for name, value in amounts.items():
            if value < 0:
                raise InvalidAmount(f"{name} cannot be negative, got {value}")
        if "net_amount" not in amounts:
            amounts["net_amount"] = amounts["gross_amount"] - amounts["processor_fee"]
            if amounts["net_amount"] < 0:
                raise InvalidAmount(
                    f"Processor fee ({amounts['processor_fee']}) exceeds gross amount "
                    f"({amounts['gross_amount']})"
                )

        if kind in PAYER_REQUIRED and fields.get("payer") is None:
            raise InvalidTransaction(f"payer is required for {kind.value} transactions")
        if kind in PAYEE_REQUIRED and fields.get("payee") is None:
            raise InvalidTransaction(f"payee is required for {kind.value} transactions")

        fields.setdefault("status", TransactionStatus.PENDING)
        record = cls(kind=kind, **amounts, **fields)
        record.check_amounts()
        return record

    def check_amounts(self) -> None:
        expected_net = self.gross_amount - self.processor_fee
        if not within_tolerance(self.net_amount, expected_net):
            raise InvalidTransaction(
                f"Net amount ({self.net_amount}) must equal gross amount ({self.gross_amount}) "
                f"minus processor fee ({self.processor_fee})"
            )
        if self.creator_share > 0 or self.platform_share > 0:
            if not within_tolerance(self.creator_share + self.platform_share, self.net_amount):
                raise InvalidTransaction(
                    f"Revenue split (creator: {self.creator_share}, platform: {self.platform_share}) "
                    f"must sum to net amount ({self.net_amount})"
                )

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_payment(self) -> bool:
        return self.kind in PAYMENT_KINDS

    @property
    def is_payout(self) -> bool:
        return self.kind == TransactionKind.PAYOUT

    @property
    def can_refund(self) -> bool:
        return self.is_completed and self.is_payment

    def mark_completed(self, now: Optional[datetime] = None) -> "TransactionRecord":
        if self.status == TransactionStatus.COMPLETED:
            raise AlreadyCompleted("transaction", self.status.value, TransactionStatus.PENDING.value,
                                   "Transaction is already completed")
        if self.status in (TransactionStatus.REFUNDED, TransactionStatus.DISPUTED):
            raise TerminalStateConflict("transaction", self.status.value, TransactionStatus.PENDING.value,
                                        f"Cannot complete a {self.status.value} transaction")
        if self.status != TransactionStatus.PENDING:
            raise InvalidTransition("transaction", self.status.value, TransactionStatus.PENDING.value)
        self.status = TransactionStatus.COMPLETED
        self.completed_at = now or utcnow()
        return self

    def mark_failed(self, now: Optional[datetime] = None) -> "TransactionRecord":
        if self.status != TransactionStatus.PENDING:
            raise InvalidTransition(
                "transaction", self.status.value, TransactionStatus.PENDING.value,
                f"Cannot mark transaction as failed. Current status: '{self.status.value}'",
            )
        self.status = TransactionStatus.FAILED
        self.failed_at = now or utcnow()
        return self

    def mark_refunded(self, now: Optional[datetime] = None) -> "TransactionRecord":
        if not self.is_payment:
            raise NotRefundable("transaction", self.status.value, TransactionStatus.COMPLETED.value,
                                f"Cannot refund a {self.kind.value} transaction")
        if self.status != TransactionStatus.COMPLETED:
            raise NotRefundable(
                "transaction", self.status.value, TransactionStatus.COMPLETED.value,
                f"Cannot refund transaction with status '{self.status.value}'. "
                "Only completed transactions can be refunded.",
            )
        self.status = TransactionStatus.REFUNDED
        self.refunded_at = now or utcnow()
        return self

    def mark_disputed(self, now: Optional[datetime] = None) -> "TransactionRecord":
        if self.status != TransactionStatus.COMPLETED:
            raise InvalidTransition(
                "transaction", self.status.value, TransactionStatus.COMPLETED.value,
                f"Cannot dispute transaction with status '{self.status.value}'. "
                "Only completed transactions can be disputed.",
            )
        self.status = TransactionStatus.DISPUTED
        self.disputed_at = now or utcnow()
        return self

    def provider_references(self) -> dict[str, str]:
        refs = {
            "payment_intent": self.payment_intent_id,
            "charge": self.charge_id,
            "payout": self.payout_id,
            "refund": self.refund_id,
            "transfer": self.transfer_id,
        }
        return {kind: ref for kind, ref in refs.items() if ref}


class LicenseTerms(BaseModel):
    duration: Optional[str] = None
    geographic: list[str] = Field(default_factory=list)
    usage: Optional[str] = None
    modification: bool = False


class License(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    licensor_id: UUID
    licensee_id: UUID
    media_id: UUID
    license_type: LicenseType
    terms: LicenseTerms = Field(default_factory=LicenseTerms)
    price: Decimal = Field(default=ZERO, ge=0)
    currency: str = "USD"
    status: LicenseStatus = LicenseStatus.PENDING

    created_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    renewed_at: Optional[datetime] = None
    payment_transaction_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)

    def is_party(self, business_id: UUID) -> bool:
        return business_id in (self.licensor_id, self.licensee_id)

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class Business(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    tier: str = "free"
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_id: Optional[str] = None
    subscription_expiry: Optional[datetime] = None

    customer_id: Optional[str] = None
    connect_account_id: Optional[str] = None
    connect_status: ConnectStatus = ConnectStatus.NOT_STARTED
    payouts_enabled: bool = False

    revenue_balance: Decimal = ZERO
    total_earnings: Decimal = ZERO
    total_spent: Decimal = ZERO
    active_license_count: int = 0
    upload_count: int = 0
    download_count: int = 0
    last_download_reset: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Media(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    title: str = ""
    collection_id: Optional[UUID] = None
    is_licensable: bool = True
    license_types: list[LicenseType] = Field(default_factory=lambda: list(LicenseType))
    prices: dict[LicenseType, Decimal] = Field(default_factory=dict)
    currency: str = "USD"
    license_count: int = 0
    active_license_ids: list[UUID] = Field(default_factory=list)


class Collection(BaseModel):
    """A revenue pool: media co-owned by member businesses."""
    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    owner_id: UUID
    membership: PoolMembership

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RejectLicenseRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason shown to the licensee")


class RenewLicenseRequest(BaseModel):
    duration: Optional[str] = Field(default=None, description='e.g. "1 year", "6 months"')


class PayoutRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)

    model_config = ConfigDict(json_schema_extra={"example": {"amount": 50.00}})


class RefundRequest(BaseModel):
    reason: str = Field(default="requested_by_customer")


class PaymentInitiation(BaseModel):
    transaction_id: UUID
    payment_reference: str
    client_secret: Optional[str] = None
    amount: Decimal


class PayoutReceipt(BaseModel):
    transaction_id: UUID
    payout_reference: str
    amount: Decimal
    status: str


class RefundReceipt(BaseModel):
    transaction: TransactionRecord
    refund_transaction: TransactionRecord
    refund_reference: str


class RevenueSummary(BaseModel):
    business_id: UUID
    total_earnings: Decimal
    earnings_count: int
    total_spent: Decimal
    spent_count: int
    revenue_balance: Decimal


class LicenseRequest(BaseModel):
    media_id: UUID
    license_type: LicenseType
    terms: LicenseTerms = Field(default_factory=LicenseTerms)
