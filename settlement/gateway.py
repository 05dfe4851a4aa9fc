"""Payment provider gateway; transient Stripe failures are retried."""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import PaymentProviderError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class AccountState:
    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    metadata: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_customer(self, business_id: str, email: Optional[str] = None) -> str: ...

    def create_payment_intent(self, amount: int, customer_id: Optional[str],
                              metadata: dict[str, str],
                              idempotency_key: Optional[str] = None) -> GatewayResult: ...

    def create_payout(self, account_id: str, amount: int, metadata: dict[str, str],
                      idempotency_key: Optional[str] = None) -> GatewayResult: ...

    def create_refund(self, payment_intent_id: str, reason: str,
                      idempotency_key: Optional[str] = None) -> GatewayResult: ...

    def retrieve_account(self, account_id: str) -> AccountState: ...


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, PaymentProviderError) and error.transient


def _translate(error: stripe.StripeError) -> PaymentProviderError:
    transient = isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)) or (
        isinstance(error, stripe.APIError) and not isinstance(error, stripe.InvalidRequestError)
    )
    logger.error("stripe_api_error", transient=transient, error_code=getattr(error, "code", None),
                 error_message=str(error))
    return PaymentProviderError(str(error), transient=transient)


provider_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    reraise=True,
)


class StripeGateway:
    # Stripe refund reasons; anything else is sent as requested_by_customer.
    REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

    def __init__(self, api_key: str, api_version: Optional[str] = None):
        stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version
        logger.info("stripe_gateway_initialized", test_mode=api_key.startswith("sk_test_"))

    @provider_retry
    def create_customer(self, business_id: str, email: Optional[str] = None) -> str:
        try:
            customer = stripe.Customer.create(email=email, metadata={"businessId": business_id})
        except stripe.StripeError as e:
            raise _translate(e) from e
        return customer.id

    @provider_retry
    def create_payment_intent(self, amount: int, customer_id: Optional[str],
                              metadata: dict[str, str],
                              idempotency_key: Optional[str] = None) -> GatewayResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency="usd",
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _translate(e) from e
        logger.info("payment_intent_created", payment_intent_id=intent.id, amount=amount)
        return GatewayResult(id=intent.id, status=intent.status, amount=intent.amount,
                             client_secret=intent.client_secret)

    @provider_retry
    def create_payout(self, account_id: str, amount: int, metadata: dict[str, str],
                      idempotency_key: Optional[str] = None) -> GatewayResult:
        try:
            payout = stripe.Payout.create(
                amount=amount,
                currency="usd",
                metadata=metadata,
                stripe_account=account_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _translate(e) from e
        logger.info("payout_created", payout_id=payout.id, amount=amount)
        return GatewayResult(id=payout.id, status=payout.status, amount=payout.amount)

    @provider_retry
    def create_refund(self, payment_intent_id: str, reason: str,
                      idempotency_key: Optional[str] = None) -> GatewayResult:
        if reason not in self.REFUND_REASONS:
            reason = "requested_by_customer"
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                reason=reason,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise _translate(e) from e
        logger.info("refund_created", refund_id=refund.id, payment_intent_id=payment_intent_id)
        return GatewayResult(id=refund.id, status=refund.status, amount=refund.amount)

    @provider_retry
    def retrieve_account(self, account_id: str) -> AccountState:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            raise _translate(e) from e
        return AccountState(
            id=account.id,
            details_submitted=bool(account.details_submitted),
            charges_enabled=bool(account.charges_enabled),
            payouts_enabled=bool(account.payouts_enabled),
            metadata=dict(account.metadata or {}),
        )


class UnconfiguredGateway:
    """Stands in when no provider key is configured; every call fails loudly."""

    def __getattr__(self, name: str) -> Any:
        def unavailable(*args: Any, **kwargs: Any):
            raise PaymentProviderError(f"Payment provider is not configured ({name})")
        return unavailable


def verify_webhook(payload: bytes, signature: str, secret: str) -> dict[str, Any]:
    """Check a webhook signature and return the event envelope as a plain dict."""
    try:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_invalid", error=str(e))
        raise PaymentProviderError(f"Invalid webhook signature: {e}") from e
    except ValueError as e:
        raise PaymentProviderError(f"Invalid webhook payload: {e}") from e
    return event.to_dict()
