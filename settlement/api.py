import json
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from .calculators import split_all_tiers
from .config import Settings, get_settings
from .errors import (
    InvalidTransition,
    NotFound,
    PaymentProviderError,
    PermissionDenied,
    SettlementError,
)
from .gateway import StripeGateway, verify_webhook
from .models import (
    Business,
    License,
    LicenseRequest,
    PaymentInitiation,
    PayoutReceipt,
    PayoutRequest,
    RefundReceipt,
    RefundRequest,
    RejectLicenseRequest,
    RenewLicenseRequest,
    RevenueSummary,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from .service import SettlementService

logger = structlog.get_logger(__name__)


def http_error(error: SettlementError) -> HTTPException:
    if isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, PermissionDenied):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, InvalidTransition):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, PaymentProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=error.to_dict())


def build_service(settings: Settings) -> SettlementService:
    gateway = None
    if settings.stripe_secret_key:
        gateway = StripeGateway(settings.stripe_secret_key, settings.stripe_api_version)
    return SettlementService(gateway=gateway, minimum_payout=settings.minimum_payout)


def create_app(service: Optional[SettlementService] = None,
               settings: Optional[Settings] = None,
               root_path: str = "") -> FastAPI:
    settings = settings or get_settings()
    service = service or build_service(settings)

    app = FastAPI(
        title="Media Settlement API",
        description="Revenue settlement and transaction ledger for media licensing",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "media-settlement"}

    # Webhooks

    @app.post("/webhooks/stripe", tags=["Webhooks"])
    async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
        payload = await request.body()
        try:
            if settings.stripe_webhook_secret:
                if not stripe_signature:
                    raise PaymentProviderError("Missing Stripe-Signature header")
                event = verify_webhook(payload, stripe_signature, settings.stripe_webhook_secret)
            else:
                event = json.loads(payload)
        except (PaymentProviderError, ValueError) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {e}")
        if not isinstance(event, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook Error: expected an object")

        try:
            await run_in_threadpool(service.settle_payment_event, event)
        except SettlementError as e:
            logger.error("webhook_handler_failed", event_id=event.get("id"), error=str(e))
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                                detail={"error": "webhook_handler_failed", "message": str(e)})
        return {"received": True}

    # Licenses

    @app.post("/licenses", response_model=License, status_code=status.HTTP_201_CREATED, tags=["Licenses"])
    def request_license(request: LicenseRequest, x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.request_license(request.media_id, x_business_id,
                                                     request.license_type, request.terms)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/expire", tags=["Licenses"])
    def expire_licenses():
        return {"expired": service.lifecycle.expire_due()}

    @app.post("/licenses/{license_id}/payments", response_model=PaymentInitiation,
              status_code=status.HTTP_201_CREATED, tags=["Licenses"])
    def initiate_license_payment(license_id: UUID, x_business_id: UUID = Header(...)) -> PaymentInitiation:
        try:
            return service.initiate_license_payment(license_id, x_business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/{license_id}/approve", response_model=License, tags=["Licenses"])
    def approve_license(license_id: UUID, x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.approve(license_id, x_business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/{license_id}/activate", response_model=License, tags=["Licenses"])
    def activate_license(license_id: UUID, x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.activate(license_id, x_business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/{license_id}/reject", response_model=License, tags=["Licenses"])
    def reject_license(license_id: UUID, request: RejectLicenseRequest,
                       x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.reject(license_id, x_business_id, request.reason)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/{license_id}/cancel", response_model=License, tags=["Licenses"])
    def cancel_license(license_id: UUID, x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.cancel(license_id, x_business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/licenses/{license_id}/renew", response_model=License, tags=["Licenses"])
    def renew_license(license_id: UUID, request: RenewLicenseRequest,
                      x_business_id: UUID = Header(...)) -> License:
        try:
            return service.lifecycle.renew(license_id, x_business_id, request.duration)
        except SettlementError as e:
            raise http_error(e)

    # Money movement

    @app.post("/payouts", response_model=PayoutReceipt, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
    def request_payout(request: PayoutRequest, x_business_id: UUID = Header(...)) -> PayoutReceipt:
        try:
            return service.request_payout(x_business_id, request.amount)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/transactions/{transaction_id}/refund", response_model=RefundReceipt, tags=["Transactions"])
    def refund_transaction(transaction_id: UUID, request: RefundRequest,
                           x_business_id: UUID = Header(...)) -> RefundReceipt:
        try:
            return service.refund_transaction(transaction_id, request.reason, actor_id=x_business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.get("/transactions/{transaction_id}", response_model=TransactionRecord, tags=["Transactions"])
    def get_transaction(transaction_id: UUID) -> TransactionRecord:
        try:
            return service.get_transaction(transaction_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/reserves/release", tags=["Transactions"])
    def release_reserves():
        return {"released": service.release_reserves()}

    # Businesses

    @app.get("/businesses/{business_id}/transactions", response_model=list[TransactionRecord],
             tags=["Businesses"])
    def list_business_transactions(business_id: UUID,
                                   kind: Optional[TransactionKind] = None,
                                   status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
                                   ) -> list[TransactionRecord]:
        try:
            return service.transactions_for_business(business_id, kind, status_filter)
        except SettlementError as e:
            raise http_error(e)

    @app.get("/businesses/{business_id}/revenue", response_model=RevenueSummary, tags=["Businesses"])
    def get_revenue_summary(business_id: UUID) -> RevenueSummary:
        try:
            return service.revenue_summary(business_id)
        except SettlementError as e:
            raise http_error(e)

    @app.post("/businesses/{business_id}/uploads", response_model=Business, tags=["Businesses"])
    def record_upload(business_id: UUID) -> Business:
        try:
            return service.record_upload(business_id)
        except SettlementError as e:
            raise http_error(e)

    # Tiers

    @app.get("/tiers", tags=["Tiers"])
    def list_tiers():
        return {
            tier.name: {
                "display_name": tier.display_name,
                "price_per_month": str(tier.price_per_month),
                "revenue_split": {
                    "creator": str(tier.revenue_split.creator),
                    "platform": str(tier.revenue_split.platform),
                },
                "limits": {
                    "upload": tier.limits.upload,
                    "download_per_month": tier.limits.download_per_month,
                    "active_licenses": tier.limits.active_licenses,
                },
                "features": sorted(tier.features),
            }
            for tier in service.catalog
        }

    @app.get("/tiers/splits", tags=["Tiers"])
    def compare_tier_splits(amount: Decimal = Query(..., ge=0)):
        try:
            splits = split_all_tiers(amount, service.catalog)
        except SettlementError as e:
            raise http_error(e)
        return {
            name: {
                "gross_amount": str(s.gross_amount),
                "processor_fee": str(s.processor_fee),
                "net_amount": str(s.net_amount),
                "creator_share": str(s.creator_share),
                "platform_share": str(s.platform_share),
            }
            for name, s in splits.items()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from .logging_config import setup_logging

    setup_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
