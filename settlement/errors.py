"""
Error taxonomy for the settlement engine.

Every error carries a machine-readable ``code``. Resource-limit errors also
carry the current value, the limit, and a suggested action so the web layer
can render an upgrade prompt.
"""

from typing import Any, Optional


class SettlementError(Exception):
    code = "settlement_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


# Validation

class ValidationFailure(SettlementError):
    code = "validation_error"


class InvalidAmount(ValidationFailure):
    code = "invalid_amount"


class InvalidTierSplit(ValidationFailure):
    code = "invalid_tier_split"


class InvalidPoolContribution(ValidationFailure):
    code = "invalid_pool_contribution"


class InvalidTransaction(ValidationFailure):
    code = "invalid_transaction"


# State conflicts

class InvalidTransition(SettlementError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, required: Any, message: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.required = required
        if message is None:
            message = f"Cannot transition {entity} in '{current}' state; requires {required}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"current": self.current, "required": self.required})
        return data


class AlreadyCompleted(InvalidTransition):
    code = "already_completed"


class TerminalStateConflict(InvalidTransition):
    code = "terminal_state_conflict"


class NotRefundable(InvalidTransition):
    code = "not_refundable"


class LicenseNotPending(InvalidTransition):
    code = "license_not_pending"


# Lookups

class NotFound(SettlementError):
    code = "not_found"


class LicenseNotFound(NotFound):
    code = "license_not_found"


class TransactionNotFound(NotFound):
    code = "transaction_not_found"


class BusinessNotFound(NotFound):
    code = "business_not_found"


class MediaNotFound(NotFound):
    code = "media_not_found"


# Permissions

class PermissionDenied(SettlementError):
    code = "permission_denied"


class NotLicensee(PermissionDenied):
    code = "not_licensee"


class NotLicensor(PermissionDenied):
    code = "not_licensor"


class NotLicenseParty(PermissionDenied):
    code = "not_license_party"


# Resource limits

class ResourceLimitError(SettlementError):
    code = "resource_limit"

    def __init__(self, message: str, current: Any = None, limit: Any = None,
                 suggested_action: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.limit = limit
        self.suggested_action = suggested_action

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "current": None if self.current is None else str(self.current),
            "limit": None if self.limit is None else str(self.limit),
            "suggested_action": self.suggested_action,
        })
        return data


class BelowMinimumPayout(ResourceLimitError):
    code = "below_minimum"


class InsufficientBalance(ResourceLimitError):
    code = "insufficient_balance"


class NoConnectAccount(ResourceLimitError):
    code = "no_connect_account"


class ActiveLicenseLimitReached(ResourceLimitError):
    code = "active_license_limit"


class UploadLimitReached(ResourceLimitError):
    code = "upload_limit"


class DownloadLimitReached(ResourceLimitError):
    code = "download_limit"


# Integrity

class DistributionMismatch(SettlementError):
    """Pool member shares drifted from the pool creator share. Indicates a bug."""
    code = "distribution_mismatch"


# Reconciliation

class EventDropped(SettlementError):
    """Raised by reconciler handlers for events that can never be applied."""
    code = "event_dropped"


# Payment provider

class PaymentProviderError(SettlementError):
    code = "payment_provider_error"

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient
