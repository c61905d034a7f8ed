"""
Shared error handling for ClawCloud services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class ClawCloudException(Exception):
    """Base exception for ClawCloud services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(ClawCloudException):
    """Invalid input, rejected before any mutation."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AuthorizationError(ClawCloudException):
    """Caller is not allowed to perform the operation."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(ClawCloudException):
    """Entitlement or record does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class InvalidStateError(ClawCloudException):
    """Operation is not permitted from the entitlement's current state."""

    status_code = 409

    def __init__(self, message: str = "Invalid state transition", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_STATE", message, details)


class AlreadyProvisionedError(InvalidStateError):
    """A provisioning write-back was already accepted for this entitlement."""

    def __init__(self, message: str = "Entitlement already provisioned", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "ALREADY_PROVISIONED"


class GracePeriodExpiredError(InvalidStateError):
    """Renewal attempted after expiry plus grace period."""

    def __init__(self, message: str = "Grace period expired", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "GRACE_PERIOD_EXPIRED"


class PaymentError(ClawCloudException):
    """Payment capture failed (insufficient balance or allowance)."""

    status_code = 402

    def __init__(self, message: str = "Payment failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PAYMENT_FAILED", message, details)


class PausedError(ClawCloudException):
    """Ledger is paused; mutating operations are rejected."""

    status_code = 503

    def __init__(self, message: str = "Ledger is paused", details: Optional[Dict[str, Any]] = None):
        super().__init__("LEDGER_PAUSED", message, details)


class ReentrancyError(ClawCloudException):
    """A mutating call for the same entitlement is already in progress."""

    status_code = 409

    def __init__(self, message: str = "Reentrant call rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("REENTRANT_CALL", message, details)


class ExternalServiceError(ClawCloudException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class LedgerRejectedError(ClawCloudException):
    """The ledger rejected a write; carries the ledger's own error code."""

    status_code = 409

    def __init__(self, ledger_code: str, message: str = "Ledger rejected the call", details: Optional[Dict[str, Any]] = None):
        super().__init__("LEDGER_REJECTED", message, details)
        self.ledger_code = ledger_code


class CloudProviderError(ExternalServiceError):
    """Cloud provider call failed or timed out."""

    def __init__(self, provider: str, message: str = "Cloud provider error", details: Optional[Dict[str, Any]] = None):
        super().__init__(provider, message, details)
        self.code = "CLOUD_PROVIDER_ERROR"
        self.provider = provider


class ProvisioningTimeoutError(ClawCloudException):
    """No routable address appeared within the polling bound."""

    status_code = 504

    def __init__(self, message: str = "Timed out waiting for network address", details: Optional[Dict[str, Any]] = None):
        super().__init__("PROVISIONING_TIMEOUT", message, details)


class LockNotAcquiredError(ClawCloudException):
    """Another driver holds the exclusivity token for this entitlement."""

    status_code = 409

    def __init__(self, message: str = "Exclusivity token not acquired", details: Optional[Dict[str, Any]] = None):
        super().__init__("LOCK_NOT_ACQUIRED", message, details)
