"""
CourierHub Exception Hierarchy

Structured exception classes for the fulfillment core. All exceptions include
code, message and details for audit trail and debugging, plus the HTTP status
the API layer maps them to.

Exception Hierarchy:
    CourierHubError
    ├── ValidationError                     400
    │   └── CarrierNotServiceableError      422
    ├── StateConflictError                  409
    │   ├── WalletVersionConflictError
    │   ├── InsufficientBalanceError
    │   ├── QuoteSessionConsumedError
    │   └── QuoteExpiredError               410
    ├── AccessDeniedError                   403
    ├── NotFoundError                       404
    │   └── QuoteSessionNotFoundError
    └── DownstreamError                     502
        ├── CarrierAPIError                 502 / 503 (transient)
        │   └── CarrierNotCancellableError  409
        └── QuoteProvidersUnavailableError  503
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class CourierHubError(Exception):
    """
    Base exception for all CourierHub errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "COURIERHUB_ERROR"
    default_severity: str = "P2"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(CourierHubError):
    """Bad input: invalid pincode, malformed payload, missing currency mirror."""
    default_code = "VALIDATION_FAILED"
    default_severity = "P3"
    status_code = 400


class CarrierNotServiceableError(ValidationError):
    """No serviceable carrier/service for the requested corridor."""
    default_code = "NOT_SERVICEABLE"
    status_code = 422

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        origin_pincode: Optional[str] = None,
        destination_pincode: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "provider": provider,
            "origin_pincode": origin_pincode,
            "destination_pincode": destination_pincode,
        })
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# STATE CONFLICTS
# =============================================================================

class StateConflictError(CourierHubError):
    """Operation conflicts with the current state of a record."""
    default_code = "STATE_CONFLICT"
    default_severity = "P2"
    status_code = 409


class WalletVersionConflictError(StateConflictError):
    """A concurrent wallet mutation changed the company version."""
    default_code = "WALLET_VERSION_CONFLICT"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        company_id: Optional[int] = None,
        expected_version: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "company_id": company_id,
            "expected_version": expected_version,
        })
        super().__init__(message, details=details, **kwargs)


class InsufficientBalanceError(StateConflictError):
    """Wallet balance cannot cover the debit."""
    default_code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        message: str,
        required: Optional[float] = None,
        available: Optional[float] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "required": required,
            "available": available,
        })
        super().__init__(message, details=details, **kwargs)


class QuoteSessionConsumedError(StateConflictError):
    """The quote session was already used for a booking."""
    default_code = "QUOTE_SESSION_CONSUMED"


class QuoteExpiredError(StateConflictError):
    """
    The quote session expired. Callers must refresh rates rather than retry.
    """
    default_code = "QUOTE_EXPIRED"
    default_severity = "P3"
    status_code = 410

    def __init__(self, message: str, session_id: Optional[str] = None, expired_at: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({
            "session_id": session_id,
            "expired_at": expired_at,
        })
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# ACCESS / NOT FOUND
# =============================================================================

class AccessDeniedError(CourierHubError):
    """Access tier (KYC) insufficient for the operation."""
    default_code = "KYC_TIER_INSUFFICIENT"
    default_severity = "P3"
    status_code = 403


class NotFoundError(CourierHubError):
    """Shipment, order or other record absent."""
    default_code = "NOT_FOUND"
    default_severity = "P3"
    status_code = 404


class QuoteSessionNotFoundError(NotFoundError):
    default_code = "QUOTE_SESSION_NOT_FOUND"


# =============================================================================
# DOWNSTREAM PROVIDERS
# =============================================================================

class DownstreamError(CourierHubError):
    """Base exception for third-party provider failures."""
    default_code = "DOWNSTREAM_ERROR"
    default_severity = "P1"
    status_code = 502


class CarrierAPIError(DownstreamError):
    """
    Carrier API call failed.

    retryable=True for timeouts, network errors and 5xx; False for 4xx.
    """
    default_code = "CARRIER_API_ERROR"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: bool = False,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "provider": provider,
            "http_status": http_status,
            "retryable": retryable,
        })
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.http_status = http_status
        self.retryable = retryable
        if retryable:
            self.status_code = 503


class CarrierNotCancellableError(CarrierAPIError):
    """Shipment is in a terminal remote state and cannot be cancelled."""
    default_code = "NOT_CANCELLABLE"
    default_severity = "P3"
    status_code = 409


class QuoteProvidersUnavailableError(DownstreamError):
    """Every carrier provider failed while generating quotes."""
    default_code = "PROVIDERS_UNAVAILABLE"
    status_code = 503
