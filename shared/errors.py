"""
Shared error handling for the tiered credential broker.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = {}


class BrokerException(Exception):
    """Base exception for broker services."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=self.details
        )


class ValidationError(BrokerException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class QuotaExceeded(BrokerException):
    """The client has no admission left in the current hourly window."""

    status_code = 429

    def __init__(self, message: str = "Hourly limit reached", details: Optional[Dict[str, Any]] = None):
        super().__init__("QUOTA_EXCEEDED", message, details)


class CredentialUnavailable(BrokerException):
    """No valid shared credential could be obtained for a tier."""

    status_code = 503

    def __init__(self, tier: str, message: str = "Credential unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CREDENTIAL_UNAVAILABLE", f"{tier}: {message}", {"tier": tier, **(details or {})})
        self.tier = tier


class UpstreamAuthRejected(BrokerException):
    """The upstream API refused the shared credential."""

    status_code = 401

    def __init__(self, message: str = "Upstream rejected credential", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_AUTH_REJECTED", message, details)


class UpstreamTransientError(BrokerException):
    """Network failure, timeout or 5xx from the upstream API."""

    status_code = 502
    retryable = True

    def __init__(self, message: str = "Upstream temporarily unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_TRANSIENT_ERROR", message, details)


class UpstreamRejected(BrokerException):
    """The upstream API refused the request itself (non-auth 4xx or malformed reply)."""

    status_code = 422

    def __init__(self, message: str = "Upstream rejected request", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_REJECTED", message, details)


class PersistenceError(BrokerException):
    """Storage failure or unresolved write contention."""

    status_code = 503
    retryable = True

    def __init__(self, message: str = "Persistence error", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_ERROR", message, details)
