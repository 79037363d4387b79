"""
Shared error handling for the Shopfront Access Layer.

Every exception carries the HTTP status it maps to, so pipeline stages and
route handlers can raise and let the service exception handlers render the
response body.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    code: str
    request_id: Optional[str] = None
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            request_id=request_id,
            details=self.details
        )


class AuthenticationError(AccessLayerException):
    """Missing or invalid identity. Retryable after re-authenticating."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class SignatureError(AccessLayerException):
    """Missing, stale or forged request signature. Retryable after re-signing."""

    status_code = 401

    def __init__(self, message: str = "Invalid request signature", details: Optional[Dict[str, Any]] = None):
        super().__init__("SIGNATURE_ERROR", message, details)


class AuthorizationError(AccessLayerException):
    """Caller is known but not permitted to perform the action."""

    status_code = 403

    def __init__(self, message: str = "Access Denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class IPNotAllowedError(AuthorizationError):
    """Client address is not on the whitelist for a protected path."""

    def __init__(self, message: str = "Access denied. Your IP is not whitelisted.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "IP_NOT_ALLOWED"


class RateLimitError(AccessLayerException):
    """Rate limiting errors. Recoverable by backing off."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConfigurationError(AccessLayerException):
    """A route or component is wired incorrectly. Never a client problem."""

    status_code = 500

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)
