"""
Shared error handling for the Membership Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import get_correlation_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    correlation_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            correlation_id=get_correlation_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class UnauthorizedError(AccessLayerException):
    """No resolvable principal or member."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None,
                 code: str = "UNAUTHORIZED"):
        super().__init__(code, message, details)


class StoreUnavailableError(UnauthorizedError):
    """Member or entitlement lookup could not complete.

    Callers treat this exactly like ``UnauthorizedError``; the distinct code
    keeps outages apart from genuine denials in logs and metrics.
    """

    def __init__(self, operation: str, message: str = "Entitlement store unavailable",
                 details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__(message, details, code="STORE_UNAVAILABLE")


class ForbiddenError(AccessLayerException):
    """Principal resolved but the requirement is unmet."""

    status_code = 403

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class ResourceNotFoundError(AccessLayerException):
    """Resource does not exist or must not be revealed."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)

