"""
Shared error handling for the Door Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Door Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AccessLayerException):
    """Requested record does not exist for the tenant."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConfigurationError(AccessLayerException):
    """Door or rule configuration is inconsistent."""

    status_code = 409

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIG_ERROR", message, details)


class CollaboratorUnavailableError(AccessLayerException):
    """A rule store, user directory or audit sink call failed or timed out."""

    status_code = 503

    def __init__(self, collaborator: str, message: str = "Collaborator unavailable",
                 details: Optional[Dict[str, Any]] = None):
        self.collaborator = collaborator
        super().__init__("COLLABORATOR_UNAVAILABLE", f"{collaborator}: {message}", details)


class AuditWriteError(CollaboratorUnavailableError):
    """Access log entry could not be persisted."""

    def __init__(self, message: str = "Audit write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("audit_sink", message, details)
        self.code = "AUDIT_WRITE_ERROR"
