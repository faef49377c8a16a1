"""
Shared error handling for the Rewards Policy Engine.

Per-policy errors (MalformedConditionError, InvalidActionError) are raised
by the engine components and isolated by the orchestrator. Infrastructure
errors (RegistryUnavailableError, EvaluationTimeoutError) reach the caller.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RewardsException(Exception):
    """Base exception for rewards services."""

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


class ValidationError(RewardsException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class PolicyValidationError(RewardsException):
    """A policy definition was rejected at load time."""

    def __init__(self, message: str = "Invalid policy definition", details: Optional[Dict[str, Any]] = None):
        super().__init__("POLICY_VALIDATION_ERROR", message, details)


class MalformedConditionError(RewardsException):
    """A condition cannot be evaluated against the context's value types."""

    def __init__(self, message: str = "Malformed condition", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_CONDITION", message, details)


class InvalidActionError(RewardsException):
    """An action produced a negative or otherwise invalid contribution."""

    def __init__(self, message: str = "Invalid action", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ACTION", message, details)


class RegistryUnavailableError(RewardsException):
    """The policy source is unreachable and no usable cache exists."""

    status_code = 503

    def __init__(self, message: str = "Policy registry unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("REGISTRY_UNAVAILABLE", message, details)


class EvaluationTimeoutError(RewardsException):
    """The caller-supplied deadline passed before evaluation finished."""

    status_code = 504

    def __init__(self, message: str = "Evaluation deadline exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("EVALUATION_TIMEOUT", message, details)


class ExternalServiceError(RewardsException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
