"""Error handling module for clawhub.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Usage:
    from clawhub.core.errors import InstanceNotFoundError, InvalidStateError

    # Raise with default message
    raise InstanceNotFoundError()

    # Raise with custom message
    raise InvalidStateError("Instance is not stopped")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class ClawHubError(Exception):
    """Base exception for clawhub.

    All clawhub specific exceptions should inherit from this class.
    This enables centralized exception handling in the route layer.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class ConfigurationError(ClawHubError):
    """500 - Missing or invalid process configuration. Never retried."""

    def __init__(self, message: str = "Invalid configuration") -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, message, 500)


class InstanceNotFoundError(ClawHubError):
    """404 Not Found - Instance not found."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class InvalidStateError(ClawHubError):
    """409 Conflict - Invalid state for the requested operation."""

    def __init__(self, message: str = "Invalid state for this operation") -> None:
        super().__init__(ErrorCode.INVALID_STATE, message, 409)


class ProviderError(ClawHubError):
    """502 Bad Gateway - Compute provider call failed."""

    def __init__(
        self,
        message: str = "Provider error",
        code: ErrorCode = ErrorCode.PROVIDER_ERROR,
        status_code: int = 502,
    ) -> None:
        super().__init__(code, message, status_code)


class ProviderTimeoutError(ProviderError):
    """504 Gateway Timeout - Provider call exceeded its deadline.

    Recoverable: the compute unit may still be healthy.
    """

    def __init__(self, message: str = "Provider call timed out") -> None:
        super().__init__(message, ErrorCode.PROVIDER_TIMEOUT, 504)


class FlyApiError(ProviderError):
    """Non-2xx response from the Fly.io Machines API."""

    def __init__(self, status: int, detail: str) -> None:
        self.status = status
        self.detail = detail
        super().__init__(f"Fly.io API error: {status} {detail}")


class DockerCommandError(ProviderError):
    """Docker CLI exited non-zero or could not be executed."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Docker command failed: {detail}")


def describe_error(exc: BaseException, fallback: str) -> str:
    """Extract a user-friendly message from a caught error."""
    if isinstance(exc, FlyApiError):
        if exc.status == 404:
            return "Fly.io resource not found"
        if exc.status == 422:
            return f"Invalid configuration: {exc.detail}"
        if exc.status == 429:
            return "Fly.io rate limit exceeded, please try again shortly"
        return f"Fly.io error: {exc.detail}"
    if isinstance(exc, ClawHubError):
        return exc.message
    return str(exc) or fallback
