"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class ConfigurationError(ValidationError):
    """Mail integration is missing required configuration"""
    error_code = "CONFIGURATION_ERROR"


# Authentication Errors
class NotAuthenticatedError(DomainError):
    """No usable mail credential (missing refresh token or refresh rejected)"""
    error_code = "NOT_AUTHENTICATED"
    http_status = 400


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class RequestNotFoundError(NotFoundError):
    """CRA request not found"""
    error_code = "REQUEST_NOT_FOUND"


class DeviceCodeSessionNotFoundError(NotFoundError):
    """No device-code session to poll"""
    error_code = "DEVICE_CODE_SESSION_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Counter contention or optimistic version mismatch, caller should retry"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class DeviceCodeError(ExternalServiceError):
    """Identity platform rejected a device-code request"""
    error_code = "DEVICE_CODE_ERROR"


class TransientDeliveryError(ExternalServiceError):
    """Mail send failed (network or HTTP error), retryable"""
    error_code = "TRANSIENT_DELIVERY_FAILURE"


class TerminalDeliveryError(ExternalServiceError):
    """Attempt budget exhausted, entry will not be retried"""
    error_code = "TERMINAL_DELIVERY_FAILURE"
