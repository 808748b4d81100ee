"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"

    # Webhook errors (2xxx)
    WEBHOOK_MISSING_HEADERS = "ERR_2001"
    WEBHOOK_INVALID_SIGNATURE = "ERR_2002"
    WEBHOOK_SECRET_NOT_CONFIGURED = "ERR_2003"
    WEBHOOK_INVALID_PAYLOAD = "ERR_2004"

    # Event ledger errors (3xxx)
    EVENT_KEY_DERIVATION = "ERR_3001"
    LEDGER_UNAVAILABLE = "ERR_3002"
    EVENT_NOT_FOUND = "ERR_3003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class EventRecordNotFoundError(NotFoundException):
    """Raised when an event key has no ledger record"""

    def __init__(self, event_key: str):
        super().__init__(
            resource="Event record",
            identifier=event_key,
            error_code=ErrorCode.EVENT_NOT_FOUND,
        )


class WebhookException(AppException):
    """Base exception for inbound webhook errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        provider: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["provider"] = provider


class MissingWebhookHeadersError(WebhookException):
    """Raised when required webhook headers are absent"""

    def __init__(self, provider: str, missing: list[str]):
        super().__init__(
            message="Missing required headers",
            error_code=ErrorCode.WEBHOOK_MISSING_HEADERS,
            provider=provider,
            status_code=401,
            details={"missing": missing}
        )


class InvalidSignatureError(WebhookException):
    """Raised when the webhook signature does not match the body"""

    def __init__(self, provider: str, status_code: int = 401):
        super().__init__(
            message="Invalid signature",
            error_code=ErrorCode.WEBHOOK_INVALID_SIGNATURE,
            provider=provider,
            status_code=status_code
        )


class InvalidWebhookPayloadError(WebhookException):
    """Raised when a payload needed for routing cannot be parsed"""

    def __init__(self, provider: str, reason: str):
        super().__init__(
            message=f"Invalid webhook payload: {reason}",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            provider=provider,
            status_code=400
        )


class WebhookSecretNotConfiguredError(WebhookException):
    """Raised when the shared secret for a provider is not configured"""

    def __init__(self, provider: str, setting_name: str):
        super().__init__(
            message="Server configuration error",
            error_code=ErrorCode.WEBHOOK_SECRET_NOT_CONFIGURED,
            provider=provider,
            status_code=500,
            details={"setting": setting_name}
        )


class EventKeyDerivationError(AppException):
    """Raised when an event key cannot be derived (caller bug, never a runtime condition)"""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.EVENT_KEY_DERIVATION,
            status_code=400,
            details={"field": field} if field else None
        )


class LedgerError(AppException):
    """Raised by ledger adapters when the underlying storage fails"""

    def __init__(
        self,
        operation: str,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=f"Event ledger {operation} failed: {message}",
            error_code=ErrorCode.LEDGER_UNAVAILABLE,
            status_code=503,
            details=details
        )
        self.details["operation"] = operation
