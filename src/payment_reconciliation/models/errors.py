"""Standard error codes and exceptions for payment reconciliation.

Synchronous operations (payment creation, modification, subscription
mutations) raise ReconciliationError subclasses to their caller. Webhook
processors never raise for subscription events; they return a
ReconciliationFailure inside their EventProcessingResult instead.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .enums import ProcessingResult


class ErrorCode(str, Enum):
    """Standard error codes."""

    UNSUPPORTED_EVENT = "ERR_EVENT_001"
    MISSING_LINKAGE = "ERR_EVENT_002"
    RECONCILIATION_FAILED = "ERR_EVENT_003"

    INVALID_OPERATION = "ERR_MODIFY_001"
    INVALID_JSON_INPUT = "ERR_MODIFY_002"

    STRIPE_API_ERROR = "ERR_STRIPE_001"
    METADATA_SYNC_FAILED = "ERR_STRIPE_002"

    SUBSCRIPTION_INVALID = "ERR_SUBSCRIPTION_001"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.UNSUPPORTED_EVENT: "Unsupported event",
    ErrorCode.MISSING_LINKAGE: "Event cannot be linked to a platform payment",
    ErrorCode.RECONCILIATION_FAILED: "Reconciliation of the event did not complete",
    ErrorCode.INVALID_OPERATION: "Operation not supported",
    ErrorCode.INVALID_JSON_INPUT: "Request body does not contain valid JSON.",
    ErrorCode.STRIPE_API_ERROR: "Stripe API error occurred",
    ErrorCode.METADATA_SYNC_FAILED: "Stripe metadata link could not be updated",
    ErrorCode.SUBSCRIPTION_INVALID: "Subscription request is not valid",
}

ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.UNSUPPORTED_EVENT: 400,
    ErrorCode.MISSING_LINKAGE: 404,
    ErrorCode.RECONCILIATION_FAILED: 500,
    ErrorCode.INVALID_OPERATION: 400,
    ErrorCode.INVALID_JSON_INPUT: 400,
    ErrorCode.STRIPE_API_ERROR: 502,
    ErrorCode.METADATA_SYNC_FAILED: 502,
    ErrorCode.SUBSCRIPTION_INVALID: 400,
}


class ReconciliationError(Exception):
    """Base exception for reconciliation operations.

    Carries an ErrorCode, a message and an HTTP status hint so the
    transport layer can answer uniformly.
    """

    code: ErrorCode = ErrorCode.RECONCILIATION_FAILED

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[dict[str, str]] = None,
        http_status: Optional[int] = None,
    ) -> None:
        self.message = message or ERROR_MESSAGES[self.code]
        self.details = details or {}
        self.http_status = http_status or ERROR_HTTP_STATUS[self.code]
        super().__init__(self.message)

    def to_failure(self) -> "ReconciliationFailure":
        """Convert this exception to a ReconciliationFailure value."""
        return ReconciliationFailure(
            error_code=self.code,
            message=self.message,
            details=self.details,
        )


class UnsupportedEventError(ReconciliationError):
    """Raised when an event type has no mapping."""

    code = ErrorCode.UNSUPPORTED_EVENT

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(
            f"Unsupported event {event_type}",
            details={"event_type": event_type},
        )


class InvalidOperationError(ReconciliationError):
    """Raised when an operation is not supported in the current context."""

    code = ErrorCode.INVALID_OPERATION


class InvalidJsonInputError(ReconciliationError):
    """Raised when a modification request cannot be interpreted."""

    code = ErrorCode.INVALID_JSON_INPUT


class MissingLinkageError(ReconciliationError):
    """Raised when a webhook cannot be resolved to a platform Payment."""

    code = ErrorCode.MISSING_LINKAGE


class SubscriptionValidationError(ReconciliationError):
    """Raised when a cart or Stripe object cannot back a subscription."""

    code = ErrorCode.SUBSCRIPTION_INVALID


class PSPApiError(ReconciliationError):
    """Wraps a Stripe error response.

    Attributes:
        stripe_error_code: Stripe-specific error code (e.g. card_declined).
        request_id: Stripe request id, when available.
    """

    code = ErrorCode.STRIPE_API_ERROR

    def __init__(
        self,
        message: str,
        *,
        stripe_error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> None:
        self.stripe_error_code = stripe_error_code
        self.request_id = request_id
        details = {}
        if stripe_error_code:
            details["stripe_error_code"] = stripe_error_code
        if request_id:
            details["request_id"] = request_id
        super().__init__(message, details=details, http_status=http_status)

    @property
    def retryable(self) -> bool:
        return is_stripe_error_retryable(self.stripe_error_code)

    @property
    def user_message(self) -> str:
        return get_user_friendly_stripe_message(self.stripe_error_code)


class MetadataSyncError(PSPApiError):
    """Raised when the metadata link on a Stripe object could not be written."""

    code = ErrorCode.METADATA_SYNC_FAILED


class ReconciliationFailure(BaseModel):
    """Why a webhook event was acknowledged without completing reconciliation."""

    error_code: ErrorCode
    message: str
    details: dict[str, str] = Field(default_factory=dict)


class EventProcessingResult(BaseModel):
    """Outcome of processing one webhook event."""

    event_id: str
    event_type: str
    result: ProcessingResult
    payment_id: Optional[str] = None
    failure: Optional[ReconciliationFailure] = None

    @classmethod
    def success(cls, event_id: str, event_type: str, payment_id: Optional[str] = None) -> "EventProcessingResult":
        return cls(
            event_id=event_id,
            event_type=event_type,
            result=ProcessingResult.SUCCESS,
            payment_id=payment_id,
        )

    @classmethod
    def skipped(cls, event_id: str, event_type: str, reason: str) -> "EventProcessingResult":
        return cls(
            event_id=event_id,
            event_type=event_type,
            result=ProcessingResult.SKIPPED,
            failure=ReconciliationFailure(
                error_code=ErrorCode.RECONCILIATION_FAILED,
                message=reason,
            ),
        )

    @classmethod
    def from_exception(cls, event_id: str, event_type: str, exc: Exception) -> "EventProcessingResult":
        """Build an error result from any exception raised while processing."""
        if isinstance(exc, ReconciliationError):
            failure = exc.to_failure()
        else:
            failure = ReconciliationFailure(
                error_code=ErrorCode.RECONCILIATION_FAILED,
                message=str(exc) or exc.__class__.__name__,
                details={"exception": exc.__class__.__name__},
            )
        return cls(
            event_id=event_id,
            event_type=event_type,
            result=ProcessingResult.ERROR,
            failure=failure,
        )


# Stripe error code to user-friendly message mapping
STRIPE_ERROR_MESSAGES: dict[str, str] = {
    "card_declined": "Your card was declined. Please try a different card.",
    "expired_card": "Your card has expired. Please use a different card.",
    "insufficient_funds": "Your card has insufficient funds. Please try a different card.",
    "incorrect_cvc": "The security code (CVC) is incorrect. Please check and try again.",
    "processing_error": "A processing error occurred. Please try again.",
    "rate_limit": "Too many requests. Please wait a moment and try again.",
    "charge_already_captured": "The payment has already been captured.",
    "charge_already_refunded": "The payment has already been refunded.",
    "payment_intent_unexpected_state": "The payment is not in a state that allows this operation.",
    "resource_missing": "The payment could not be found at the payment provider.",
}

# Stripe error codes that indicate a retry may succeed
STRIPE_RETRYABLE_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
}


def get_user_friendly_stripe_message(
    stripe_error_code: Optional[str],
    default_message: str = "Payment could not be processed. Please try again.",
) -> str:
    """Get a user-friendly message for a Stripe error code.

    Args:
        stripe_error_code: The Stripe error code (e.g., 'card_declined').
        default_message: Message to use if error code is unknown.

    Returns:
        User-friendly error message.
    """
    if stripe_error_code and stripe_error_code in STRIPE_ERROR_MESSAGES:
        return STRIPE_ERROR_MESSAGES[stripe_error_code]
    return default_message


def is_stripe_error_retryable(stripe_error_code: Optional[str]) -> bool:
    """Check if a Stripe error is likely transient and retryable."""
    return stripe_error_code in STRIPE_RETRYABLE_ERRORS if stripe_error_code else False
