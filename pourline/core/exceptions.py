"""Typed errors for the order lifecycle engine.

Every failure a caller can act on carries an ErrorCode so clients render
distinct messaging without parsing text. The API layer maps codes to HTTP
status via ``OrderError.status_code``.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Stable, client-facing error codes."""

    # Request validation
    INVALID_QUANTITY = "INVALID_QUANTITY"

    # Reservation preconditions
    TAP_NOT_FOUND = "TAP_NOT_FOUND"
    TAP_INACTIVE = "TAP_INACTIVE"
    TEMP_NOT_OK = "TEMP_NOT_OK"
    VENUE_NOT_FOUND = "VENUE_NOT_FOUND"
    VENUE_INACTIVE = "VENUE_INACTIVE"
    MOBILE_ORDERING_DISABLED = "MOBILE_ORDERING_DISABLED"
    BUYER_NOT_FOUND = "BUYER_NOT_FOUND"
    AGE_NOT_VERIFIED = "AGE_NOT_VERIFIED"
    NO_PRICING = "NO_PRICING"
    PENDING_ORDER_EXISTS = "PENDING_ORDER_EXISTS"

    # Race-lost (expected under concurrency)
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"

    # Order lookups and lifecycle
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    NOT_ORDER_OWNER = "NOT_ORDER_OWNER"
    INVALID_ORDER_STATUS = "INVALID_ORDER_STATUS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_REFUNDED = "ORDER_REFUNDED"

    # Redemption tokens (integrity errors are adversarial input)
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    QR_EXPIRED = "QR_EXPIRED"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    PAYLOAD_MISMATCH = "PAYLOAD_MISMATCH"

    # Dispensing
    WRONG_TAP = "WRONG_TAP"
    TAP_MISMATCH = "TAP_MISMATCH"

    # Abuse guards and external dependencies
    RATE_LIMITED = "RATE_LIMITED"
    PAYMENT_PROCESSOR_ERROR = "PAYMENT_PROCESSOR_ERROR"


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_QUANTITY: 400,
    ErrorCode.TAP_NOT_FOUND: 404,
    ErrorCode.VENUE_NOT_FOUND: 404,
    ErrorCode.BUYER_NOT_FOUND: 404,
    ErrorCode.NO_PRICING: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.AGE_NOT_VERIFIED: 403,
    ErrorCode.NOT_ORDER_OWNER: 403,
    ErrorCode.TOKEN_INVALID: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.TOKEN_MISMATCH: 401,
    ErrorCode.PAYLOAD_MISMATCH: 401,
    ErrorCode.QR_EXPIRED: 410,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.PAYMENT_PROCESSOR_ERROR: 502,
}


class PourlineError(Exception):
    """Base exception for the Pourline engine."""

    pass


class OrderError(PourlineError):
    """A typed, caller-actionable failure.

    Extra keyword context (e.g. ``correct_tap_number``) is kept on the error
    and rendered alongside the code by the API layer.
    """

    def __init__(self, code: ErrorCode, message: str, **context):
        self.code = code
        self.message = message
        self.context = context
        super().__init__(f"{code.value}: {message}")

    @property
    def status_code(self) -> int:
        return _STATUS_BY_CODE.get(self.code, 409)


class InvalidTransitionError(OrderError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot move order from '{current}' to '{target}'",
            current_status=current,
            target_status=target,
        )


class RateLimitedError(OrderError):
    """Raised when a principal exceeds its fixed-window budget."""

    def __init__(self, operation: str, retry_after_seconds: int):
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            ErrorCode.RATE_LIMITED,
            "Too many requests. Please try again shortly.",
            retry_after_seconds=retry_after_seconds,
        )


class PaymentProcessorError(OrderError):
    """Raised when the payment processor fails after retries."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__(
            ErrorCode.PAYMENT_PROCESSOR_ERROR,
            f"Payment processor error during {operation}",
            processor_detail=detail,
        )


class WebhookVerificationError(PourlineError):
    """Raised when an inbound webhook fails signature or payload checks."""

    pass


class DuplicateEventError(PourlineError):
    """Raised when an external webhook event id has already been claimed."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Webhook event '{event_id}' already processed")
