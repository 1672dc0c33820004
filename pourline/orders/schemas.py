"""Order lifecycle enums and service result models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    READY_TO_REDEEM = "ready_to_redeem"
    REDEEMED = "redeemed"
    POURING = "pouring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


# Statuses a settled payment may legitimately find the order in
SETTLED_STATUSES = (
    OrderStatus.PAID,
    OrderStatus.READY_TO_REDEEM,
    OrderStatus.REDEEMED,
    OrderStatus.POURING,
    OrderStatus.COMPLETED,
)

# Dead-end statuses where a late payment needs manual review
CLOSED_STATUSES = (
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
    OrderStatus.REFUNDED,
)


class EventType(str, Enum):
    """Order timeline event types."""

    CREATED = "created"
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    LATE_PAYMENT_RECEIVED = "late_payment_received"
    QR_TOKEN_GENERATED = "qr_token_generated"
    REDEEMED = "redeemed"
    POUR_STARTED = "pour_started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class PaymentIntentHandle(BaseModel):
    """What the client needs to present the processor's payment sheet."""

    client_secret: str
    customer_id: str
    ephemeral_key: str
    payment_intent_id: str
    created: bool


class PaymentStatus(BaseModel):
    order_id: UUID
    status: OrderStatus
    payment_intent_status: str | None = None


class IssuedToken(BaseModel):
    order_id: UUID
    token: str
    expires_at: datetime


class Redemption(BaseModel):
    order_id: UUID
    tap_id: UUID
    tap_number: int | None = None
    quantity: int
    pour_size_oz: Decimal
    verified_by: str
    redeemed_at: datetime


class PourCommand(BaseModel):
    order_id: UUID
    tap_id: UUID
    tap_number: int
    quantity: int
    pour_size_oz: Decimal
    total_oz: Decimal


class PourResult(BaseModel):
    order_id: UUID
    expected_oz: Decimal
    actual_oz: Decimal
    variance_oz: Decimal
    completed_at: datetime


class SweepResult(BaseModel):
    expired_count: int = 0
    cancelled_count: int = 0
    restored_oz: Decimal = Decimal("0")
    refund_triggered: bool = False


class RefundSummary(BaseModel):
    refunded: int = 0
    failed: int = 0
