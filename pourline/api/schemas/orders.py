"""Order API Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ---------- Orders ----------


class CreateOrderRequest(BaseModel):
    tap_id: UUID
    quantity: int = Field(default=1, strict=True)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: str
    venue_id: UUID
    tap_id: UUID
    beer_id: UUID | None = None
    quantity: int
    pour_size_oz: Decimal
    unit_price: Decimal
    total_amount: Decimal
    currency: str
    status: str
    payment_intent_id: str | None = None
    paid_at: datetime | None = None
    redeemed_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime
    created_at: datetime


class OrderEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    metadata: dict = Field(validation_alias="event_metadata")
    created_at: datetime


# ---------- Redemption ----------


class VerifyTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class StartPourRequest(BaseModel):
    order_id: UUID
    tap_id: UUID
    token: str = Field(..., min_length=1)


class CompletePourRequest(BaseModel):
    order_id: UUID
    tap_id: UUID
    actual_oz: Decimal = Field(..., ge=0)


# ---------- Webhooks ----------


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str
