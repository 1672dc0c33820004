"""Buyer-facing order routes: reserve, pay, and fetch the redemption code."""

from uuid import UUID

from fastapi import APIRouter, Depends

from pourline.api.deps import (
    get_event_log,
    get_payment_orchestrator,
    get_reservation_service,
    get_token_service,
)
from pourline.api.schemas.orders import CreateOrderRequest, OrderEventResponse, OrderResponse
from pourline.core.auth import AuthenticatedBuyer, require_buyer
from pourline.core.exceptions import ErrorCode, OrderError
from pourline.db.base import get_session_factory
from pourline.orders.events import EventLog
from pourline.orders.payments import PaymentOrchestrator
from pourline.orders.reservation import ReservationService
from pourline.orders.schemas import IssuedToken, PaymentIntentHandle, PaymentStatus
from pourline.orders.tokens import RedemptionTokenService, load_order

router = APIRouter()


async def _own_order(order_id: UUID, buyer: AuthenticatedBuyer):
    async with get_session_factory()() as session:
        order = await load_order(session, order_id)
    if order is None:
        raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
    if order.buyer_id != buyer.user_id:
        raise OrderError(ErrorCode.NOT_ORDER_OWNER, "Order belongs to another buyer")
    return order


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    body: CreateOrderRequest,
    buyer: AuthenticatedBuyer = Depends(require_buyer),
    reservations: ReservationService = Depends(get_reservation_service),
):
    """Reserve pours from a tap. The order waits for payment."""
    return await reservations.create_order(buyer.user_id, body.tap_id, body.quantity)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, buyer: AuthenticatedBuyer = Depends(require_buyer)):
    return await _own_order(order_id, buyer)


@router.get("/{order_id}/events", response_model=list[OrderEventResponse])
async def get_order_events(
    order_id: UUID,
    buyer: AuthenticatedBuyer = Depends(require_buyer),
    events: EventLog = Depends(get_event_log),
):
    """Order timeline, oldest first."""
    await _own_order(order_id, buyer)
    return await events.timeline(order_id)


@router.post("/{order_id}/payment-intent", response_model=PaymentIntentHandle)
async def create_payment_intent(
    order_id: UUID,
    buyer: AuthenticatedBuyer = Depends(require_buyer),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Return the client credentials for the order's payment sheet (idempotent)."""
    return await payments.get_or_create_payment_intent(order_id, buyer.user_id)


@router.get("/{order_id}/payment-status", response_model=PaymentStatus)
async def get_payment_status(
    order_id: UUID,
    buyer: AuthenticatedBuyer = Depends(require_buyer),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """One reconciliation pass against the processor (webhook fallback)."""
    return await payments.check_payment_status(order_id, buyer.user_id)


@router.post("/{order_id}/token", response_model=IssuedToken)
async def issue_token(
    order_id: UUID,
    buyer: AuthenticatedBuyer = Depends(require_buyer),
    tokens: RedemptionTokenService = Depends(get_token_service),
):
    """Return the order's redemption token, issuing it on first request."""
    return await tokens.issue_token(order_id, buyer_id=buyer.user_id)
