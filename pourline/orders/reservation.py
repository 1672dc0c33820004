"""Reservation service: turns a buyer's request into a pending order.

Preconditions are checked in a fixed order inside one transaction. The buyer
row is locked before the pending-order check, so two requests from one buyer
cannot both pass it; the tap row is locked before the venue and pricing
reads, and the inventory debit, order insert and ``created`` event commit
together.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.config import get_settings
from pourline.core.exceptions import ErrorCode, OrderError
from pourline.db.models.buyer import Buyer
from pourline.db.models.order import Order
from pourline.db.models.tap import TapPricing, TapStatus
from pourline.db.models.venue import Venue
from pourline.metrics.cloudwatch import emit_business_event
from pourline.orders import inventory
from pourline.orders.events import EventLog
from pourline.orders.schemas import EventType, OrderStatus

logger = structlog.get_logger(__name__)


class ReservationService:
    """Creates orders and debits tap inventory atomically."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.settings = get_settings()

    async def create_order(
        self,
        buyer_id: str,
        tap_id: UUID,
        quantity: int,
        now: datetime | None = None,
    ) -> Order:
        """Reserve ``quantity`` pours from a tap for a buyer.

        Args:
            buyer_id: Identity subject of the buyer
            tap_id: Tap to pour from
            quantity: Number of pours (positive integer)
            now: Current time (for deterministic testing)

        Returns:
            The new order in ``pending_payment``

        Raises:
            OrderError: with the first failing precondition's ErrorCode
        """
        now = now or datetime.now(UTC)

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise OrderError(ErrorCode.INVALID_QUANTITY, "Quantity must be a positive whole number")

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._reserve(session, buyer_id, tap_id, quantity, now)

        logger.info(
            "order_created",
            order_id=str(order.id),
            buyer_id=buyer_id,
            tap_id=str(tap_id),
            quantity=quantity,
            reserved_oz=str(order.reserved_oz),
        )
        await emit_business_event("order_created", venue_id=str(order.venue_id))
        return order

    async def _reserve(
        self,
        session: AsyncSession,
        buyer_id: str,
        tap_id: UUID,
        quantity: int,
        now: datetime,
    ) -> Order:
        # A missing buyer is reported after the tap and venue checks
        buyer = (
            await session.execute(select(Buyer).where(Buyer.user_id == buyer_id).with_for_update())
        ).scalar_one_or_none()

        window_start = now - timedelta(seconds=self.settings.pending_order_window_seconds)
        recent = await session.execute(
            select(Order.id)
            .where(
                Order.buyer_id == buyer_id,
                Order.status == OrderStatus.PENDING_PAYMENT.value,
                Order.created_at > window_start,
            )
            .limit(1)
        )
        if recent.scalar_one_or_none() is not None:
            raise OrderError(
                ErrorCode.PENDING_ORDER_EXISTS,
                "You already have an order awaiting payment. Complete or wait for it before ordering again.",
            )

        tap = await inventory.lock_tap(session, tap_id)
        if tap is None:
            raise OrderError(ErrorCode.TAP_NOT_FOUND, "Tap not found")
        if tap.status != TapStatus.ACTIVE:
            raise OrderError(ErrorCode.TAP_INACTIVE, "This tap is not currently pouring", tap_status=tap.status)
        if not tap.temp_ok:
            raise OrderError(ErrorCode.TEMP_NOT_OK, "This tap is out of serving temperature")

        venue = await session.get(Venue, tap.venue_id)
        if venue is None:
            raise OrderError(ErrorCode.VENUE_NOT_FOUND, "Venue not found")
        if not venue.is_active:
            raise OrderError(ErrorCode.VENUE_INACTIVE, "This venue is not currently open")
        if not venue.mobile_ordering_enabled:
            raise OrderError(ErrorCode.MOBILE_ORDERING_DISABLED, "Mobile ordering is disabled at this venue")

        if buyer is None:
            raise OrderError(ErrorCode.BUYER_NOT_FOUND, "Buyer profile not found")
        if not buyer.age_verified:
            raise OrderError(ErrorCode.AGE_NOT_VERIFIED, "Age verification is required before ordering")

        pricing = await session.get(TapPricing, tap.id)
        if pricing is None:
            raise OrderError(ErrorCode.NO_PRICING, "This tap has no price configured")

        volume = quantity * pricing.pour_size_oz
        if not await inventory.reserve(session, tap.id, volume, now=now):
            raise OrderError(
                ErrorCode.INSUFFICIENT_INVENTORY,
                "Not enough beer left on this tap for that order",
            )

        order = Order(
            buyer_id=buyer_id,
            venue_id=venue.id,
            tap_id=tap.id,
            beer_id=tap.beer_id,
            quantity=quantity,
            pour_size_oz=pricing.pour_size_oz,
            unit_price=pricing.unit_price,
            total_amount=pricing.unit_price * quantity,
            currency=pricing.currency,
            status=OrderStatus.PENDING_PAYMENT.value,
            expires_at=now + timedelta(minutes=self.settings.order_ttl_minutes),
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        await session.flush()

        await EventLog.append(
            session,
            order.id,
            EventType.CREATED,
            {
                "tap_id": str(tap.id),
                "quantity": quantity,
                "reserved_oz": str(volume),
                "total_amount": str(order.total_amount),
            },
            now=now,
        )
        return order
