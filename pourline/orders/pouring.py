"""Pour service: the dispensing controller's side of redemption."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.exceptions import ErrorCode, OrderError
from pourline.db.models.tap import Tap
from pourline.metrics.cloudwatch import emit_pour_variance
from pourline.orders.schemas import EventType, OrderStatus, PourCommand, PourResult
from pourline.orders.state_machine import OrderStateMachine
from pourline.orders.tokens import RedemptionTokenService, load_order

logger = structlog.get_logger(__name__)


class PourService:
    """Walks redeemed orders through pouring to completion."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_service: RedemptionTokenService,
    ):
        self.session_factory = session_factory
        self.token_service = token_service

    async def start_pour(
        self,
        order_id: UUID,
        tap_id: UUID,
        token: str,
        now: datetime | None = None,
    ) -> PourCommand:
        """Redeem a token at the tap and start dispensing.

        ready_to_redeem -> redeemed -> pouring, each step with its own event.

        Raises:
            OrderError: any token verification code, TOKEN_MISMATCH if the
                token belongs to another order, WRONG_TAP (with the correct
                tap number), TEMP_NOT_OK
        """
        now = now or datetime.now(UTC)
        verified_by = f"tap:{tap_id}"

        async with self.session_factory() as session:
            async with session.begin():
                order = await self.token_service.authenticate(session, token, now)
                if order.id != order_id:
                    logger.warning("pour_token_order_mismatch", order_id=str(order_id), token_order_id=str(order.id))
                    raise OrderError(ErrorCode.TOKEN_MISMATCH, "Redemption code does not match this order")

                tap = await session.get(Tap, order.tap_id, populate_existing=True)
                if order.tap_id != tap_id:
                    raise OrderError(
                        ErrorCode.WRONG_TAP,
                        f"This order pours from tap {tap.tap_number}",
                        correct_tap_number=tap.tap_number,
                    )
                if not tap.temp_ok:
                    raise OrderError(ErrorCode.TEMP_NOT_OK, "This tap is out of serving temperature")

                await self.token_service.redeem(session, order, verified_by, now)
                await self._begin(session, order.id, now)

        total_oz = order.quantity * order.pour_size_oz
        logger.info("pour_started", order_id=str(order.id), tap_number=tap.tap_number, total_oz=str(total_oz))
        return PourCommand(
            order_id=order.id,
            tap_id=order.tap_id,
            tap_number=tap.tap_number,
            quantity=order.quantity,
            pour_size_oz=order.pour_size_oz,
            total_oz=total_oz,
        )

    async def begin_pour(self, order_id: UUID, now: datetime | None = None) -> None:
        """redeemed -> pouring, for orders redeemed by a scanning terminal."""
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            async with session.begin():
                order = await load_order(session, order_id, for_update=True)
                if order is None:
                    raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
                if order.status != OrderStatus.REDEEMED.value:
                    raise OrderError(ErrorCode.INVALID_ORDER_STATUS, "Order is not redeemed", status=order.status)
                await self._begin(session, order.id, now)

    async def _begin(self, session: AsyncSession, order_id: UUID, now: datetime) -> None:
        started = await OrderStateMachine.transition(
            session,
            order_id,
            OrderStatus.REDEEMED,
            OrderStatus.POURING,
            EventType.POUR_STARTED,
            now=now,
        )
        if not started:
            raise OrderError(ErrorCode.ALREADY_REDEEMED, "Pour already started for this order")

    async def complete_pour(
        self,
        order_id: UUID,
        tap_id: UUID,
        actual_oz: Decimal,
        now: datetime | None = None,
    ) -> PourResult:
        """pouring -> completed, recording the measured volume."""
        now = now or datetime.now(UTC)
        actual_oz = Decimal(str(actual_oz))

        async with self.session_factory() as session:
            async with session.begin():
                order = await load_order(session, order_id, for_update=True)
                if order is None:
                    raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
                if order.tap_id != tap_id:
                    raise OrderError(ErrorCode.TAP_MISMATCH, "Order was not poured from this tap")

                expected_oz = order.quantity * order.pour_size_oz
                variance_oz = actual_oz - expected_oz
                if order.status != OrderStatus.POURING.value:
                    raise OrderError(ErrorCode.INVALID_ORDER_STATUS, "Order is not pouring", status=order.status)

                completed = await OrderStateMachine.transition(
                    session,
                    order.id,
                    OrderStatus.POURING,
                    OrderStatus.COMPLETED,
                    EventType.COMPLETED,
                    {
                        "expected_oz": str(expected_oz),
                        "actual_oz": str(actual_oz),
                        "variance_oz": str(variance_oz),
                    },
                    values={"completed_at": now},
                    now=now,
                )
                if not completed:
                    raise OrderError(ErrorCode.INVALID_ORDER_STATUS, "Order is not pouring")

        logger.info("pour_completed", order_id=str(order_id), actual_oz=str(actual_oz), variance_oz=str(variance_oz))
        await emit_pour_variance(str(tap_id), variance_oz)
        return PourResult(
            order_id=order_id,
            expected_oz=expected_oz,
            actual_oz=actual_oz,
            variance_oz=variance_oz,
            completed_at=now,
        )
