"""Order state machine: the only path by which order status changes."""

from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from pourline.core.exceptions import InvalidTransitionError
from pourline.db.models.order import Order
from pourline.orders.events import EventLog
from pourline.orders.schemas import EventType, OrderStatus

logger = structlog.get_logger(__name__)


class OrderStateMachine:
    """Validates and applies order status transitions.

    Every transition is a conditional UPDATE guarded on the expected current
    status; the affected-row count tells the caller whether it won. The
    matching timeline event is appended in the same transaction.
    """

    # Valid state transitions
    TRANSITIONS = {
        OrderStatus.PENDING_PAYMENT: [OrderStatus.PAID, OrderStatus.CANCELLED],
        OrderStatus.PAID: [OrderStatus.READY_TO_REDEEM, OrderStatus.REFUNDED],
        OrderStatus.READY_TO_REDEEM: [
            OrderStatus.REDEEMED,
            OrderStatus.EXPIRED,
            OrderStatus.REFUNDED,
        ],
        OrderStatus.REDEEMED: [OrderStatus.POURING],
        OrderStatus.POURING: [OrderStatus.COMPLETED],
        OrderStatus.COMPLETED: [],  # Terminal state
        OrderStatus.CANCELLED: [],  # Terminal state
        OrderStatus.EXPIRED: [],  # Terminal state
        OrderStatus.REFUNDED: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, current: OrderStatus, target: OrderStatus) -> bool:
        return target in cls.TRANSITIONS.get(OrderStatus(current), [])

    @classmethod
    def validate(cls, current: OrderStatus, target: OrderStatus) -> None:
        """Raise InvalidTransitionError unless current -> target is legal."""
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(OrderStatus(current).value, OrderStatus(target).value)

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        return not cls.TRANSITIONS.get(OrderStatus(status))

    @classmethod
    async def transition(
        cls,
        session: AsyncSession,
        order_id: UUID,
        from_statuses: OrderStatus | tuple[OrderStatus, ...],
        to_status: OrderStatus,
        event_type: EventType,
        metadata: dict | None = None,
        values: dict | None = None,
        extra_where: tuple = (),
        now: datetime | None = None,
    ) -> bool:
        """Move an order to ``to_status`` if it is still in one of ``from_statuses``.

        Args:
            session: Open session; the caller owns the transaction
            order_id: Order to move
            from_statuses: Expected current status(es)
            to_status: Target status
            event_type: Timeline event appended on success
            metadata: Event metadata
            values: Extra column values written with the status change
            extra_where: Additional WHERE clauses for the guard
            now: Current time (for deterministic testing)

        Returns:
            True if this caller performed the transition, False if the order
            was no longer in an expected status (another caller won)
        """
        now = now or datetime.now(UTC)
        if isinstance(from_statuses, OrderStatus):
            from_statuses = (from_statuses,)

        for current in from_statuses:
            cls.validate(current, to_status)

        result = await session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_([s.value for s in from_statuses]),
                *extra_where,
            )
            .values(status=to_status.value, updated_at=now, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "order_transition_lost",
                order_id=str(order_id),
                expected=[s.value for s in from_statuses],
                target=to_status.value,
            )
            return False

        await EventLog.append(session, order_id, event_type, metadata, now=now)
        logger.info("order_transitioned", order_id=str(order_id), status=to_status.value, event_type=event_type.value)
        return True
