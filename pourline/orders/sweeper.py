"""ExpirationSweeper: periodic expiry of unredeemed orders.

Runs as an asyncio.Task started by the application lifespan (or once via
scripts/run_sweep.py). Each sweep:
  1. Expires ready_to_redeem orders whose window has lapsed and restores
     their reserved volume.
  2. Cancels pending_payment orders abandoned at checkout and restores
     their reserved volume.
  3. After commit, invokes the refund trigger once if anything expired or
     earlier refunds are still outstanding.

Rows are claimed with FOR UPDATE SKIP LOCKED so overlapping sweeps on
different instances partition the work instead of blocking each other.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.config import get_settings
from pourline.db.models.order import Order
from pourline.metrics.cloudwatch import emit_business_event
from pourline.orders import inventory
from pourline.orders.payments import PaymentOrchestrator
from pourline.orders.schemas import EventType, OrderStatus, SweepResult
from pourline.orders.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


class ExpirationSweeper:
    """Expires lapsed orders and dispatches refunds."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentOrchestrator | None = None,
        interval_seconds: float | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.payments = payments
        self.interval_seconds = interval_seconds or settings.sweep_interval_seconds
        self.pending_timeout = timedelta(minutes=settings.pending_payment_timeout_minutes)
        self._stopped = asyncio.Event()

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Run one sweep.

        Args:
            now: Current time (for deterministic testing)
        """
        now = now or datetime.now(UTC)
        result = SweepResult()
        expired_venues: list[str] = []

        async with self.session_factory() as session:
            async with session.begin():
                lapsed = await self._claim(
                    session,
                    Order.status == OrderStatus.READY_TO_REDEEM.value,
                    Order.expires_at < now,
                )
                for order in lapsed:
                    if await self._close(session, order, OrderStatus.READY_TO_REDEEM, OrderStatus.EXPIRED,
                                         EventType.EXPIRED, {"reason": "redemption_window_lapsed"}, now):
                        result.expired_count += 1
                        result.restored_oz += order.reserved_oz
                        expired_venues.append(str(order.venue_id))

                abandoned = await self._claim(
                    session,
                    Order.status == OrderStatus.PENDING_PAYMENT.value,
                    Order.created_at < now - self.pending_timeout,
                )
                for order in abandoned:
                    if await self._close(session, order, OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED,
                                         EventType.CANCELLED, {"reason": "payment_timeout"}, now):
                        result.cancelled_count += 1
                        result.restored_oz += order.reserved_oz

        for venue_id in expired_venues:
            await emit_business_event("order_expired", venue_id=venue_id)

        if self.payments is not None:
            result.refund_triggered = await self._trigger_refunds(result.expired_count, now)

        logger.info(
            "sweep_completed",
            expired=result.expired_count,
            cancelled=result.cancelled_count,
            restored_oz=str(result.restored_oz),
            refund_triggered=result.refund_triggered,
        )
        return result

    async def _claim(self, session: AsyncSession, *criteria) -> list[Order]:
        rows = await session.execute(
            select(Order)
            .where(*criteria)
            .order_by(Order.created_at)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def _close(
        self,
        session: AsyncSession,
        order: Order,
        from_status: OrderStatus,
        to_status: OrderStatus,
        event_type: EventType,
        metadata: dict,
        now: datetime,
    ) -> bool:
        volume: Decimal = order.reserved_oz
        closed = await OrderStateMachine.transition(
            session,
            order.id,
            from_status,
            to_status,
            event_type,
            {**metadata, "restored_oz": str(volume)},
            now=now,
        )
        if closed:
            await inventory.restore(session, order.tap_id, volume, now=now)
        return closed

    async def _trigger_refunds(self, expired_count: int, now: datetime) -> bool:
        """Invoke the refund trigger at most once per sweep. Never raises."""
        try:
            if expired_count == 0 and not await self.payments.has_refund_backlog():
                return False
            await self.payments.process_expired_refunds(now=now)
        except Exception as exc:
            logger.error("refund_trigger_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
        return True

    async def run(self) -> None:
        """Sweep every ``interval_seconds`` until stop() is called.

        Intended to run as: ``asyncio.create_task(sweeper.run())``
        A failed cycle is logged and the loop continues.
        """
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)

        while not self._stopped.is_set():
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("sweep_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("sweeper_stopped")

    def stop(self) -> None:
        self._stopped.set()
