"""Payment orchestrator: processor intents, webhooks, reconciliation, refunds.

Order state moves on processor signals only through the transition functions
here (``mark_paid``, ``mark_payment_failed``, ``mark_refunded``), so the
webhook path and the polling fallback apply identical rules. Processor calls
are never made while a database transaction is open.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import UUID

import stripe
import structlog
from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.config import get_settings
from pourline.core.exceptions import (
    DuplicateEventError,
    ErrorCode,
    OrderError,
    PaymentProcessorError,
    WebhookVerificationError,
)
from pourline.core.rate_limit import CREATE_PAYMENT_INTENT, RateLimiter
from pourline.db.models.buyer import Buyer
from pourline.db.models.order import Order
from pourline.db.models.order_event import OrderEvent
from pourline.metrics.cloudwatch import emit_business_event
from pourline.orders import inventory
from pourline.orders.events import EventLog
from pourline.orders.processor import PaymentProcessor
from pourline.orders.schemas import (
    CLOSED_STATUSES,
    SETTLED_STATUSES,
    EventType,
    OrderStatus,
    PaymentIntentHandle,
    PaymentStatus,
    RefundSummary,
    WebhookOutcome,
)
from pourline.orders.state_machine import OrderStateMachine
from pourline.orders.tokens import RedemptionTokenService, load_order

logger = structlog.get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"


def _expired_awaiting_refund():
    """Expired orders with a payment on file and no ``refunded`` event yet."""
    refunded = exists().where(
        and_(
            OrderEvent.order_id == Order.id,
            OrderEvent.event_type == EventType.REFUNDED.value,
        )
    )
    return and_(
        Order.status == OrderStatus.EXPIRED.value,
        Order.payment_intent_id.is_not(None),
        ~refunded,
    )


class PaymentOrchestrator:
    """Coordinates orders with the payment processor."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: PaymentProcessor,
        rate_limiter: RateLimiter | None = None,
        token_service: RedemptionTokenService | None = None,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.rate_limiter = rate_limiter
        self.token_service = token_service
        self.settings = get_settings()

    # ── Payment intents ─────────────────────────────────────────────

    async def get_or_create_payment_intent(self, order_id: UUID, buyer_id: str) -> PaymentIntentHandle:
        """Return the order's payment intent, creating it on first call.

        Repeat calls retrieve the stored intent instead of creating another;
        concurrent first calls share the processor idempotency key
        ``order_<id>`` so the processor returns one intent.

        Raises:
            RateLimitedError: more than the per-buyer budget in the window
            OrderError: ORDER_NOT_FOUND, NOT_ORDER_OWNER, INVALID_ORDER_STATUS
            PaymentProcessorError: non-transient processor failure
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.hit(
                CREATE_PAYMENT_INTENT,
                buyer_id,
                self.settings.payment_intent_rate_limit,
                self.settings.payment_intent_rate_window_seconds,
            )

        async with self.session_factory() as session:
            order = await self._owned_order(session, order_id, buyer_id)
            if order.status != OrderStatus.PENDING_PAYMENT.value:
                raise OrderError(
                    ErrorCode.INVALID_ORDER_STATUS,
                    "Payment can only be started for orders awaiting payment",
                    status=order.status,
                )
            buyer = await session.get(Buyer, buyer_id)
            if buyer is None:
                raise OrderError(ErrorCode.BUYER_NOT_FOUND, "Buyer profile not found")

        customer_id = await self._ensure_customer(buyer)
        created = False

        if order.payment_intent_id:
            intent = await self.processor.retrieve_payment_intent(order.payment_intent_id)
        else:
            intent = await self.processor.create_payment_intent(
                amount=order.total_amount,
                currency=order.currency,
                customer_id=customer_id,
                metadata={"order_id": str(order.id), "user_id": buyer_id},
                idempotency_key=f"order_{order.id}",
            )
            created = await self._store_intent(order.id, intent.id)
            if not created:
                async with self.session_factory() as session:
                    stored = await load_order(session, order.id)
                if stored.payment_intent_id and stored.payment_intent_id != intent.id:
                    intent = await self.processor.retrieve_payment_intent(stored.payment_intent_id)

        ephemeral_key = await self.processor.create_ephemeral_key(customer_id)

        logger.info(
            "payment_intent_ready",
            order_id=str(order.id),
            payment_intent_id=intent.id,
            created=created,
        )
        return PaymentIntentHandle(
            client_secret=intent.client_secret,
            customer_id=customer_id,
            ephemeral_key=ephemeral_key,
            payment_intent_id=intent.id,
            created=created,
        )

    async def _owned_order(self, session: AsyncSession, order_id: UUID, buyer_id: str) -> Order:
        order = await load_order(session, order_id)
        if order is None:
            raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
        if order.buyer_id != buyer_id:
            raise OrderError(ErrorCode.NOT_ORDER_OWNER, "Order belongs to another buyer")
        return order

    async def _store_intent(self, order_id: UUID, payment_intent_id: str) -> bool:
        """Record the intent reference unless one is already stored."""
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.payment_intent_id.is_(None))
                    .values(payment_intent_id=payment_intent_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                await EventLog.append(
                    session,
                    order_id,
                    EventType.PAYMENT_INTENT_CREATED,
                    {"payment_intent_id": payment_intent_id},
                    now=now,
                )
        return True

    async def _ensure_customer(self, buyer: Buyer) -> str:
        """Return the buyer's processor customer id, creating it if needed."""
        if buyer.stripe_customer_id:
            return buyer.stripe_customer_id

        customer_id = await self.processor.create_customer(buyer.user_id, buyer.email)

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        update(Buyer)
                        .where(Buyer.user_id == buyer.user_id, Buyer.stripe_customer_id.is_(None))
                        .values(stripe_customer_id=customer_id)
                        .execution_options(synchronize_session=False)
                    )
                    stored = result.rowcount == 1
            except IntegrityError:
                stored = False

            if not stored:
                # Concurrent request already set stripe_customer_id; re-query to get it
                existing = await session.execute(
                    select(Buyer.stripe_customer_id).where(Buyer.user_id == buyer.user_id)
                )
                return existing.scalar_one()

        logger.info("stripe_customer_created", buyer_id=buyer.user_id)
        return customer_id

    # ── Webhooks ────────────────────────────────────────────────────

    async def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """Verify, de-duplicate, and apply a processor webhook.

        The idempotency claim and the side effects share one transaction, so a
        replayed event id changes nothing.

        Raises:
            WebhookVerificationError: missing or invalid signature, bad payload
        """
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")
        try:
            event = self.processor.construct_event(payload, signature)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookVerificationError("Invalid signature")

        event_id = event["id"]
        event_type = event["type"]
        data = event["data"]["object"]
        now = datetime.now(UTC)

        handlers = {
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            CHARGE_REFUNDED: self._on_charge_refunded,
        }
        handler = handlers.get(event_type)
        newly_paid: Order | None = None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await EventLog.claim_webhook(session, event_id, event_type)
                    if handler is not None:
                        newly_paid = await handler(session, data, now)
        except DuplicateEventError:
            logger.info("webhook_duplicate_ignored", event_id=event_id, event_type=event_type)
            return WebhookOutcome.DUPLICATE

        if handler is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            return WebhookOutcome.IGNORED

        logger.info("webhook_processed", event_id=event_id, event_type=event_type)
        if newly_paid is not None:
            await self._after_settlement(newly_paid)
        return WebhookOutcome.PROCESSED

    async def _order_for_intent(self, session: AsyncSession, data: dict, intent_key: str = "id") -> Order | None:
        payment_intent_id = data.get(intent_key)
        if payment_intent_id:
            result = await session.execute(
                select(Order)
                .where(Order.payment_intent_id == payment_intent_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            order = result.scalars().first()
            if order is not None:
                return order

        order_id = (data.get("metadata") or {}).get("order_id")
        if order_id:
            try:
                return await load_order(session, UUID(order_id), for_update=True)
            except ValueError:
                return None
        return None

    async def _on_payment_succeeded(self, session: AsyncSession, data: dict, now: datetime) -> Order | None:
        order = await self._order_for_intent(session, data)
        if order is None:
            logger.warning("webhook_order_not_found", payment_intent_id=data.get("id"))
            return None
        if await self.mark_paid(session, order, data.get("id"), now=now):
            return order
        return None

    async def _on_payment_failed(self, session: AsyncSession, data: dict, now: datetime) -> None:
        order = await self._order_for_intent(session, data)
        if order is None:
            logger.warning("webhook_order_not_found", payment_intent_id=data.get("id"))
            return None
        error = data.get("last_payment_error") or {}
        await self.mark_payment_failed(session, order, reason=error.get("code") or "payment_failed", now=now)
        return None

    async def _on_charge_refunded(self, session: AsyncSession, data: dict, now: datetime) -> None:
        order = await self._order_for_intent(session, data, intent_key="payment_intent")
        if order is None:
            logger.warning("webhook_order_not_found", payment_intent_id=data.get("payment_intent"))
            return None
        await self.mark_refunded(session, order, {"charge_id": data.get("id"), "source": "processor"}, now=now)
        return None

    # ── Transition functions (shared by webhooks and reconciliation) ─

    async def mark_paid(
        self,
        session: AsyncSession,
        order: Order,
        payment_intent_id: str | None,
        now: datetime | None = None,
    ) -> bool:
        """Apply a successful payment. Idempotent.

        Returns:
            True if this call moved the order pending_payment -> paid
        """
        now = now or datetime.now(UTC)
        status = OrderStatus(order.status)

        if status == OrderStatus.PENDING_PAYMENT:
            values = {"paid_at": now}
            if order.payment_intent_id is None and payment_intent_id:
                values["payment_intent_id"] = payment_intent_id
            return await OrderStateMachine.transition(
                session,
                order.id,
                OrderStatus.PENDING_PAYMENT,
                OrderStatus.PAID,
                EventType.PAYMENT_SUCCEEDED,
                {"payment_intent_id": payment_intent_id},
                values=values,
                now=now,
            )

        if status in SETTLED_STATUSES or order.paid_at is not None:
            logger.info("payment_already_applied", order_id=str(order.id), status=status.value)
            return False

        if status in CLOSED_STATUSES:
            await EventLog.append(
                session,
                order.id,
                EventType.LATE_PAYMENT_RECEIVED,
                {"payment_intent_id": payment_intent_id, "status": status.value},
                now=now,
            )
            logger.warning("late_payment_received", order_id=str(order.id), status=status.value)
        return False

    async def mark_payment_failed(
        self,
        session: AsyncSession,
        order: Order,
        reason: str = "payment_failed",
        now: datetime | None = None,
    ) -> bool:
        """pending_payment -> cancelled, returning the reserved volume to the tap."""
        now = now or datetime.now(UTC)
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            logger.info("payment_failure_ignored", order_id=str(order.id), status=order.status)
            return False

        cancelled = await OrderStateMachine.transition(
            session,
            order.id,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.CANCELLED,
            EventType.PAYMENT_FAILED,
            {"reason": reason, "restored_oz": str(order.reserved_oz)},
            now=now,
        )
        if cancelled:
            await inventory.restore(session, order.tap_id, order.reserved_oz, now=now)
        return cancelled

    async def mark_refunded(
        self,
        session: AsyncSession,
        order: Order,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Record a refund.

        paid / ready_to_redeem orders become refunded and their volume is
        restored. Expired orders keep their status and get a single
        ``refunded`` event.
        """
        now = now or datetime.now(UTC)
        status = OrderStatus(order.status)
        metadata = metadata or {}

        if status in (OrderStatus.PAID, OrderStatus.READY_TO_REDEEM):
            refunded = await OrderStateMachine.transition(
                session,
                order.id,
                (OrderStatus.PAID, OrderStatus.READY_TO_REDEEM),
                OrderStatus.REFUNDED,
                EventType.REFUNDED,
                {**metadata, "restored_oz": str(order.reserved_oz)},
                now=now,
            )
            if refunded:
                await inventory.restore(session, order.tap_id, order.reserved_oz, now=now)
            return refunded

        if status == OrderStatus.EXPIRED:
            if await EventLog.has_event(session, order.id, EventType.REFUNDED):
                return False
            await EventLog.append(session, order.id, EventType.REFUNDED, metadata, now=now)
            return True

        logger.info("refund_not_applicable", order_id=str(order.id), status=status.value)
        return False

    # ── Refunds ─────────────────────────────────────────────────────

    async def refund_order(self, order_id: UUID, reason: str, now: datetime | None = None) -> Order:
        """Refund a paid, unredeemed order through the processor."""
        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        if order is None:
            raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
        if order.status not in (OrderStatus.PAID.value, OrderStatus.READY_TO_REDEEM.value):
            raise OrderError(ErrorCode.INVALID_ORDER_STATUS, "Only paid, unredeemed orders can be refunded", status=order.status)
        if not order.payment_intent_id:
            raise OrderError(ErrorCode.INVALID_ORDER_STATUS, "Order has no payment on file", status=order.status)

        refund_id = await self.processor.create_refund(order.payment_intent_id, reason, idempotency_key=f"refund_{order.id}")

        async with self.session_factory() as session:
            async with session.begin():
                order = await load_order(session, order_id, for_update=True)
                await self.mark_refunded(session, order, {"refund_id": refund_id, "reason": reason}, now=now)
            order = await load_order(session, order_id)

        logger.info("order_refunded", order_id=str(order_id), refund_id=refund_id, reason=reason)
        return order

    async def has_refund_backlog(self) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count(Order.id)).where(_expired_awaiting_refund()))
            return result.scalar_one() > 0

    async def process_expired_refunds(self, now: datetime | None = None) -> RefundSummary:
        """Refund every expired order that has not been refunded yet.

        Failures are recorded as ``refund_failed`` events; those orders stay in
        the backlog and are retried on the next invocation.
        """
        now = now or datetime.now(UTC)
        summary = RefundSummary()

        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id, Order.payment_intent_id).where(_expired_awaiting_refund()).order_by(Order.expires_at)
            )
            pending = result.all()

        for order_id, payment_intent_id in pending:
            try:
                refund_id = await self.processor.create_refund(
                    payment_intent_id,
                    "expired",
                    idempotency_key=f"refund_{order_id}",
                )
            except PaymentProcessorError as exc:
                summary.failed += 1
                logger.error("expired_refund_failed", order_id=str(order_id), error=exc.message)
                async with self.session_factory() as session:
                    async with session.begin():
                        await EventLog.append(
                            session,
                            order_id,
                            EventType.REFUND_FAILED,
                            {"error": exc.context.get("processor_detail", exc.message)},
                            now=now,
                        )
                continue

            async with self.session_factory() as session:
                async with session.begin():
                    order = await load_order(session, order_id, for_update=True)
                    applied = await self.mark_refunded(
                        session, order, {"refund_id": refund_id, "reason": "expired"}, now=now
                    )
            if applied:
                summary.refunded += 1

        if pending:
            logger.info("expired_refunds_processed", refunded=summary.refunded, failed=summary.failed)
        return summary

    # ── Reconciliation (polling fallback) ───────────────────────────

    async def check_payment_status(self, order_id: UUID, buyer_id: str) -> PaymentStatus:
        """One reconciliation pass against the processor."""
        async with self.session_factory() as session:
            order = await self._owned_order(session, order_id, buyer_id)

        if order.status != OrderStatus.PENDING_PAYMENT.value or not order.payment_intent_id:
            return PaymentStatus(order_id=order.id, status=OrderStatus(order.status))

        intent = await self.processor.retrieve_payment_intent(order.payment_intent_id)
        now = datetime.now(UTC)
        newly_paid = False

        if intent.status == "succeeded":
            async with self.session_factory() as session:
                async with session.begin():
                    locked = await load_order(session, order_id, for_update=True)
                    newly_paid = await self.mark_paid(session, locked, intent.id, now=now)
        elif intent.status == "canceled":
            async with self.session_factory() as session:
                async with session.begin():
                    locked = await load_order(session, order_id, for_update=True)
                    await self.mark_payment_failed(session, locked, reason="payment_canceled", now=now)

        if newly_paid:
            await self._after_settlement(order)

        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        return PaymentStatus(order_id=order.id, status=OrderStatus(order.status), payment_intent_status=intent.status)

    async def _after_settlement(self, order: Order) -> None:
        """Post-payment follow-ups. Token issuance is best effort."""
        logger.info("order_paid", order_id=str(order.id))
        await emit_business_event("order_paid", venue_id=str(order.venue_id))

        if self.token_service is None:
            return
        try:
            await self.token_service.issue_token(order.id)
        except OrderError as exc:
            logger.warning("token_issue_after_payment_failed", order_id=str(order.id), code=exc.code.value)


async def poll_settlement(
    check: Callable[[], Awaitable[PaymentStatus]],
    initial_delay: float | None = None,
    interval: float | None = None,
    timeout: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PaymentStatus:
    """Poll ``check`` until the order leaves pending_payment or time runs out.

    Returns the last status seen; on timeout that is still pending_payment and
    the caller should re-check later.
    """
    settings = get_settings()
    initial_delay = settings.payment_poll_initial_delay_seconds if initial_delay is None else initial_delay
    interval = settings.payment_poll_interval_seconds if interval is None else interval
    timeout = settings.payment_poll_timeout_seconds if timeout is None else timeout

    await sleep(initial_delay)
    elapsed = initial_delay
    status = await check()

    while status.status == OrderStatus.PENDING_PAYMENT and elapsed + interval <= timeout:
        await sleep(interval)
        elapsed += interval
        status = await check()

    if status.status == OrderStatus.PENDING_PAYMENT:
        logger.info("payment_poll_timed_out", order_id=str(status.order_id), elapsed_seconds=elapsed)
    return status
