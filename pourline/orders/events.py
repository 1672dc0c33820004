"""Append-only order event log and webhook idempotency ledger."""

from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.exceptions import DuplicateEventError
from pourline.db.models.order_event import OrderEvent
from pourline.db.models.webhook_event import WebhookIdempotencyRecord

logger = structlog.get_logger(__name__)


class EventLog:
    """Writes order events inside the caller's transaction and reads timelines.

    There is no update or delete path: events are immutable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    async def append(
        session: AsyncSession,
        order_id: UUID,
        event_type,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> OrderEvent:
        """Add an event to the session. Commits with the caller's transaction."""
        event = OrderEvent(
            order_id=order_id,
            event_type=getattr(event_type, "value", event_type),
            event_metadata=metadata or {},
            created_at=now or datetime.now(UTC),
        )
        session.add(event)
        await session.flush()
        return event

    @staticmethod
    async def has_event(session: AsyncSession, order_id: UUID, event_type) -> bool:
        result = await session.execute(
            select(OrderEvent.id)
            .where(
                OrderEvent.order_id == order_id,
                OrderEvent.event_type == getattr(event_type, "value", event_type),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def claim_webhook(session: AsyncSession, event_id: str, event_type: str) -> None:
        """Insert the idempotency record for an external event.

        Uses a savepoint so a duplicate leaves the outer transaction usable.

        Raises:
            DuplicateEventError: if the event id was already claimed
        """
        try:
            async with session.begin_nested():
                session.add(WebhookIdempotencyRecord(event_id=event_id, event_type=event_type))
        except IntegrityError:
            raise DuplicateEventError(event_id)

    async def timeline(self, order_id: UUID) -> list[OrderEvent]:
        """Return an order's events, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderEvent)
                .where(OrderEvent.order_id == order_id)
                .order_by(OrderEvent.id)
            )
            return list(result.scalars().all())
