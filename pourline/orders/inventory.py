"""Inventory ledger: per-tap ounce debits and restores.

All writes are single conditional UPDATE statements so concurrent
reservations can never overdraw a tap; the affected-row count is the
success signal. Callers own the transaction.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pourline.db.models.tap import Tap

logger = structlog.get_logger(__name__)


async def lock_tap(session: AsyncSession, tap_id: UUID) -> Tap | None:
    """Load a tap row under SELECT ... FOR UPDATE."""
    result = await session.execute(
        select(Tap)
        .where(Tap.id == tap_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reserve(session: AsyncSession, tap_id: UUID, volume: Decimal, now: datetime | None = None) -> bool:
    """Debit ``volume`` oz from a tap.

    Succeeds only if the remainder stays non-negative and strictly above the
    tap's low-stock threshold.

    Returns:
        True if the debit was applied, False if inventory was insufficient
    """
    now = now or datetime.now(UTC)
    remaining_after = Tap.oz_remaining - volume

    result = await session.execute(
        update(Tap)
        .where(
            Tap.id == tap_id,
            remaining_after >= 0,
            remaining_after > Tap.low_threshold_oz,
        )
        .values(oz_remaining=remaining_after, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount == 1
    if not reserved:
        logger.info("inventory_reserve_rejected", tap_id=str(tap_id), volume=str(volume))
    return reserved


async def restore(session: AsyncSession, tap_id: UUID, volume: Decimal, now: datetime | None = None) -> None:
    """Credit ``volume`` oz back to a tap (cancelled, failed, or expired orders)."""
    now = now or datetime.now(UTC)
    await session.execute(
        update(Tap)
        .where(Tap.id == tap_id)
        .values(oz_remaining=Tap.oz_remaining + volume, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    logger.info("inventory_restored", tap_id=str(tap_id), volume=str(volume))


async def get_remaining(session: AsyncSession, tap_id: UUID) -> Decimal | None:
    result = await session.execute(select(Tap.oz_remaining).where(Tap.id == tap_id))
    return result.scalar_one_or_none()
