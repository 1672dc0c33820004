"""Run one expiration sweep (cron-style deployments with the in-process sweeper disabled)."""

import asyncio

from pourline.core.logging import configure_structlog
from pourline.core.config import get_settings

configure_structlog(log_level="INFO", json_logs=not get_settings().debug)

import structlog

from pourline.db import close_db, close_redis, init_db, init_redis
from pourline.api.deps import build_sweeper

logger = structlog.get_logger(__name__)


async def main() -> None:
    await init_db()
    await init_redis()
    try:
        result = await build_sweeper().sweep()
        logger.info(
            "one_shot_sweep_finished",
            expired=result.expired_count,
            cancelled=result.cancelled_count,
            refund_triggered=result.refund_triggered,
        )
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
