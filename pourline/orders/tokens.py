"""Redemption tokens: signed, single-use proof that an order was paid.

Tokens are HS256 JWTs stored on the order row. Verification checks the
signature, the token's own expiry, equality with the stored token, the
stored expiry, and that the claims still match the order, before the
redeeming write.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt as pyjwt
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.config import get_settings
from pourline.core.exceptions import ErrorCode, OrderError
from pourline.core.rate_limit import VERIFY_TOKEN, RateLimiter
from pourline.db.models.order import Order
from pourline.db.models.tap import Tap
from pourline.metrics.cloudwatch import emit_business_event
from pourline.orders.schemas import EventType, IssuedToken, OrderStatus, Redemption
from pourline.orders.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(minutes=15)

_STATUS_ERRORS = {
    OrderStatus.REDEEMED: (ErrorCode.ALREADY_REDEEMED, "This order has already been redeemed"),
    OrderStatus.POURING: (ErrorCode.ALREADY_REDEEMED, "This order has already been redeemed"),
    OrderStatus.COMPLETED: (ErrorCode.ALREADY_REDEEMED, "This order has already been redeemed"),
    OrderStatus.EXPIRED: (ErrorCode.ORDER_EXPIRED, "This order has expired"),
    OrderStatus.CANCELLED: (ErrorCode.ORDER_CANCELLED, "This order was cancelled"),
    OrderStatus.REFUNDED: (ErrorCode.ORDER_REFUNDED, "This order was refunded"),
}


async def load_order(session: AsyncSession, order_id: UUID, for_update: bool = False) -> Order | None:
    """Read an order, bypassing any stale copy held by the session."""
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def ensure_redeemable(order: Order) -> None:
    """Raise the status-specific error unless the order is ready_to_redeem."""
    status = OrderStatus(order.status)
    if status == OrderStatus.READY_TO_REDEEM:
        return
    code, message = _STATUS_ERRORS.get(
        status, (ErrorCode.INVALID_ORDER_STATUS, f"Order is not redeemable (status: {status.value})")
    )
    raise OrderError(code, message, status=status.value)


class RedemptionTokenService:
    """Issues and verifies redemption tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: RateLimiter | None = None,
        secret: str | None = None,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.settings = get_settings()
        self.secret = secret or self.settings.qr_token_secret

    # ── Issue ───────────────────────────────────────────────────────

    async def issue_token(
        self,
        order_id: UUID,
        buyer_id: str | None = None,
        now: datetime | None = None,
    ) -> IssuedToken:
        """Issue (or return the existing) redemption token for a paid order.

        Idempotent: a second call, or a concurrent caller, gets the token that
        was stored first.
        """
        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            async with session.begin():
                order = await load_order(session, order_id)
                if order is None:
                    raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")
                if buyer_id is not None and order.buyer_id != buyer_id:
                    raise OrderError(ErrorCode.NOT_ORDER_OWNER, "Order belongs to another buyer")
                if order.status not in (OrderStatus.PAID.value, OrderStatus.READY_TO_REDEEM.value):
                    raise OrderError(
                        ErrorCode.INVALID_ORDER_STATUS,
                        "A redemption code is only available for paid orders",
                        status=order.status,
                    )
                if order.qr_code_token:
                    return IssuedToken(order_id=order.id, token=order.qr_code_token, expires_at=order.qr_expires_at)

                expires_at = order.expires_at or now + DEFAULT_TOKEN_TTL
                token = self._sign(order, now, expires_at)

                won = await OrderStateMachine.transition(
                    session,
                    order.id,
                    OrderStatus.PAID,
                    OrderStatus.READY_TO_REDEEM,
                    EventType.QR_TOKEN_GENERATED,
                    {"expires_at": expires_at.isoformat()},
                    values={"qr_code_token": token, "qr_expires_at": expires_at},
                    extra_where=(Order.qr_code_token.is_(None),),
                    now=now,
                )

            if not won:
                # Lost the race: hand back whatever the winner stored
                order = await load_order(session, order_id)
                if order is None or not order.qr_code_token:
                    raise OrderError(
                        ErrorCode.INVALID_ORDER_STATUS,
                        "A redemption code is only available for paid orders",
                        status=order.status if order else None,
                    )
                return IssuedToken(order_id=order.id, token=order.qr_code_token, expires_at=order.qr_expires_at)

        logger.info("qr_token_generated", order_id=str(order_id), expires_at=expires_at.isoformat())
        return IssuedToken(order_id=order_id, token=token, expires_at=expires_at)

    def _sign(self, order: Order, now: datetime, expires_at: datetime) -> str:
        claims = {
            "order_id": str(order.id),
            "tap_id": str(order.tap_id),
            "venue_id": str(order.venue_id),
            "user_id": order.buyer_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return pyjwt.encode(claims, self.secret, algorithm=ALGORITHM)

    # ── Verify ──────────────────────────────────────────────────────

    def decode(self, token: str, now: datetime) -> dict:
        """Check signature and token expiry; return the claims.

        Expiry is checked against ``now`` rather than the wall clock so the
        decision is reproducible.
        """
        try:
            claims = pyjwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": ["order_id", "exp", "iat"]},
            )
        except pyjwt.InvalidTokenError as exc:
            logger.warning("redemption_token_invalid", error=str(exc))
            raise OrderError(ErrorCode.TOKEN_INVALID, "Redemption code is not valid")

        if claims["exp"] <= now.timestamp():
            raise OrderError(ErrorCode.TOKEN_EXPIRED, "Redemption code has expired")
        return claims

    async def authenticate(self, session: AsyncSession, token: str, now: datetime) -> Order:
        """Resolve a token to its order, enforcing every integrity check.

        The order is locked for the rest of the caller's transaction.
        """
        claims = self.decode(token, now)

        try:
            order_id = UUID(str(claims["order_id"]))
        except ValueError:
            logger.warning("redemption_token_invalid", error="malformed order_id claim")
            raise OrderError(ErrorCode.TOKEN_INVALID, "Redemption code is not valid")

        order = await load_order(session, order_id, for_update=True)
        if order is None:
            raise OrderError(ErrorCode.ORDER_NOT_FOUND, "Order not found")

        if order.qr_code_token != token:
            logger.warning("redemption_token_mismatch", order_id=str(order.id))
            raise OrderError(ErrorCode.TOKEN_MISMATCH, "Redemption code does not match this order")

        if order.qr_expires_at is not None and order.qr_expires_at <= now:
            raise OrderError(ErrorCode.QR_EXPIRED, "Redemption window has closed")

        expected = {
            "tap_id": str(order.tap_id),
            "venue_id": str(order.venue_id),
            "user_id": order.buyer_id,
        }
        mismatched = [k for k, v in expected.items() if str(claims.get(k)) != v]
        if mismatched:
            logger.warning("redemption_payload_mismatch", order_id=str(order.id), fields=mismatched)
            raise OrderError(ErrorCode.PAYLOAD_MISMATCH, "Redemption code does not match this order")

        ensure_redeemable(order)
        return order

    async def redeem(self, session: AsyncSession, order: Order, verified_by: str, now: datetime) -> None:
        """ready_to_redeem -> redeemed. Raises ALREADY_REDEEMED if another caller won."""
        won = await OrderStateMachine.transition(
            session,
            order.id,
            OrderStatus.READY_TO_REDEEM,
            OrderStatus.REDEEMED,
            EventType.REDEEMED,
            {"verified_by": verified_by},
            values={"redeemed_at": now},
            now=now,
        )
        if not won:
            raise OrderError(ErrorCode.ALREADY_REDEEMED, "This order has already been redeemed")

    async def verify(self, token: str, verified_by: str, now: datetime | None = None) -> Redemption:
        """Verify a scanned token and mark the order redeemed exactly once.

        Args:
            token: Token as scanned from the buyer's QR code
            verified_by: Terminal or staff identifier recorded on the event
            now: Current time (for deterministic testing)

        Raises:
            RateLimitedError: if the terminal exceeded its verify budget
            OrderError: TOKEN_INVALID, TOKEN_EXPIRED, ORDER_NOT_FOUND,
                TOKEN_MISMATCH, QR_EXPIRED, PAYLOAD_MISMATCH, or a status code
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.hit(
                VERIFY_TOKEN,
                verified_by,
                self.settings.verify_rate_limit,
                self.settings.verify_rate_window_seconds,
            )

        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            async with session.begin():
                order = await self.authenticate(session, token, now)
                await self.redeem(session, order, verified_by, now)
                tap = await session.get(Tap, order.tap_id)

        logger.info("order_redeemed", order_id=str(order.id), verified_by=verified_by)
        await emit_business_event("order_redeemed", venue_id=str(order.venue_id))

        return Redemption(
            order_id=order.id,
            tap_id=order.tap_id,
            tap_number=tap.tap_number if tap else None,
            quantity=order.quantity,
            pour_size_oz=order.pour_size_oz,
            verified_by=verified_by,
            redeemed_at=now,
        )
