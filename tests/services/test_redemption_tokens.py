"""Tests for redemption token issuance and single-use verification."""

import asyncio
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import jwt as pyjwt
import pytest
from sqlalchemy import update

from pourline.core.exceptions import ErrorCode, OrderError
from pourline.db.models.order import Order
from pourline.orders.schemas import OrderStatus
from pourline.orders.tokens import ALGORITHM, RedemptionTokenService, load_order


pytestmark = pytest.mark.unit


async def _fetch(session_factory, order_id):
    async with session_factory() as session:
        return await load_order(session, order_id)


@pytest.fixture
async def paid_order(session_factory, reservations, pay, bar):
    order = await reservations.create_order(bar.buyer_id, bar.tap_id, 2)
    await pay(order)
    return await _fetch(session_factory, order.id)


async def _code(coro):
    with pytest.raises(OrderError) as exc_info:
        await coro
    return exc_info.value.code


# ============================================================================
# Issuance
# ============================================================================


async def test_token_claims_bind_order(tokens, paid_order):
    claims = pyjwt.decode(
        paid_order.qr_code_token,
        tokens.secret,
        algorithms=[ALGORITHM],
        options={"verify_exp": False},
    )

    assert claims["order_id"] == str(paid_order.id)
    assert claims["tap_id"] == str(paid_order.tap_id)
    assert claims["venue_id"] == str(paid_order.venue_id)
    assert claims["user_id"] == paid_order.buyer_id
    assert claims["exp"] == int(paid_order.expires_at.timestamp())
    assert paid_order.qr_expires_at == paid_order.expires_at


async def test_issue_token_is_idempotent(tokens, paid_order, event_types):
    first = await tokens.issue_token(paid_order.id)
    second = await tokens.issue_token(paid_order.id, buyer_id=paid_order.buyer_id)

    assert first.token == second.token == paid_order.qr_code_token
    assert (await event_types(paid_order.id)).count("qr_token_generated") == 1


async def test_concurrent_issuance_returns_one_token(session_factory, reservations, payments, tokens, bar, event_types, stripe_event, processor):
    order = await reservations.create_order(bar.buyer_id, bar.tap_id, 1)
    payments.token_service = None

    await payments.handle_webhook(
        stripe_event("evt_paid", "payment_intent.succeeded", {"id": "pi_1", "metadata": {"order_id": str(order.id)}}),
        processor.valid_signature,
    )
    assert (await _fetch(session_factory, order.id)).status == OrderStatus.PAID.value

    issued = await asyncio.gather(*(tokens.issue_token(order.id) for _ in range(5)))

    assert len({t.token for t in issued}) == 1
    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.READY_TO_REDEEM.value
    assert stored.qr_code_token == issued[0].token
    assert (await event_types(order.id)).count("qr_token_generated") == 1


async def test_issue_token_for_unpaid_order(reservations, tokens, bar):
    order = await reservations.create_order(bar.buyer_id, bar.tap_id, 1)
    assert await _code(tokens.issue_token(order.id)) == ErrorCode.INVALID_ORDER_STATUS


async def test_issue_token_for_another_buyer(tokens, paid_order, seed_buyer):
    other = await seed_buyer("buyer_2")
    assert await _code(tokens.issue_token(paid_order.id, buyer_id=other)) == ErrorCode.NOT_ORDER_OWNER


# ============================================================================
# Verification
# ============================================================================


async def test_verify_redeems_once(session_factory, tokens, paid_order, bar, event_types):
    redemption = await tokens.verify(paid_order.qr_code_token, verified_by="terminal-1")

    assert redemption.order_id == paid_order.id
    assert redemption.tap_number == bar.tap_number
    assert redemption.quantity == 2
    stored = await _fetch(session_factory, paid_order.id)
    assert stored.status == OrderStatus.REDEEMED.value
    assert stored.redeemed_at is not None

    timeline_before = await event_types(paid_order.id)
    assert await _code(tokens.verify(paid_order.qr_code_token, verified_by="terminal-1")) == ErrorCode.ALREADY_REDEEMED
    assert await event_types(paid_order.id) == timeline_before


async def test_concurrent_verification_redeems_exactly_once(tokens, paid_order, event_types):
    results = await asyncio.gather(
        *(tokens.verify(paid_order.qr_code_token, verified_by=f"terminal-{i}") for i in range(5)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(e, OrderError) and e.code == ErrorCode.ALREADY_REDEEMED for e in losers)
    assert (await event_types(paid_order.id)).count("redeemed") == 1


async def test_forged_token_is_invalid(tokens, paid_order):
    forged = pyjwt.encode(
        {"order_id": str(paid_order.id), "iat": 0, "exp": 4_000_000_000},
        "not-the-secret-0123456789abcdef0123456",
        algorithm=ALGORITHM,
    )
    assert await _code(tokens.verify(forged, verified_by="terminal-1")) == ErrorCode.TOKEN_INVALID


async def test_validly_signed_but_unstored_token_mismatches(tokens, paid_order):
    claims = pyjwt.decode(paid_order.qr_code_token, tokens.secret, algorithms=[ALGORITHM], options={"verify_exp": False})
    claims["iat"] += 1
    replayed = pyjwt.encode(claims, tokens.secret, algorithm=ALGORITHM)

    assert await _code(tokens.verify(replayed, verified_by="terminal-1")) == ErrorCode.TOKEN_MISMATCH


async def test_claims_that_disagree_with_order_are_rejected(session_factory, tokens, paid_order):
    claims = pyjwt.decode(paid_order.qr_code_token, tokens.secret, algorithms=[ALGORITHM], options={"verify_exp": False})
    claims["tap_id"] = str(uuid4())
    tampered = pyjwt.encode(claims, tokens.secret, algorithm=ALGORITHM)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Order).where(Order.id == paid_order.id).values(qr_code_token=tampered))

    assert await _code(tokens.verify(tampered, verified_by="terminal-1")) == ErrorCode.PAYLOAD_MISMATCH


async def test_unknown_order(tokens, paid_order):
    claims = pyjwt.decode(paid_order.qr_code_token, tokens.secret, algorithms=[ALGORITHM], options={"verify_exp": False})
    claims["order_id"] = str(uuid4())
    token = pyjwt.encode(claims, tokens.secret, algorithm=ALGORITHM)

    assert await _code(tokens.verify(token, verified_by="terminal-1")) == ErrorCode.ORDER_NOT_FOUND


async def test_expired_token(tokens, paid_order):
    later = paid_order.expires_at + timedelta(seconds=1)
    assert await _code(tokens.verify(paid_order.qr_code_token, verified_by="terminal-1", now=later)) == ErrorCode.TOKEN_EXPIRED


async def test_stored_window_closed_before_token_expiry(session_factory, tokens, paid_order):
    closes_at = paid_order.expires_at - timedelta(minutes=10)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Order).where(Order.id == paid_order.id).values(qr_expires_at=closes_at))

    now = closes_at + timedelta(seconds=1)
    assert await _code(tokens.verify(paid_order.qr_code_token, verified_by="terminal-1", now=now)) == ErrorCode.QR_EXPIRED


@pytest.mark.parametrize(
    "status,code",
    [
        (OrderStatus.EXPIRED, ErrorCode.ORDER_EXPIRED),
        (OrderStatus.REFUNDED, ErrorCode.ORDER_REFUNDED),
        (OrderStatus.COMPLETED, ErrorCode.ALREADY_REDEEMED),
    ],
)
async def test_status_specific_errors(session_factory, tokens, paid_order, status, code):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Order).where(Order.id == paid_order.id).values(status=status.value))

    assert await _code(tokens.verify(paid_order.qr_code_token, verified_by="terminal-1")) == code


async def test_verification_is_rate_limited_per_terminal(session_factory, rate_limiter, paid_order):
    service = RedemptionTokenService(session_factory, rate_limiter=rate_limiter)
    service.settings = service.settings.model_copy(update={"verify_rate_limit": 2})

    with patch("pourline.core.rate_limit.time.time", return_value=1_700_000_040.0):
        for _ in range(2):
            assert await _code(service.verify("garbage", verified_by="terminal-9")) == ErrorCode.TOKEN_INVALID
        assert await _code(service.verify("garbage", verified_by="terminal-9")) == ErrorCode.RATE_LIMITED
        assert await _code(service.verify("garbage", verified_by="terminal-10")) == ErrorCode.TOKEN_INVALID
