"""Tests for PaymentOrchestrator: intents, webhooks, reconciliation, refunds."""

from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest

from pourline.core.exceptions import ErrorCode, OrderError, RateLimitedError, WebhookVerificationError
from pourline.orders.events import EventLog
from pourline.orders.payments import poll_settlement
from pourline.orders.schemas import OrderStatus, PaymentStatus, WebhookOutcome
from pourline.orders.tokens import load_order


pytestmark = pytest.mark.unit


async def _fetch(session_factory, order_id):
    async with session_factory() as session:
        return await load_order(session, order_id)


@pytest.fixture
async def order(reservations, bar):
    return await reservations.create_order(bar.buyer_id, bar.tap_id, 2)


# ============================================================================
# Payment intents
# ============================================================================


async def test_intent_created_once(session_factory, payments, processor, order, event_types):
    first = await payments.get_or_create_payment_intent(order.id, order.buyer_id)
    second = await payments.get_or_create_payment_intent(order.id, order.buyer_id)

    assert first.payment_intent_id == second.payment_intent_id
    assert first.created is True
    assert second.created is False
    assert len(processor.created_intents) == 1
    assert processor.retrieved_intents == [first.payment_intent_id]
    assert len(processor.customers) == 1
    assert len(processor.ephemeral_keys) == 2

    call = processor.created_intents[0]
    assert call["key"] == f"order_{order.id}"
    assert call["amount"] == Decimal("15.00")
    assert call["metadata"] == {"order_id": str(order.id), "user_id": order.buyer_id}

    stored = await _fetch(session_factory, order.id)
    assert stored.payment_intent_id == first.payment_intent_id
    assert await event_types(order.id) == ["created", "payment_intent_created"]


async def test_intent_for_someone_elses_order(payments, order, seed_buyer):
    other = await seed_buyer("buyer_2")

    with pytest.raises(OrderError) as exc_info:
        await payments.get_or_create_payment_intent(order.id, other)
    assert exc_info.value.code == ErrorCode.NOT_ORDER_OWNER


async def test_intent_for_unknown_order(payments, bar):
    with pytest.raises(OrderError) as exc_info:
        await payments.get_or_create_payment_intent(uuid4(), bar.buyer_id)
    assert exc_info.value.code == ErrorCode.ORDER_NOT_FOUND


async def test_intent_for_paid_order_is_rejected(payments, pay, order):
    await pay(order)

    with pytest.raises(OrderError) as exc_info:
        await payments.get_or_create_payment_intent(order.id, order.buyer_id)
    assert exc_info.value.code == ErrorCode.INVALID_ORDER_STATUS


async def test_intent_requests_are_rate_limited(payments, processor, order):
    # Pin the clock inside one window
    with patch("pourline.core.rate_limit.time.time", return_value=1_700_000_040.0):
        for _ in range(10):
            await payments.get_or_create_payment_intent(order.id, order.buyer_id)

        with pytest.raises(RateLimitedError) as exc_info:
            await payments.get_or_create_payment_intent(order.id, order.buyer_id)

    assert exc_info.value.retry_after_seconds == 60
    assert len(processor.ephemeral_keys) == 10


# ============================================================================
# Webhooks
# ============================================================================


async def test_payment_succeeded_marks_paid_and_issues_token(session_factory, payments, order, event_types, stripe_event, processor):
    payload = stripe_event(
        "evt_1", "payment_intent.succeeded", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}}
    )

    outcome = await payments.handle_webhook(payload, processor.valid_signature)

    assert outcome == WebhookOutcome.PROCESSED
    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.READY_TO_REDEEM.value
    assert stored.payment_intent_id == "pi_abc"
    assert stored.paid_at is not None
    assert stored.qr_code_token
    assert await event_types(order.id) == ["created", "payment_succeeded", "qr_token_generated"]


async def test_webhook_replay_is_a_no_op(payments, order, event_types, stripe_event, processor):
    payload = stripe_event(
        "evt_replayed", "payment_intent.succeeded", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}}
    )

    first = await payments.handle_webhook(payload, processor.valid_signature)
    second = await payments.handle_webhook(payload, processor.valid_signature)

    assert first == WebhookOutcome.PROCESSED
    assert second == WebhookOutcome.DUPLICATE
    events = await event_types(order.id)
    assert events.count("payment_succeeded") == 1
    assert events.count("qr_token_generated") == 1


async def test_second_success_event_with_new_id_is_idempotent(payments, order, event_types, stripe_event, processor):
    data = {"id": "pi_abc", "metadata": {"order_id": str(order.id)}}
    await payments.handle_webhook(stripe_event("evt_a", "payment_intent.succeeded", data), processor.valid_signature)
    outcome = await payments.handle_webhook(stripe_event("evt_b", "payment_intent.succeeded", data), processor.valid_signature)

    assert outcome == WebhookOutcome.PROCESSED
    events = await event_types(order.id)
    assert events.count("payment_succeeded") == 1


async def test_webhook_finds_order_by_stored_intent(session_factory, payments, order, stripe_event, processor):
    handle = await payments.get_or_create_payment_intent(order.id, order.buyer_id)

    payload = stripe_event("evt_1", "payment_intent.succeeded", {"id": handle.payment_intent_id, "metadata": {}})
    await payments.handle_webhook(payload, processor.valid_signature)

    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.READY_TO_REDEEM.value


async def test_payment_failed_cancels_and_restores(session_factory, payments, order, bar, tap_oz, stripe_event, processor):
    assert await tap_oz(bar.tap_id) == Decimal("120")
    payload = stripe_event(
        "evt_fail",
        "payment_intent.payment_failed",
        {"id": "pi_abc", "metadata": {"order_id": str(order.id)}, "last_payment_error": {"code": "card_declined"}},
    )

    await payments.handle_webhook(payload, processor.valid_signature)

    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.CANCELLED.value
    assert await tap_oz(bar.tap_id) == Decimal("144")
    timeline = await EventLog(session_factory).timeline(order.id)
    assert timeline[-1].event_type == "payment_failed"
    assert timeline[-1].event_metadata["reason"] == "card_declined"


async def test_charge_refunded_refunds_paid_order(session_factory, payments, pay, order, bar, tap_oz, stripe_event, processor):
    await pay(order)
    stored = await _fetch(session_factory, order.id)

    payload = stripe_event("evt_refund", "charge.refunded", {"id": "ch_1", "payment_intent": stored.payment_intent_id})
    await payments.handle_webhook(payload, processor.valid_signature)

    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.REFUNDED.value
    assert await tap_oz(bar.tap_id) == Decimal("144")


async def test_late_payment_on_cancelled_order_is_recorded(session_factory, payments, order, event_types, stripe_event, processor):
    await payments.handle_webhook(
        stripe_event("evt_fail", "payment_intent.payment_failed", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}}),
        processor.valid_signature,
    )
    await payments.handle_webhook(
        stripe_event("evt_late", "payment_intent.succeeded", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}}),
        processor.valid_signature,
    )

    stored = await _fetch(session_factory, order.id)
    assert stored.status == OrderStatus.CANCELLED.value
    assert (await event_types(order.id))[-1] == "late_payment_received"


async def test_unknown_event_type_is_ignored(payments, stripe_event, processor):
    outcome = await payments.handle_webhook(stripe_event("evt_x", "customer.created", {"id": "cus_1"}), processor.valid_signature)
    assert outcome == WebhookOutcome.IGNORED


async def test_event_for_unknown_order_is_acknowledged(payments, stripe_event, processor):
    payload = stripe_event("evt_orphan", "payment_intent.succeeded", {"id": "pi_unknown", "metadata": {}})
    assert await payments.handle_webhook(payload, processor.valid_signature) == WebhookOutcome.PROCESSED


@pytest.mark.parametrize("signature", [None, "", "t=1,v1=forged"])
async def test_bad_signature_is_rejected(payments, order, signature, stripe_event):
    payload = stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}})

    with pytest.raises(WebhookVerificationError):
        await payments.handle_webhook(payload, signature)


async def test_rejected_webhook_does_not_claim_event_id(payments, order, stripe_event, processor):
    payload = stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_abc", "metadata": {"order_id": str(order.id)}})
    with pytest.raises(WebhookVerificationError):
        await payments.handle_webhook(payload, "t=1,v1=forged")

    assert await payments.handle_webhook(payload, processor.valid_signature) == WebhookOutcome.PROCESSED


# ============================================================================
# Refunds
# ============================================================================


async def test_refund_order(payments, processor, pay, order, bar, tap_oz):
    await pay(order)

    refunded = await payments.refund_order(order.id, "tap_failure")

    assert refunded.status == OrderStatus.REFUNDED.value
    assert processor.refunds == [
        {"payment_intent": refunded.payment_intent_id, "reason": "tap_failure", "key": f"refund_{order.id}"}
    ]
    assert await tap_oz(bar.tap_id) == Decimal("144")


async def test_refund_pending_order_is_rejected(payments, processor, order):
    with pytest.raises(OrderError) as exc_info:
        await payments.refund_order(order.id, "changed_mind")

    assert exc_info.value.code == ErrorCode.INVALID_ORDER_STATUS
    assert processor.refunds == []


# ============================================================================
# Reconciliation
# ============================================================================


async def test_check_payment_status_applies_success(payments, processor, order, event_types):
    await payments.get_or_create_payment_intent(order.id, order.buyer_id)
    processor.intent_status = "succeeded"

    status = await payments.check_payment_status(order.id, order.buyer_id)

    assert status.status == OrderStatus.READY_TO_REDEEM
    assert status.payment_intent_status == "succeeded"
    assert (await event_types(order.id)).count("payment_succeeded") == 1


async def test_check_payment_status_while_processing(payments, processor, order):
    await payments.get_or_create_payment_intent(order.id, order.buyer_id)
    processor.intent_status = "processing"

    status = await payments.check_payment_status(order.id, order.buyer_id)
    assert status.status == OrderStatus.PENDING_PAYMENT


async def test_check_payment_status_after_webhook_is_stable(payments, processor, pay, order):
    await pay(order)
    processor.intent_status = "succeeded"

    status = await payments.check_payment_status(order.id, order.buyer_id)

    assert status.status == OrderStatus.READY_TO_REDEEM
    assert processor.retrieved_intents == []


async def test_poll_settlement_times_out():
    order_id = uuid4()
    slept = []
    checks = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    async def check():
        checks.append(1)
        return PaymentStatus(order_id=order_id, status=OrderStatus.PENDING_PAYMENT)

    status = await poll_settlement(check, initial_delay=2, interval=2, timeout=30, sleep=fake_sleep)

    assert status.status == OrderStatus.PENDING_PAYMENT
    assert sum(slept) == 30
    assert len(checks) == 15


async def test_poll_settlement_stops_when_paid():
    order_id = uuid4()
    statuses = [OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_PAYMENT, OrderStatus.READY_TO_REDEEM]

    async def fake_sleep(seconds):
        pass

    async def check():
        return PaymentStatus(order_id=order_id, status=statuses.pop(0))

    status = await poll_settlement(check, initial_delay=2, interval=2, timeout=30, sleep=fake_sleep)
    assert status.status == OrderStatus.READY_TO_REDEEM
    assert statuses == []
