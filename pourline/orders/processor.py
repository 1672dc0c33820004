"""Stripe adapter for the payment orchestrator.

Every call is safe to repeat (a retrieval, or a creation carrying an
idempotency key), so transient connection and rate-limit errors are retried
with exponential backoff. Any other Stripe error surfaces as
PaymentProcessorError.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pourline.core.config import get_settings
from pourline.core.exceptions import PaymentProcessorError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProcessorIntent:
    id: str
    client_secret: str
    status: str


class PaymentProcessor(Protocol):
    """Operations the orchestrator needs from a payment processor."""

    async def create_customer(self, buyer_id: str, email: str | None) -> str: ...

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str,
        metadata: dict,
        idempotency_key: str,
    ) -> ProcessorIntent: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProcessorIntent: ...

    async def create_ephemeral_key(self, customer_id: str) -> str: ...

    async def create_refund(self, payment_intent_id: str, reason: str, idempotency_key: str) -> str: ...

    def construct_event(self, payload: bytes, signature: str) -> dict: ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal currency amount to integer cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


_retry_transient = retry(
    retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=2, min=2, max=30),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "stripe_transient_error_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


class StripeProcessor:
    """PaymentProcessor backed by the Stripe SDK's async methods."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        settings = get_settings()
        stripe.api_key = api_key or settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.api_version = settings.stripe_api_version
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    async def _guard(self, operation: str, coro):
        try:
            return await coro
        except stripe.StripeError as exc:
            logger.error("stripe_call_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise PaymentProcessorError(operation, str(exc)) from exc

    async def create_customer(self, buyer_id: str, email: str | None) -> str:
        customer = await self._guard("create_customer", self._create_customer(buyer_id, email))
        return customer.id

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str,
        metadata: dict,
        idempotency_key: str,
    ) -> ProcessorIntent:
        intent = await self._guard(
            "create_payment_intent",
            self._create_payment_intent(to_minor_units(amount), currency, customer_id, metadata, idempotency_key),
        )
        return ProcessorIntent(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProcessorIntent:
        intent = await self._guard("retrieve_payment_intent", self._retrieve_payment_intent(payment_intent_id))
        return ProcessorIntent(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    async def create_ephemeral_key(self, customer_id: str) -> str:
        key = await self._guard("create_ephemeral_key", self._create_ephemeral_key(customer_id))
        return key.secret

    async def create_refund(self, payment_intent_id: str, reason: str, idempotency_key: str) -> str:
        refund = await self._guard("create_refund", self._create_refund(payment_intent_id, reason, idempotency_key))
        return refund.id

    def construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify the webhook signature and parse the event.

        Raises ValueError for malformed payloads and
        stripe.SignatureVerificationError for bad signatures.
        """
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)

    # ── Raw SDK calls (retried on transient errors) ─────────────────

    @_retry_transient
    async def _create_customer(self, buyer_id: str, email: str | None):
        return await stripe.Customer.create_async(
            email=email or None,
            metadata={"user_id": buyer_id},
            idempotency_key=f"customer_{buyer_id}",
        )

    @_retry_transient
    async def _create_payment_intent(self, amount_minor: int, currency: str, customer_id: str, metadata: dict, idempotency_key: str):
        return await stripe.PaymentIntent.create_async(
            amount=amount_minor,
            currency=currency,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    @_retry_transient
    async def _retrieve_payment_intent(self, payment_intent_id: str):
        return await stripe.PaymentIntent.retrieve_async(payment_intent_id)

    @_retry_transient
    async def _create_ephemeral_key(self, customer_id: str):
        return await stripe.EphemeralKey.create_async(
            customer=customer_id,
            stripe_version=self.api_version,
        )

    @_retry_transient
    async def _create_refund(self, payment_intent_id: str, reason: str, idempotency_key: str):
        return await stripe.Refund.create_async(
            payment_intent=payment_intent_id,
            reason="requested_by_customer",
            metadata={"reason": reason},
            idempotency_key=idempotency_key,
        )
