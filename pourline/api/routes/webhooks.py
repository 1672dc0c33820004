"""Inbound webhooks: payment processor and age verification provider."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from pourline.api.deps import get_payment_orchestrator, get_verification_service
from pourline.api.schemas.orders import WebhookAck
from pourline.core.config import get_settings
from pourline.core.exceptions import WebhookVerificationError
from pourline.orders.payments import PaymentOrchestrator
from pourline.orders.verification import AgeVerificationService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Handle Stripe webhook events with signature verification."""
    if not get_settings().stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        outcome = await payments.handle_webhook(body, sig_header)
    except WebhookVerificationError as exc:
        logger.warning("stripe_webhook_rejected", reason=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    return WebhookAck(outcome=outcome.value)


@router.post("/webhooks/verification", response_model=WebhookAck)
async def verification_webhook(
    request: Request,
    verification: AgeVerificationService = Depends(get_verification_service),
):
    """Handle age verification decisions (HMAC-SHA256 signed)."""
    body = await request.body()
    signature = request.headers.get("x-hmac-signature")

    try:
        decision = await verification.apply_decision(body, signature)
    except WebhookVerificationError as exc:
        logger.warning("verification_webhook_rejected", reason=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    return WebhookAck(outcome=decision)
