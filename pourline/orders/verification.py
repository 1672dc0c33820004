"""Age verification intake from the identity-verification provider webhook.

Only the decision outcome is stored: the boolean flag, the provider's
session reference, and the decision time.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pourline.core.config import get_settings
from pourline.core.exceptions import WebhookVerificationError
from pourline.core.provisioning import insert_ignore
from pourline.db.models.buyer import Buyer

logger = structlog.get_logger(__name__)

# Provider decision codes
APPROVED = 9001
DECLINED = 9102
RESUBMISSION_REQUESTED = 9103
EXPIRED = 9104

_DECISION_NAMES = {
    APPROVED: "approved",
    DECLINED: "declined",
    RESUBMISSION_REQUESTED: "resubmission_requested",
    EXPIRED: "expired",
}


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class AgeVerificationService:
    """Applies provider decisions to buyer records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], secret: str | None = None):
        self.session_factory = session_factory
        self.secret = secret or get_settings().verification_webhook_secret

    async def apply_decision(self, raw_body: bytes, signature: str | None, now: datetime | None = None) -> str:
        """Verify and apply one decision webhook.

        Returns:
            The decision name ("approved", "declined", ..., or "unknown")

        Raises:
            WebhookVerificationError: bad signature or malformed body
        """
        if not self.secret:
            raise WebhookVerificationError("Verification webhook secret is not configured")
        if not signature or not hmac.compare_digest(sign(raw_body, self.secret), signature.lower()):
            logger.warning("verification_signature_invalid")
            raise WebhookVerificationError("Invalid signature")

        try:
            payload = json.loads(raw_body)
            verification = payload["verification"]
            code = int(verification["code"])
            buyer_id = str(verification["vendorData"])
            reference = str(verification.get("id") or "")
        except (ValueError, KeyError, TypeError) as exc:
            raise WebhookVerificationError(f"Malformed verification payload: {exc}")

        decision = _DECISION_NAMES.get(code, "unknown")
        if code != APPROVED:
            logger.info("age_verification_not_approved", buyer_id=buyer_id, code=code, decision=decision)
            return decision

        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(insert_ignore(session, Buyer, {"user_id": buyer_id}, ["user_id"]))
                await session.execute(
                    update(Buyer)
                    .where(Buyer.user_id == buyer_id)
                    .values(age_verified=True, age_verification_ref=reference, age_verified_at=now)
                    .execution_options(synchronize_session=False)
                )

        logger.info("age_verification_approved", buyer_id=buyer_id)
        return decision
