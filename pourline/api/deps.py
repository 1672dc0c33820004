"""FastAPI dependency providers for the order services."""

from functools import lru_cache

from fastapi import Depends

from pourline.core.rate_limit import RateLimiter
from pourline.db.base import get_session_factory
from pourline.db.redis import get_redis
from pourline.orders.events import EventLog
from pourline.orders.payments import PaymentOrchestrator
from pourline.orders.pouring import PourService
from pourline.orders.processor import PaymentProcessor, StripeProcessor
from pourline.orders.reservation import ReservationService
from pourline.orders.sweeper import ExpirationSweeper
from pourline.orders.tokens import RedemptionTokenService
from pourline.orders.verification import AgeVerificationService


@lru_cache
def get_processor() -> PaymentProcessor:
    return StripeProcessor()


def get_rate_limiter() -> RateLimiter:
    try:
        return RateLimiter(get_redis())
    except RuntimeError:
        # Redis not initialized: limiter degrades to allow-all
        return RateLimiter(None)


def get_event_log() -> EventLog:
    return EventLog(get_session_factory())


def get_reservation_service() -> ReservationService:
    return ReservationService(get_session_factory())


def get_token_service(rate_limiter: RateLimiter = Depends(get_rate_limiter)) -> RedemptionTokenService:
    return RedemptionTokenService(get_session_factory(), rate_limiter=rate_limiter)


def get_payment_orchestrator(
    processor: PaymentProcessor = Depends(get_processor),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    token_service: RedemptionTokenService = Depends(get_token_service),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        get_session_factory(),
        processor,
        rate_limiter=rate_limiter,
        token_service=token_service,
    )


def get_pour_service(token_service: RedemptionTokenService = Depends(get_token_service)) -> PourService:
    return PourService(get_session_factory(), token_service)


def get_verification_service() -> AgeVerificationService:
    return AgeVerificationService(get_session_factory())


def build_sweeper() -> ExpirationSweeper:
    """Sweeper wired with a refund-capable orchestrator, for the lifespan task and scripts."""
    factory = get_session_factory()
    payments = PaymentOrchestrator(
        factory,
        get_processor(),
        rate_limiter=get_rate_limiter(),
        token_service=RedemptionTokenService(factory),
    )
    return ExpirationSweeper(factory, payments=payments)
