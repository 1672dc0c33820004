"""Shared test fixtures for all test groups.

Environment defaults are set before any pourline import so the cached
Settings object sees them.
"""

import json
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal

os.environ.setdefault("QR_TOKEN_SECRET", "test-qr-token-secret-0123456789abcdef")
os.environ.setdefault("AUTH_JWT_SECRET", "test-auth-jwt-secret-0123456789abcdef")
os.environ.setdefault("TERMINAL_API_KEY", "test-terminal-key")
os.environ.setdefault("VERIFICATION_WEBHOOK_SECRET", "test-verification-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("METRICS_ENABLED", "false")

import jwt as pyjwt
import pytest
import stripe
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pourline.core.exceptions import PaymentProcessorError
from pourline.core.rate_limit import RateLimiter
from pourline.db.base import Base, create_engine_for
from pourline.db.models import Buyer, Tap, TapPricing, Venue
from pourline.orders.events import EventLog
from pourline.orders.payments import PaymentOrchestrator
from pourline.orders.pouring import PourService
from pourline.orders.processor import ProcessorIntent
from pourline.orders.reservation import ReservationService
from pourline.orders.sweeper import ExpirationSweeper
from pourline.orders.tokens import RedemptionTokenService


# ---------------------------------------------------------------------------
# Fake payment processor
# ---------------------------------------------------------------------------


@dataclass
class FakeProcessor:
    """In-memory PaymentProcessor recording every call.

    Webhook payloads are plain JSON; ``valid_signature`` is the only accepted
    signature.
    """

    valid_signature: str = "t=1,v1=valid"
    intent_status: str = "requires_payment_method"
    fail_refunds: bool = False
    customers: list = field(default_factory=list)
    created_intents: list = field(default_factory=list)
    retrieved_intents: list = field(default_factory=list)
    ephemeral_keys: list = field(default_factory=list)
    refunds: list = field(default_factory=list)

    async def create_customer(self, buyer_id, email):
        self.customers.append(buyer_id)
        return f"cus_{buyer_id}"

    async def create_payment_intent(self, amount, currency, customer_id, metadata, idempotency_key):
        self.created_intents.append(
            {"amount": amount, "currency": currency, "customer": customer_id, "metadata": metadata, "key": idempotency_key}
        )
        intent_id = f"pi_{metadata['order_id'].replace('-', '')[:16]}"
        return ProcessorIntent(id=intent_id, client_secret=f"{intent_id}_secret", status=self.intent_status)

    async def retrieve_payment_intent(self, payment_intent_id):
        self.retrieved_intents.append(payment_intent_id)
        return ProcessorIntent(id=payment_intent_id, client_secret=f"{payment_intent_id}_secret", status=self.intent_status)

    async def create_ephemeral_key(self, customer_id):
        self.ephemeral_keys.append(customer_id)
        return f"ek_{len(self.ephemeral_keys)}"

    async def create_refund(self, payment_intent_id, reason, idempotency_key):
        if self.fail_refunds:
            raise PaymentProcessorError("create_refund", "card_declined")
        self.refunds.append({"payment_intent": payment_intent_id, "reason": reason, "key": idempotency_key})
        return f"re_{len(self.refunds)}"

    def construct_event(self, payload, signature):
        if signature != self.valid_signature:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def stripe_event():
    """Build a minimal Stripe-style event payload."""

    def _make(event_id: str, event_type: str, data: dict) -> bytes:
        return json.dumps({"id": event_id, "type": event_type, "data": {"object": data}}).encode()

    return _make


# ---------------------------------------------------------------------------
# Database and Redis
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Test engine: a temporary SQLite file, or TEST_DATABASE_URL when set.

    Sets the global session factory so code calling get_session_factory()
    (auth provisioning, API routes) shares this database.
    """
    import pourline.db.base as db_mod
    import pourline.db.models  # noqa: F401

    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'pourline.db'}"
    engine = create_engine_for(url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def fake_redis():
    """Create a fake Redis instance for testing."""
    redis = FakeAsyncRedis(decode_responses=True)
    yield redis
    await redis.flushall()
    await redis.aclose()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@dataclass
class Bar:
    """A seeded venue with one tap and one verified buyer."""

    venue_id: object
    tap_id: object
    tap_number: int
    buyer_id: str


@pytest.fixture
def seed_buyer(session_factory):
    async def _seed(user_id: str, age_verified: bool = True) -> str:
        async with session_factory() as session:
            session.add(Buyer(user_id=user_id, email=f"{user_id}@example.com", age_verified=age_verified))
            await session.commit()
        return user_id

    return _seed


@pytest.fixture
def seed_bar(session_factory, seed_buyer):
    """Seed a venue, one priced tap and a verified buyer.

    Defaults: 144 oz on tap, 24 oz low threshold, 12 oz pours at 7.50.
    """

    async def _seed(
        oz_remaining: str = "144",
        low_threshold_oz: str = "24",
        pour_size_oz: str = "12",
        unit_price: str = "7.50",
        tap_status: str = "active",
        temp_ok: bool = True,
        venue_active: bool = True,
        mobile_ordering_enabled: bool = True,
        with_pricing: bool = True,
        tap_number: int = 4,
        buyer_id: str = "buyer_1",
    ) -> Bar:
        async with session_factory() as session:
            venue = Venue(name="The Taproom", is_active=venue_active, mobile_ordering_enabled=mobile_ordering_enabled)
            session.add(venue)
            await session.flush()

            tap = Tap(
                venue_id=venue.id,
                tap_number=tap_number,
                status=tap_status,
                oz_remaining=Decimal(oz_remaining),
                low_threshold_oz=Decimal(low_threshold_oz),
                temperature_f=Decimal("38.5"),
                temp_ok=temp_ok,
            )
            session.add(tap)
            await session.flush()

            if with_pricing:
                session.add(TapPricing(tap_id=tap.id, unit_price=Decimal(unit_price), pour_size_oz=Decimal(pour_size_oz)))
            await session.commit()

        await seed_buyer(buyer_id)
        return Bar(venue_id=venue.id, tap_id=tap.id, tap_number=tap_number, buyer_id=buyer_id)

    return _seed


@pytest.fixture
async def bar(seed_bar) -> Bar:
    return await seed_bar()


@pytest.fixture
def tap_oz(session_factory):
    """Current ounces remaining on a tap."""

    async def _read(tap_id) -> Decimal:
        async with session_factory() as session:
            tap = await session.get(Tap, tap_id)
            return tap.oz_remaining

    return _read


@pytest.fixture
def event_types(session_factory):
    """An order's timeline as a list of event type names."""

    async def _read(order_id) -> list[str]:
        return [e.event_type for e in await EventLog(session_factory).timeline(order_id)]

    return _read


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def rate_limiter(fake_redis) -> RateLimiter:
    return RateLimiter(fake_redis)


@pytest.fixture
def reservations(session_factory) -> ReservationService:
    return ReservationService(session_factory)


@pytest.fixture
def tokens(session_factory, rate_limiter) -> RedemptionTokenService:
    return RedemptionTokenService(session_factory, rate_limiter=rate_limiter)


@pytest.fixture
def payments(session_factory, processor, rate_limiter, tokens) -> PaymentOrchestrator:
    return PaymentOrchestrator(session_factory, processor, rate_limiter=rate_limiter, token_service=tokens)


@pytest.fixture
def pours(session_factory, tokens) -> PourService:
    return PourService(session_factory, tokens)


@pytest.fixture
def sweeper(session_factory, payments) -> ExpirationSweeper:
    return ExpirationSweeper(session_factory, payments=payments)


@pytest.fixture
def pay(payments, processor, stripe_event):
    """Settle an order through the webhook path (which also issues its token)."""
    counter = {"n": 0}

    async def _pay(order):
        counter["n"] += 1
        payload = stripe_event(
            f"evt_paid_{counter['n']}_{order.id}",
            "payment_intent.succeeded",
            {"id": f"pi_test_{order.id.hex[:12]}", "metadata": {"order_id": str(order.id)}},
        )
        return await payments.handle_webhook(payload, processor.valid_signature)

    return _pay


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
def api_app(engine, fake_redis, processor):
    """FastAPI app bound to the test database, fake Redis and fake processor."""
    from pourline.api.deps import get_processor, get_rate_limiter
    from pourline.core.auth import _provisioned_cache
    from pourline.main import create_app

    _provisioned_cache.clear()
    app = create_app()
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(fake_redis)
    yield app
    app.dependency_overrides.clear()
    _provisioned_cache.clear()


@pytest.fixture
async def client(api_app):
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def buyer_headers():
    """Bearer header carrying a session JWT signed with the test secret."""

    def _headers(user_id: str, email: str | None = None) -> dict:
        claims = {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + 3600}
        if email:
            claims["email"] = email
        token = pyjwt.encode(claims, os.environ["AUTH_JWT_SECRET"], algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def terminal_headers():
    return {
        "Authorization": f"Bearer {os.environ['TERMINAL_API_KEY']}",
        "X-Terminal-ID": "bar-terminal-1",
    }
