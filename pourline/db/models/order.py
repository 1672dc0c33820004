"""Order model: one reserved, paid, and redeemable pour."""

import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Numeric, String, Text, Uuid

from pourline.db.base import Base
from pourline.db.types import UTCDateTime, utc_now


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_expires_at", "status", "expires_at"),
        Index("ix_orders_buyer_status_created_at", "buyer_id", "status", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id = Column(String(255), ForeignKey("buyers.user_id"), nullable=False, index=True)
    venue_id = Column(Uuid, ForeignKey("venues.id"), nullable=False)
    tap_id = Column(Uuid, ForeignKey("taps.id"), nullable=False, index=True)
    beer_id = Column(Uuid, nullable=True)

    # What was bought
    quantity = Column(Integer, nullable=False)
    pour_size_oz = Column(Numeric(6, 2), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    status = Column(String(32), nullable=False, default="pending_payment")  # OrderStatus values

    # Redemption token (single-use, signed)
    qr_code_token = Column(Text, unique=True, nullable=True)
    qr_expires_at = Column(UTCDateTime, nullable=True)

    # Payment processor reference
    payment_intent_id = Column(String(255), nullable=True, index=True)

    # Lifecycle timestamps
    paid_at = Column(UTCDateTime, nullable=True)
    redeemed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    @property
    def reserved_oz(self):
        """Volume held against the tap for this order."""
        return self.quantity * self.pour_size_oz
