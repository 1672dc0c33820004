"""Tap and TapPricing models: dispensable inventory per tap."""

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String, Uuid

from pourline.db.base import Base
from pourline.db.types import UTCDateTime, utc_now


class TapStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class Tap(Base):
    __tablename__ = "taps"
    __table_args__ = (
        CheckConstraint("oz_remaining >= 0", name="ck_taps_oz_remaining_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    venue_id = Column(Uuid, ForeignKey("venues.id"), nullable=False, index=True)
    beer_id = Column(Uuid, nullable=True)
    tap_number = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=TapStatus.ACTIVE)  # active, inactive, maintenance

    # Inventory (ounces). Reservations never draw down to or below the threshold.
    oz_remaining = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    low_threshold_oz = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    # Latest sensor reading
    temperature_f = Column(Numeric(5, 2), nullable=True)
    temp_ok = Column(Boolean, nullable=False, default=True)

    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)


class TapPricing(Base):
    __tablename__ = "tap_pricing"

    tap_id = Column(Uuid, ForeignKey("taps.id"), primary_key=True)
    unit_price = Column(Numeric(10, 2), nullable=False)
    pour_size_oz = Column(Numeric(6, 2), nullable=False, default=Decimal("12"))
    currency = Column(String(3), nullable=False, default="usd")
