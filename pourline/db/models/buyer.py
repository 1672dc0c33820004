"""Buyer model: identity subject plus the age verification flag."""

from sqlalchemy import Boolean, Column, String

from pourline.db.base import Base
from pourline.db.types import UTCDateTime, utc_now


class Buyer(Base):
    __tablename__ = "buyers"

    user_id = Column(String(255), primary_key=True)  # identity provider subject
    email = Column(String(255), nullable=True)

    # Age verification (only the outcome is stored, never documents)
    age_verified = Column(Boolean, nullable=False, default=False)
    age_verification_ref = Column(String(255), nullable=True)
    age_verified_at = Column(UTCDateTime, nullable=True)

    # Stripe
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
