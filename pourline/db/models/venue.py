"""Venue model."""

import uuid

from sqlalchemy import Boolean, Column, String, Uuid

from pourline.db.base import Base


class Venue(Base):
    __tablename__ = "venues"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    mobile_ordering_enabled = Column(Boolean, nullable=False, default=True)
